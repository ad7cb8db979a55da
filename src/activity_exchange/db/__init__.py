# src/activity_exchange/db/__init__.py
"""Database configuration and utilities."""

from .session import SessionLocal, build_engine, get_db, session_scope

__all__ = ["build_engine", "get_db", "session_scope", "SessionLocal"]
