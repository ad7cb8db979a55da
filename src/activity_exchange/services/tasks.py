"""Database-backed delayed tasks and the background worker that runs them.

Tasks are deleted only after their handler has returned, so a crash between
claim and completion causes the task to run again (at-least-once execution).
Handlers therefore have to be idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from activity_exchange.core.settings import settings
from activity_exchange.db.session import session_scope
from activity_exchange.db.time import utcnow
from activity_exchange.models import ScheduledTask
from activity_exchange.services.errors import ExchangeError

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Mapping[str, Any]], Awaitable[None]]
HandlerFactory = Callable[[Session], Mapping[str, TaskHandler]]


class TaskQueue:
    """Delayed task queue stored in the ``scheduled_task`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def schedule(
        self,
        name: str,
        payload: Mapping[str, Any],
        *,
        run_at: datetime | None = None,
        ttl_seconds: int | None = None,
    ) -> int:
        """Persist a task and return its id.

        Args:
            name: Handler name the worker dispatches on
            payload: JSON-serializable task arguments
            run_at: Earliest execution time, defaults to now
            ttl_seconds: Discard the task if it has not run within this many seconds

        Returns:
            Identifier of the stored task
        """
        now = utcnow()
        task = ScheduledTask(
            name=name,
            payload=dict(payload),
            run_at=run_at or now,
            expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None,
        )
        self.db.add(task)
        self.db.commit()
        logger.debug("Scheduled task %s (%s) for %s", task.id, name, task.run_at)
        return task.id

    def discard_expired(self, now: datetime | None = None) -> int:
        """Delete tasks whose time-to-live has passed."""
        now = now or utcnow()
        result = self.db.execute(
            delete(ScheduledTask).where(
                ScheduledTask.expires_at.is_not(None),
                ScheduledTask.expires_at < now,
            )
        )
        self.db.commit()
        discarded = result.rowcount or 0
        if discarded:
            logger.info("Discarded %d expired tasks", discarded)
        return discarded

    def due(self, now: datetime | None = None, limit: int | None = None) -> list[ScheduledTask]:
        """Return runnable tasks, oldest first."""
        now = now or utcnow()
        query = (
            self.db.query(ScheduledTask)
            .filter(ScheduledTask.run_at <= now)
            .filter(or_(ScheduledTask.expires_at.is_(None), ScheduledTask.expires_at >= now))
            .order_by(ScheduledTask.run_at, ScheduledTask.id)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def pending(self, name: str | None = None) -> list[ScheduledTask]:
        """Return every stored task, optionally filtered by name."""
        query = self.db.query(ScheduledTask)
        if name is not None:
            query = query.filter(ScheduledTask.name == name)
        return query.order_by(ScheduledTask.run_at, ScheduledTask.id).all()

    def complete(self, task: ScheduledTask) -> None:
        self.db.delete(task)
        self.db.commit()


class TaskWorker:
    """Periodically runs due tasks through named handlers.

    ``handler_factory`` receives the session used for the current tick and
    returns the handler mapping, so handlers and queue share one session.
    """

    def __init__(
        self,
        handler_factory: HandlerFactory,
        db_session: Session | None = None,
        *,
        interval_seconds: float | None = None,
        batch_limit: int | None = None,
    ) -> None:
        """Initialize the task worker.

        Args:
            handler_factory: Builds the ``name -> handler`` mapping for a session.
            db_session: Optional database session. If None, creates one per tick.
            interval_seconds: Poll interval, defaults to ``task_poll_interval_seconds``.
            batch_limit: Tasks run per tick, defaults to ``task_batch_limit``.
        """
        self._handler_factory = handler_factory
        self._db_session = db_session
        self._interval = (
            settings.task_poll_interval_seconds if interval_seconds is None else interval_seconds
        )
        self._limit = settings.task_batch_limit if batch_limit is None else batch_limit
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the background loop."""

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())
            logger.info("Task worker started")

    async def stop(self) -> None:
        """Stop the background loop."""

        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Task worker stopped")

    async def _run(self) -> None:
        interval = max(0.1, float(self._interval))

        while not self._stopping.is_set():
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.error("Task worker encountered database error: %s", e, exc_info=True)
                await self._sleep(min(interval * 4, 30.0))
                continue
            except Exception:
                logger.exception("Task worker tick failed")
                await self._sleep(min(interval * 4, 30.0))
                continue

            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def run_once(self) -> int:
        """Run every due task once and return how many were processed."""
        if self._db_session is not None:
            return await self._run_with_session(self._db_session)

        with session_scope() as db:
            return await self._run_with_session(db)

    async def _run_with_session(self, db: Session) -> int:
        queue = TaskQueue(db)
        queue.discard_expired()
        tasks = queue.due(limit=self._limit)
        logger.debug("Found %d due tasks", len(tasks))
        if not tasks:
            return 0

        handlers = self._handler_factory(db)
        processed = 0
        for task in tasks:
            handler = handlers.get(task.name)
            if handler is None:
                logger.warning("No handler registered for task %s (%s)", task.id, task.name)
                queue.complete(task)
                continue

            try:
                await handler(task.payload)
            except SQLAlchemyError:
                db.rollback()
                raise
            except ExchangeError as e:
                logger.warning("Task %s (%s) failed: %s", task.id, task.name, e)
            except (OSError, ConnectionError, TimeoutError) as e:
                logger.warning("Network error running task %s (%s): %s", task.id, task.name, e)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error(
                    "Data processing error running task %s (%s): %s",
                    task.id,
                    task.name,
                    e,
                    exc_info=True,
                )
            except Exception:
                logger.exception("Unexpected error running task %s (%s)", task.id, task.name)
            queue.complete(task)
            processed += 1

        return processed
