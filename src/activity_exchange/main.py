# src/activity_exchange/main.py
"""Service host running the exchange task worker."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, FastAPI
from sqlalchemy import func
from sqlalchemy.orm import Session

from activity_exchange.core.settings import settings
from activity_exchange.db.session import get_db
from activity_exchange.engine import ExchangeEngine
from activity_exchange.models import InboxItem, OutboxItem, ScheduledTask
from activity_exchange.services.tasks import TaskWorker

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    description="Federated activity exchange engine",
    version=settings.app_version,
)

SessionDep = Annotated[Session, Depends(get_db)]


@app.on_event("startup")
async def on_startup() -> None:
    logging.basicConfig(level=settings.log_level.upper())
    app.state.exchange_engine = None
    app.state.task_worker = None
    if not settings.task_worker_enabled:
        logger.info("Task worker disabled")
        return

    engine = ExchangeEngine()
    worker = TaskWorker(engine.handler_factory)
    await worker.start()
    app.state.exchange_engine = engine
    app.state.task_worker = worker


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: TaskWorker | None = getattr(app.state, "task_worker", None)
    if worker:
        await worker.stop()
    engine: ExchangeEngine | None = getattr(app.state, "exchange_engine", None)
    if engine:
        await engine.close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/status")
def queue_status(db: SessionDep) -> dict[str, dict[str, int] | int]:
    """Report queue depths for operators."""
    outbox = dict(
        db.query(OutboxItem.status, func.count(OutboxItem.id)).group_by(OutboxItem.status).all()
    )
    tasks = dict(
        db.query(ScheduledTask.name, func.count(ScheduledTask.id))
        .group_by(ScheduledTask.name)
        .all()
    )
    return {
        "outbox": outbox,
        "tasks": tasks,
        "inbox_items": db.query(func.count(InboxItem.id)).scalar() or 0,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("activity_exchange.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
