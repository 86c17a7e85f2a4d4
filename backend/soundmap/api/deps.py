from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request

from ..core.config import Settings
from ..services.catalog import CatalogRepository
from ..services.engine import FeaturesEngine

logger = logging.getLogger("engine")


async def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


async def get_engine(request: Request) -> FeaturesEngine:
    return request.app.state.engine


async def get_catalog(request: Request) -> CatalogRepository:
    return request.app.state.catalog


def _log_load_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Features engine load failed", exc_info=exc)


def schedule_load(app: FastAPI, *, force: bool = False) -> asyncio.Task:
    """Start a background load.

    A plain request joins the load already in flight. A forced one is queued
    behind it: the running load may be serving the cache being replaced, or
    may already be cancelled.
    """
    task: asyncio.Task | None = app.state.load_task
    if task is not None and not task.done() and not force:
        return task
    task = asyncio.create_task(app.state.engine.load(force_reload=force))
    task.add_done_callback(_log_load_failure)
    app.state.load_task = task
    return task
