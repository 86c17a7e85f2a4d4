from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis import Redis

from .api.deps import schedule_load
from .api.routes import engine as engine_routes
from .api.routes import health, similar
from .cache.store import CacheStore, FileCacheStore, RedisCacheStore
from .core.config import Settings, get_settings
from .core.logging import setup_logging
from .db.session import create_db_engine, create_session_factory, init_db
from .services.catalog import CatalogRepository
from .services.engine import FeaturesEngine


def create_cache_store(settings: Settings) -> CacheStore:
    if settings.cache_backend == "redis":
        return RedisCacheStore(Redis.from_url(settings.redis_url), key=settings.cache_key)
    return FileCacheStore(settings.cache_path)


def build_engine(settings: Settings, catalog: CatalogRepository) -> FeaturesEngine:
    return FeaturesEngine(
        catalog,
        catalog,
        create_cache_store(settings),
        train_settings=settings.train_settings(),
        seed=settings.som_random_seed,
        expand_neighbors=settings.similarity_expand_neighbors,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_engine = app.state.db_engine
    if db_engine is not None:
        await init_db(db_engine)
    if app.state.settings.load_on_startup:
        schedule_load(app)
    yield
    app.state.engine.request_cancel_load()
    task = app.state.load_task
    if task is not None:
        await asyncio.gather(task, return_exceptions=True)
    await asyncio.to_thread(app.state.engine.close)
    if db_engine is not None:
        await db_engine.dispose()


def create_app(
    settings: Settings | None = None,
    *,
    engine: FeaturesEngine | None = None,
    catalog: CatalogRepository | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, json_output=settings.log_json)
    app = FastAPI(
        title="Soundmap Recommendation Backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    db_engine = None
    if catalog is None:
        db_engine = create_db_engine(settings)
        catalog = CatalogRepository(create_session_factory(db_engine))

    app.state.settings = settings
    app.state.db_engine = db_engine
    app.state.catalog = catalog
    app.state.engine = engine or build_engine(settings, catalog)
    app.state.load_task = None

    app.include_router(health.router)
    app.include_router(similar.router)
    app.include_router(engine_routes.router)
    return app
