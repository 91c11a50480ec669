from __future__ import annotations

from fastapi import FastAPI

from goalflow.api.changes_api import router as changes_router
from goalflow.core.config import EngineConfig
from goalflow.core.logging_setup import configure_logging
from goalflow.core.version import version_payload
from goalflow.engine.engine import DeliveryEngine
from goalflow.goals.catalog import GoalCatalog, load_catalog


def create_app(engine: DeliveryEngine | None = None, catalog: GoalCatalog | None = None) -> FastAPI:
    config = engine.config if engine is not None else EngineConfig.from_env()
    configure_logging(config.log_level)
    if catalog is None:
        catalog = load_catalog(config.catalog_path)
    if engine is None:
        engine = DeliveryEngine(config=config, registry=catalog.registry)

    app = FastAPI(title="goalflow")
    app.state.engine = engine
    app.state.catalog = catalog

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "ok"}

    @app.get("/version")
    def version() -> dict:
        return version_payload()

    app.include_router(changes_router)
    return app
