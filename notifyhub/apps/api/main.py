from __future__ import annotations

from fastapi import FastAPI

from notifyhub.apps.api.deps import OpsRuntime
from notifyhub.apps.api.routes.health import router as health_router
from notifyhub.apps.api.routes.ops import router as ops_router


def create_app(runtime: OpsRuntime) -> FastAPI:
    # The ops app runs inside the worker process and only reads its live components.
    app = FastAPI(title=f"{runtime.settings.app_name} ops", docs_url=None, redoc_url=None)
    app.state.runtime = runtime
    app.include_router(health_router)
    app.include_router(ops_router)
    return app
