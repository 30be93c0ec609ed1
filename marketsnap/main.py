from contextlib import asynccontextmanager

from fastapi import FastAPI
from .logging import setup_logging
from .config import settings
from .api.routes import router as api_router
from .pipeline.orchestrator import Runtime

def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime or Runtime.from_settings(settings)
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.aclose()

    app = FastAPI(title="marketsnap", lifespan=lifespan)
    app.include_router(api_router)
    return app

setup_logging()
app = create_app()
