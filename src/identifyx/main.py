"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from identifyx.api.routes import router as api_router
from identifyx.config import Settings, get_settings
from identifyx.images import ImageStore
from identifyx.ml.inference import InferencePool
from identifyx.ml.loader import ModelLoader
from identifyx.ml.model_manager import ModelManager, OnnxModelManager
from identifyx.session import SessionStore, WorkflowSession
from identifyx.web.routes import router as web_router

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings, model_manager: ModelManager | None = None) -> None:
    """Wire the shared services a running app needs onto ``app.state``."""
    inference_pool = InferencePool(settings)
    manager = model_manager if model_manager is not None else OnnxModelManager(settings)
    loader = ModelLoader(manager, inference_pool, settings.classifier_model, settings.top_k)
    image_store = ImageStore()

    def new_session(session_id: str) -> WorkflowSession:
        return WorkflowSession(
            session_id,
            loader,
            image_store,
            max_file_size=settings.max_file_size,
            max_image_pixels=settings.max_image_pixels,
        )

    app.state.settings = settings
    app.state.inference_pool = inference_pool
    app.state.model_manager = manager
    app.state.model_loader = loader
    app.state.image_store = image_store
    app.state.session_store = SessionStore(new_session, max_sessions=settings.max_sessions)


async def sweep_idle(app: FastAPI) -> None:
    """Periodically evict idle browser sessions and idle model sessions."""
    settings: Settings = app.state.settings
    while True:
        await asyncio.sleep(settings.sweep_interval)
        try:
            app.state.session_store.evict_idle(settings.session_ttl)
            app.state.model_manager.unload_idle_models()
        except Exception:
            logger.exception("Idle sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting IdentifyX (device=%s, max_concurrent=%s, model=%s, top_k=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.top_k,
    )

    init_app_state(app, settings)
    sweeper = asyncio.create_task(sweep_idle(app))

    logger.info("IdentifyX ready")
    yield

    logger.info("Shutting down IdentifyX")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    app.state.session_store.close_all()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("IdentifyX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="IdentifyX",
        description="Browser image classifier over a pretrained ONNX model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_router)
    application.include_router(web_router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("identifyx.main:app", host=settings.host, port=settings.port)
