"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import functools
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from classifyx.api.routes import router
from classifyx.config import get_settings
from classifyx.ml.inference import InferencePool
from classifyx.ml.model_manager import OnnxModelProvider
from classifyx.ml.variants import get_variant
from classifyx.session import ModelSlot, SessionRegistry, load_model

logger = logging.getLogger(__name__)

SESSION_SWEEP_SECONDS: float = 60.0


async def _sweep_idle_sessions(registry: SessionRegistry) -> None:
    while True:
        await asyncio.sleep(SESSION_SWEEP_SECONDS)
        registry.evict_idle_sessions()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    variant = get_variant(settings.variant)
    model_filename = settings.model_filename or variant.model_filename
    logger.info(
        "Starting ClassifyX (device=%s, max_concurrent=%s, variant=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        variant.name,
        model_filename,
    )

    inference_pool = InferencePool(settings)
    model_slot = ModelSlot()
    app.state.inference_pool = inference_pool
    app.state.model_slot = model_slot
    sessions = SessionRegistry(variant, model_slot, inference_pool, session_ttl=settings.session_ttl)
    app.state.sessions = sessions

    # Serve requests while the model loads; predict answers 409 until it is ready.
    make_provider = functools.partial(OnnxModelProvider, settings)
    load_task = asyncio.create_task(load_model(model_slot, make_provider, model_filename, inference_pool))
    sweep_task = asyncio.create_task(_sweep_idle_sessions(sessions)) if settings.session_ttl else None

    logger.info("ClassifyX ready")
    yield

    logger.info("Shutting down ClassifyX")
    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    if not load_task.done():
        await asyncio.wait({load_task})
    inference_pool.shutdown()
    logger.info("ClassifyX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ClassifyX",
        description="Single-model image classification API with per-session prediction history",
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

    application.include_router(router)
    return application


app = create_app()
