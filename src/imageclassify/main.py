"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imageclassify.api.routes import router
from imageclassify.config import get_settings
from imageclassify.ml.image_classifier import ClassifierService
from imageclassify.ml.inference import ClassificationQueue
from imageclassify.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting imageclassify (model=%s, device=%s, max_concurrent=%s)",
        settings.model,
        settings.device,
        settings.max_concurrent,
    )

    model_manager = OnnxModelManager(settings)
    app.state.model_manager = model_manager
    classifier = ClassifierService(
        settings.model,
        settings.device,
        manager=model_manager,
        settings=settings,
    )
    app.state.classifier = classifier
    app.state.classification_queue = ClassificationQueue(classifier, settings.max_concurrent)

    logger.info("imageclassify ready")
    yield

    logger.info("Shutting down imageclassify")
    classifier.dispose()
    model_manager.shutdown()
    logger.info("imageclassify shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="imageclassify",
        description="Platform-adaptive ONNX image classification API",
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
