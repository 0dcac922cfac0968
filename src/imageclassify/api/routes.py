"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from imageclassify.api.auth import require_api_key
from imageclassify.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from imageclassify.ml.model_manager import MODEL_REGISTRY
from imageclassify.ml.preprocessing import ImageDecodeError

if TYPE_CHECKING:
    from imageclassify.config import Settings
    from imageclassify.ml.image_classifier import ClassifierService
    from imageclassify.ml.inference import ClassificationQueue
    from imageclassify.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_queue(request: Request) -> ClassificationQueue:
    queue: ClassificationQueue = request.app.state.classification_queue
    return queue


def _get_classifier(request: Request) -> ClassifierService:
    classifier: ClassifierService = request.app.state.classifier
    return classifier


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return its categories ranked by confidence."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    queue = _get_queue(request)
    try:
        scores = await queue.classify(data)
    except ImageDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except TimeoutError as exc:
        logger.warning("Classification queue full, rejecting %s", file.filename)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, retry later",
        ) from exc

    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return ClassifyImageResponse(
        model=str(queue.classifier.weight),
        tags=[ImageTag(label=label, confidence=confidence) for label, confidence in ranked],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    classifier = _get_classifier(request)
    queue = _get_queue(request)
    return HealthResponse(
        status="ok",
        device=str(classifier.device),
        provider=classifier.provider_plan.selected,
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=queue.in_flight,
        queue_depth=queue.waiting,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List known models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return known models, marking the one this server classifies with."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=str(spec.weight),
                description=spec.description,
                status="active" if spec.weight == settings.model else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
