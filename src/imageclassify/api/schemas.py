"""Pydantic request/response schemas for the imageclassify API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single category with the score the model gave it."""

    label: str
    confidence: float = Field(description="Raw model score for this category")


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    model: str
    tags: list[ImageTag] = Field(description="Model output ranked by confidence (descending)")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    device: str
    provider: str
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about a known model."""

    name: str
    description: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
