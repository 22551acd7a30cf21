"""Pydantic request/response schemas for the ClassifyX API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SessionCreatedResponse(BaseModel):
    """Response for session creation."""

    session_id: str


class SessionResponse(BaseModel):
    """Current state of a classification session."""

    model_config = ConfigDict(protected_namespaces=())

    session_id: str
    model_status: str = Field(description="Model status: 'no_model', 'loading', 'ready', or 'failed'")
    image_url: str | None = Field(default=None, description="data: URL of the selected image")
    prediction: str | None = Field(default=None, description="Label of the most recent prediction")
    history_length: int


class PredictionResponse(BaseModel):
    """Response for the predict endpoint."""

    label: str


class HistoryEntryResponse(BaseModel):
    """A single past prediction."""

    image_url: str
    predicted_label: str


class HistoryResponse(BaseModel):
    """Prediction history, oldest first."""

    entries: list[HistoryEntryResponse]


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    gpu: bool
    variant: str
    model_status: str
    sessions: int
    concurrent_requests: int
    queue_depth: int


class VariantInfo(BaseModel):
    """Information about a built-in classifier variant."""

    name: str
    title: str
    description: str
    labels: list[str]
    input_shape: list[int] = Field(description="Model input shape: [1, height, width, channels]")
    status: str = Field(description="Variant status: 'active' or 'available'")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[VariantInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
