"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status

from classifyx.api.middleware import require_api_key
from classifyx.api.schemas import (
    ErrorResponse,
    HealthResponse,
    HistoryEntryResponse,
    HistoryResponse,
    ModelsResponse,
    PredictionResponse,
    SessionCreatedResponse,
    SessionResponse,
    VariantInfo,
)
from classifyx.ml.inference import ModelContractError
from classifyx.ml.preprocessing import ImageDecodeError
from classifyx.ml.variants import VARIANTS
from classifyx.session import PredictionUnavailableError, SessionNotFoundError

if TYPE_CHECKING:
    from classifyx.config import Settings
    from classifyx.ml.inference import InferencePool
    from classifyx.session import ClassifierSession, ModelSlot, SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])

_BUSY_DETAIL = "Inference queue is full, try again shortly"


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_registry(request: Request) -> SessionRegistry:
    registry: SessionRegistry = request.app.state.sessions
    return registry


def _get_session(request: Request, session_id: str) -> ClassifierSession:
    try:
        return _get_registry(request).get(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from None


def _session_view(session: ClassifierSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        model_status=session.model_status.value,
        image_url=session.image_url,
        prediction=session.prediction,
        history_length=len(session.history),
    )


@router.post(
    "/sessions",
    response_model=SessionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a classification session",
)
async def create_session(request: Request) -> SessionCreatedResponse:
    session = _get_registry(request).create()
    return SessionCreatedResponse(session_id=session.session_id)


@router.get(
    "/sessions/{session_id}",
    response_model=SessionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Get session state",
)
async def get_session(request: Request, session_id: str) -> SessionResponse:
    return _session_view(_get_session(request, session_id))


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="End a session and discard its history",
)
async def end_session(request: Request, session_id: str) -> Response:
    try:
        _get_registry(request).end(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/sessions/{session_id}/image",
    response_model=SessionResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Select the image to classify",
)
async def select_image(request: Request, session_id: str, file: UploadFile) -> SessionResponse:
    """Upload an image; it replaces the session's current image but not its history."""
    session = _get_session(request, session_id)
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Expected an image/* upload, got '{content_type or 'unknown'}'",
        )

    image_bytes = await file.read()
    try:
        await session.select_image(image_bytes, content_type)
    except ImageDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except TimeoutError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_BUSY_DETAIL) from None
    return _session_view(session)


@router.post(
    "/sessions/{session_id}/predict",
    response_model=PredictionResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify the selected image",
)
async def predict(request: Request, session_id: str) -> PredictionResponse:
    """Run the classifier on the session's current image and append the result to its history."""
    session = _get_session(request, session_id)
    try:
        label = await session.predict()
    except PredictionUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ModelContractError as exc:
        logger.exception("Session %s: prediction failed", session_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except TimeoutError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_BUSY_DETAIL) from None
    return PredictionResponse(label=label)


@router.get(
    "/sessions/{session_id}/history",
    response_model=HistoryResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="List past predictions, oldest first",
)
async def get_history(request: Request, session_id: str) -> HistoryResponse:
    session = _get_session(request, session_id)
    return HistoryResponse(
        entries=[
            HistoryEntryResponse(image_url=entry.image_url, predicted_label=entry.predicted_label)
            for entry in session.history
        ]
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    model_slot: ModelSlot = request.app.state.model_slot
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        variant=settings.variant,
        model_status=model_slot.status.value,
        sessions=len(_get_registry(request)),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available classifier variants",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the built-in variants, marking the one this server runs."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            VariantInfo(
                name=variant.name,
                title=variant.title,
                description=variant.description,
                labels=list(variant.labels),
                input_shape=list(variant.input_shape),
                status="active" if variant.name == settings.variant else "available",
            )
            for variant in VARIANTS.values()
        ]
    )
