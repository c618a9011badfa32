"""API route definitions."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Request, Response, UploadFile, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from identifyx.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    SessionView,
)
from identifyx.config import Settings
from identifyx.ml.model_manager import MODEL_REGISTRY
from identifyx.session import SESSION_COOKIE, FileSelection, WorkflowConflictError, WorkflowSession

if TYPE_CHECKING:
    from identifyx.ml.inference import InferencePool
    from identifyx.ml.model_manager import ModelManager
    from identifyx.session import SessionStore

_CONFLICT = {status.HTTP_409_CONFLICT: {"model": ErrorResponse}}

_bearer = HTTPBearer(auto_error=False, description="Required only when IDENTIFYX_API_KEY is set")


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_session_store(request: Request) -> SessionStore:
    store: SessionStore = request.app.state.session_store
    return store


async def require_api_key(
    settings: Annotated[Settings, Depends(_get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
) -> None:
    """Gate /api/v1 behind the configured key; open when no key is set."""
    expected = settings.api_key
    if expected is None:
        return
    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])


def get_workflow_session(request: Request, response: Response) -> WorkflowSession:
    """Resolve the caller's session from its cookie, creating one if needed."""
    store = _get_session_store(request)
    session = store.get_or_create(request.cookies.get(SESSION_COOKIE))
    response.set_cookie(SESSION_COOKIE, session.session_id, httponly=True, samesite="lax")
    return session


CurrentSession = Annotated[WorkflowSession, Depends(get_workflow_session)]


def peek_workflow_session(request: Request) -> WorkflowSession:
    """Resolve the caller's session without registering a new one."""
    return _get_session_store(request).get_or_blank(request.cookies.get(SESSION_COOKIE))


ViewedSession = Annotated[WorkflowSession, Depends(peek_workflow_session)]


def _conflict(exc: WorkflowConflictError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.get(
    "/session",
    response_model=SessionView,
    summary="Current workflow state",
)
async def get_session(session: ViewedSession) -> SessionView:
    """Return what the UI currently shows for this session.

    A caller without a session sees the initial view; the session itself
    is created by the first operation.
    """
    return SessionView.from_session(session)


@router.post(
    "/session/load-model",
    response_model=SessionView,
    responses=_CONFLICT,
    summary="Load the classifier",
)
async def load_model(session: CurrentSession) -> SessionView:
    """Load the model. A load failure is reported in the returned view's ``error``."""
    try:
        await session.load_model()
    except WorkflowConflictError as exc:
        raise _conflict(exc) from exc
    return SessionView.from_session(session)


@router.post(
    "/session/upload",
    response_model=SessionView,
    responses=_CONFLICT,
    summary="Upload the photo to classify",
)
async def upload(
    session: CurrentSession,
    files: Annotated[list[UploadFile] | None, File()] = None,
) -> SessionView:
    """Use the first uploaded file as the session image; other files are ignored."""
    selection: list[FileSelection] = []
    if files:
        first = files[0]
        selection.append(
            FileSelection(
                filename=first.filename or "upload",
                content_type=first.content_type or "application/octet-stream",
                data=await first.read(),
            )
        )
    try:
        session.upload(selection)
    except WorkflowConflictError as exc:
        raise _conflict(exc) from exc
    return SessionView.from_session(session)


@router.post(
    "/session/identify",
    response_model=SessionView,
    responses=_CONFLICT,
    summary="Classify the uploaded photo",
)
async def identify(session: CurrentSession) -> SessionView:
    """Classify the current image. A failure is reported in the returned view's ``error``."""
    try:
        await session.identify()
    except WorkflowConflictError as exc:
        raise _conflict(exc) from exc
    return SessionView.from_session(session)


@router.post(
    "/session/reset",
    response_model=SessionView,
    responses=_CONFLICT,
    summary="Clear the photo and results",
)
async def reset(session: CurrentSession) -> SessionView:
    try:
        session.reset()
    except WorkflowConflictError as exc:
        raise _conflict(exc) from exc
    return SessionView.from_session(session)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        active_sessions=len(_get_session_store(request)),
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available classifiers; the configured one is marked active."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            status="active" if spec.name == settings.classifier_model else "available",
            license=spec.license,
            homepage=spec.homepage,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
