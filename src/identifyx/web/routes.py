"""Browser UI for IdentifyX.

The page is rendered on the server from the caller's workflow session.
The action button and the upload control post back to the server, which
runs the matching handler and redirects to the page again.
"""

from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, File, HTTPException, Request, UploadFile, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from identifyx.api.schemas import SessionView
from identifyx.images import IMAGE_ROUTE_PREFIX
from identifyx.ml.model_manager import MODEL_REGISTRY
from identifyx.session import SESSION_COOKIE, FileSelection, WorkflowConflictError

if TYPE_CHECKING:
    from identifyx.config import Settings
    from identifyx.session import SessionStore, WorkflowSession

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

router = APIRouter()


def _session_store(request: Request) -> SessionStore:
    store: SessionStore = request.app.state.session_store
    return store


def _resolve_session(request: Request) -> WorkflowSession:
    return _session_store(request).get_or_create(request.cookies.get(SESSION_COOKIE))


def _with_cookie(response: Response, session: WorkflowSession) -> Response:
    if not session.session_id:
        return response
    response.set_cookie(SESSION_COOKIE, session.session_id, httponly=True, samesite="lax")
    return response


def _back_to_page(session: WorkflowSession) -> Response:
    return _with_cookie(RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER), session)


@router.get("/", response_class=HTMLResponse)
async def home(request: Request) -> Response:
    """Classifier page for the caller's session."""
    session = _session_store(request).get_or_blank(request.cookies.get(SESSION_COOKIE))
    settings: Settings = request.app.state.settings
    spec = MODEL_REGISTRY.get(settings.classifier_model)
    response = templates.TemplateResponse(
        request,
        "index.html",
        {
            "view": SessionView.from_session(session),
            "model_name": settings.classifier_model,
            "model_homepage": spec.homepage if spec is not None else None,
        },
    )
    return _with_cookie(response, session)


@router.post("/press")
async def press(request: Request) -> Response:
    """Run the action behind the page's single button."""
    session = _resolve_session(request)
    try:
        await session.press()
    except WorkflowConflictError as exc:
        logger.debug("Ignoring button press: %s", exc)
    return _back_to_page(session)


@router.post("/upload")
async def upload(
    request: Request,
    files: Annotated[list[UploadFile] | None, File()] = None,
) -> Response:
    """Accept the file picked in the upload control."""
    session = _resolve_session(request)
    selection = [
        FileSelection(
            filename=item.filename,
            content_type=item.content_type or "application/octet-stream",
            data=await item.read(),
        )
        for item in (files or [])[:1]
        if item.filename
    ]
    try:
        session.upload(selection)
    except WorkflowConflictError as exc:
        logger.debug("Ignoring upload: %s", exc)
    return _back_to_page(session)


@router.get(IMAGE_ROUTE_PREFIX + "/{token}")
async def uploaded_image(request: Request, token: str) -> Response:
    """Serve the caller's uploaded image while its handle is live."""
    session = _session_store(request).get(request.cookies.get(SESSION_COOKIE))
    handle = session.image if session is not None else None
    if handle is None or not secrets.compare_digest(handle.token.encode(), token.encode()):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")
    return Response(
        content=handle.data,
        media_type=handle.content_type,
        headers={"Cache-Control": "no-store", "X-Content-Type-Options": "nosniff"},
    )
