"""Per-browser workflow sessions.

A ``WorkflowSession`` owns everything one user sees: the workflow state,
the loaded model, the uploaded image handle, the latest results and the
last fatal error. Handlers receive the session explicitly; nothing here is
global. ``SessionStore`` maps session ids (kept in a cookie) to sessions
and closes sessions that have been idle for too long.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from identifyx.ml.loader import ClassificationError, ModelLoadError
from identifyx.ml.preprocessing import decode_image
from identifyx.workflow import (
    INITIAL_STATE,
    ButtonAction,
    ButtonSpec,
    WorkflowEvent,
    WorkflowState,
    advance,
    button_for,
    show_image,
    show_results,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from identifyx.images import ImageHandle, ImageStore
    from identifyx.ml.image_classifier import ClassificationResult
    from identifyx.ml.loader import Model, ModelProvider

logger = logging.getLogger(__name__)

SESSION_COOKIE = "identifyx_session"

_BUSY_STATES = (WorkflowState.LOADING_MODEL, WorkflowState.CLASSIFYING)


class ErrorKind(StrEnum):
    MODEL_LOAD = "model_load"
    CLASSIFICATION = "classification"


@dataclass(frozen=True)
class SessionError:
    """A fatal failure of one of the suspending operations, shown to the user."""

    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class FileSelection:
    """One file picked in the upload control."""

    filename: str
    content_type: str
    data: bytes


class WorkflowConflictError(Exception):
    """An operation was requested in a state that does not offer it."""

    def __init__(self, operation: str, state: WorkflowState) -> None:
        super().__init__(f"Cannot {operation} in state {state}")
        self.operation = operation
        self.state = state


class WorkflowSession:
    """State and handlers for a single user of the classifier UI."""

    def __init__(
        self,
        session_id: str,
        provider: ModelProvider,
        images: ImageStore,
        *,
        max_file_size: int,
        max_image_pixels: int,
    ) -> None:
        self.session_id = session_id
        self._provider = provider
        self._images = images
        self._max_file_size = max_file_size
        self._max_image_pixels = max_image_pixels

        self.state: WorkflowState = INITIAL_STATE
        self.model: Model | None = None
        self.image: ImageHandle | None = None
        self.results: list[ClassificationResult] = []
        self.error: SessionError | None = None
        self.last_used: float = time.monotonic()

    # -- Derived view flags -------------------------------------------------

    @property
    def show_image(self) -> bool:
        return show_image(self.state)

    @property
    def show_results(self) -> bool:
        return show_results(self.state)

    @property
    def button(self) -> ButtonSpec:
        return button_for(self.state)

    # -- Handlers -----------------------------------------------------------

    async def load_model(self) -> None:
        """Load the classifier. Failure is recorded and returns to ``initial``."""
        self._require(WorkflowState.INITIAL, "load model")
        self.error = None
        self._fire(WorkflowEvent.NEXT)
        try:
            model = await self._provider.load()
        except ModelLoadError as exc:
            logger.warning("Session %s: model load failed: %s", self.session_id, exc)
            self.error = SessionError(ErrorKind.MODEL_LOAD, str(exc))
            self._fire(WorkflowEvent.FAIL)
            return
        except BaseException:
            self._fire(WorkflowEvent.FAIL)
            raise
        self.model = model
        self._fire(WorkflowEvent.NEXT)

    def upload(self, files: Sequence[FileSelection]) -> bool:
        """Take the first selected file as the image to classify.

        An empty selection, or a file that is too big or cannot be decoded,
        leaves the session untouched. Uploading while ``ready`` replaces the
        current image.

        Returns:
            True if an image was accepted.
        """
        if not files:
            return False
        self._require((WorkflowState.AWAITING_UPLOAD, WorkflowState.READY), "upload")

        selected = files[0]
        if len(selected.data) > self._max_file_size:
            logger.info(
                "Session %s: ignoring %s (%d bytes > %d)",
                self.session_id,
                selected.filename,
                len(selected.data),
                self._max_file_size,
            )
            return False
        try:
            pixels = decode_image(selected.data, self._max_image_pixels)
        except ValueError as exc:
            logger.info("Session %s: ignoring %s: %s", self.session_id, selected.filename, exc)
            return False

        content_type = selected.content_type
        if not content_type.startswith("image/"):
            content_type = "application/octet-stream"
        self._release_image()
        self.image = self._images.acquire(selected.filename, content_type, selected.data, pixels)
        self.error = None
        if self.state == WorkflowState.AWAITING_UPLOAD:
            self._fire(WorkflowEvent.NEXT)
        return True

    async def identify(self) -> None:
        """Classify the current image. Failure is recorded and returns to ``ready``."""
        self._require(WorkflowState.READY, "identify")
        if self.model is None or self.image is None:
            raise WorkflowConflictError("identify", self.state)
        self.error = None
        self._fire(WorkflowEvent.NEXT)
        try:
            results = await self.model.classify(self.image.pixels)
        except ClassificationError as exc:
            logger.warning("Session %s: classification failed: %s", self.session_id, exc)
            self.error = SessionError(ErrorKind.CLASSIFICATION, str(exc))
            self._fire(WorkflowEvent.FAIL)
            return
        except BaseException:
            self._fire(WorkflowEvent.FAIL)
            raise
        self.results = list(results)
        self._fire(WorkflowEvent.NEXT)

    def reset(self) -> None:
        """Clear results and image and go back to awaiting an upload."""
        self._require(WorkflowState.COMPLETE, "reset")
        self.results = []
        self._release_image()
        self.error = None
        self._fire(WorkflowEvent.NEXT)

    async def press(self) -> None:
        """Run whatever the action button does in the current state."""
        action = self.button.action
        if action == ButtonAction.LOAD_MODEL:
            await self.load_model()
        elif action == ButtonAction.IDENTIFY:
            await self.identify()
        elif action == ButtonAction.RESET:
            self.reset()
        # UPLOAD opens the file picker client-side; NONE is a busy label.

    def touch(self) -> None:
        self.last_used = time.monotonic()

    def close(self) -> None:
        """Release resources held by the session."""
        self._release_image()
        self.results = []
        self.model = None

    # -- Internal -----------------------------------------------------------

    def _fire(self, event: WorkflowEvent) -> None:
        previous = self.state
        self.state = advance(previous, event)
        logger.debug("Session %s: %s --%s--> %s", self.session_id, previous, event, self.state)

    def _require(self, allowed: WorkflowState | tuple[WorkflowState, ...], operation: str) -> None:
        if not isinstance(allowed, tuple):
            allowed = (allowed,)
        if self.state not in allowed:
            raise WorkflowConflictError(operation, self.state)

    def _release_image(self) -> None:
        self._images.revoke(self.image)
        self.image = None


class SessionStore:
    """Session registry keyed by the id stored in the browser cookie.

    Sessions are registered only by ``create``. Once ``max_sessions`` are
    held, creating another closes the least recently used session that is
    not in the middle of loading or classifying.
    """

    def __init__(self, factory: Callable[[str], WorkflowSession], max_sessions: int = 1000) -> None:
        self._factory = factory
        self._max_sessions = max_sessions
        self._sessions: dict[str, WorkflowSession] = {}

    def get(self, session_id: str | None) -> WorkflowSession | None:
        if session_id is None:
            return None
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def blank(self) -> WorkflowSession:
        """An unregistered session in ``initial``, for rendering a first visit."""
        return self._factory("")

    def create(self) -> WorkflowSession:
        if len(self._sessions) >= self._max_sessions:
            self._evict_least_recent()
        session_id = secrets.token_urlsafe(24)
        session = self._factory(session_id)
        self._sessions[session_id] = session
        logger.info("Created session %s", session_id)
        return session

    def get_or_create(self, session_id: str | None) -> WorkflowSession:
        return self.get(session_id) or self.create()

    def get_or_blank(self, session_id: str | None) -> WorkflowSession:
        return self.get(session_id) or self.blank()

    def evict_idle(self, ttl: float) -> int:
        """Close and drop sessions idle for more than ``ttl`` seconds."""
        if ttl == 0:
            return 0
        now = time.monotonic()
        expired = [
            sid
            for sid, session in self._sessions.items()
            if (now - session.last_used) > ttl and session.state not in _BUSY_STATES
        ]
        for sid in expired:
            self._sessions.pop(sid).close()
            logger.info("Evicted idle session %s", sid)
        return len(expired)

    def close_all(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()

    def _evict_least_recent(self) -> None:
        idle = [
            (session.last_used, sid)
            for sid, session in self._sessions.items()
            if session.state not in _BUSY_STATES
        ]
        if not idle:
            logger.warning("Session limit %d reached with every session busy", self._max_sessions)
            return
        _, sid = min(idle)
        self._sessions.pop(sid).close()
        logger.info("Session limit %d reached, evicted session %s", self._max_sessions, sid)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
