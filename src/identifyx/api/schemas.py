"""Pydantic request/response schemas for the IdentifyX API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from identifyx.workflow import format_result

if TYPE_CHECKING:
    from identifyx.session import WorkflowSession


class ButtonView(BaseModel):
    """The single action button as the UI shows it."""

    action: str = Field(description="One of 'load_model', 'upload', 'identify', 'reset', 'none'")
    text: str


class ResultView(BaseModel):
    """A single classification result with its rendered text."""

    label: str
    probability: float = Field(ge=0.0, le=1.0)
    text: str = Field(description="Rendered as '<label>: %<percent to 2 decimals>'")


class ErrorView(BaseModel):
    """Fatal error of the last load or classify call."""

    kind: str = Field(description="'model_load' or 'classification'")
    message: str


class SessionView(BaseModel):
    """Everything the UI needs to render one session."""

    state: str
    button: ButtonView
    show_image: bool
    show_results: bool
    image_url: str | None = None
    results: list[ResultView]
    error: ErrorView | None = None

    @classmethod
    def from_session(cls, session: WorkflowSession) -> SessionView:
        button = session.button
        return cls(
            state=session.state.value,
            button=ButtonView(action=button.action.value, text=button.text),
            show_image=session.show_image,
            show_results=session.show_results,
            image_url=session.image.url if session.image is not None else None,
            results=[
                ResultView(
                    label=result.label,
                    probability=result.probability,
                    text=format_result(result.label, result.probability),
                )
                for result in session.results
            ],
            error=ErrorView(kind=session.error.kind.value, message=session.error.message) if session.error else None,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    active_sessions: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str
    homepage: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
