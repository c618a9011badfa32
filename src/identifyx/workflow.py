"""Workflow state machine for the classification UI.

The UI moves through a fixed cycle of states driven by a single ``next``
trigger:

    initial -> loading_model -> awaiting_upload -> ready -> classifying -> complete
                                     ^                                        |
                                     +----------------------------------------+

The two suspending states also accept ``fail``, which returns to the state
the user can retry from. Any other trigger resets the machine to ``initial``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

logger = logging.getLogger(__name__)


class WorkflowState(StrEnum):
    INITIAL = "initial"
    LOADING_MODEL = "loadingModel"
    AWAITING_UPLOAD = "awaitingUpload"
    READY = "ready"
    CLASSIFYING = "classifying"
    COMPLETE = "complete"


class WorkflowEvent(StrEnum):
    NEXT = "next"
    FAIL = "fail"


class ButtonAction(StrEnum):
    """What pressing the single action button does in a given state."""

    LOAD_MODEL = "load_model"
    UPLOAD = "upload"
    IDENTIFY = "identify"
    RESET = "reset"
    NONE = "none"


@dataclass(frozen=True)
class ButtonSpec:
    action: ButtonAction
    text: str


@dataclass(frozen=True)
class StateSpec:
    """Static description of one workflow state."""

    on: dict[str, WorkflowState]
    button: ButtonSpec
    show_image: bool = False
    show_results: bool = False


INITIAL_STATE = WorkflowState.INITIAL

STATE_TABLE: dict[WorkflowState, StateSpec] = {
    WorkflowState.INITIAL: StateSpec(
        on={WorkflowEvent.NEXT: WorkflowState.LOADING_MODEL},
        button=ButtonSpec(ButtonAction.LOAD_MODEL, "Load Model"),
    ),
    WorkflowState.LOADING_MODEL: StateSpec(
        on={
            WorkflowEvent.NEXT: WorkflowState.AWAITING_UPLOAD,
            WorkflowEvent.FAIL: WorkflowState.INITIAL,
        },
        button=ButtonSpec(ButtonAction.NONE, "Loading Model..."),
    ),
    WorkflowState.AWAITING_UPLOAD: StateSpec(
        on={WorkflowEvent.NEXT: WorkflowState.READY},
        button=ButtonSpec(ButtonAction.UPLOAD, "Upload photo"),
    ),
    WorkflowState.READY: StateSpec(
        on={WorkflowEvent.NEXT: WorkflowState.CLASSIFYING},
        button=ButtonSpec(ButtonAction.IDENTIFY, "Identify"),
        show_image=True,
    ),
    WorkflowState.CLASSIFYING: StateSpec(
        on={
            WorkflowEvent.NEXT: WorkflowState.COMPLETE,
            WorkflowEvent.FAIL: WorkflowState.READY,
        },
        button=ButtonSpec(ButtonAction.NONE, "Identifying"),
    ),
    WorkflowState.COMPLETE: StateSpec(
        on={WorkflowEvent.NEXT: WorkflowState.AWAITING_UPLOAD},
        button=ButtonSpec(ButtonAction.RESET, "Reset"),
        show_image=True,
        show_results=True,
    ),
}


def advance(state: WorkflowState, event: str = WorkflowEvent.NEXT) -> WorkflowState:
    """Return the state that follows ``state`` on ``event``.

    Events the state does not define reset the machine to ``initial``.
    """
    target = STATE_TABLE[state].on.get(event)
    if target is None:
        logger.warning("Unrecognized event %r in state %s, resetting to %s", event, state, INITIAL_STATE)
        return INITIAL_STATE
    return target


def show_image(state: WorkflowState) -> bool:
    return STATE_TABLE[state].show_image


def show_results(state: WorkflowState) -> bool:
    return STATE_TABLE[state].show_results


def button_for(state: WorkflowState) -> ButtonSpec:
    return STATE_TABLE[state].button


def format_result(label: str, probability: float) -> str:
    """Render one classification result the way the result list shows it."""
    return f"{label}: %{probability * 100:.2f}"
