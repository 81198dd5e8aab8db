"""Task lifecycle transition table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from marketplace.models.tasks import TaskStatus

TransitionActor = Literal["owner", "executor"]


@dataclass(frozen=True)
class Transition:
    """One allowed edge of the lifecycle graph."""

    name: str
    source: TaskStatus
    target: TaskStatus
    actor: TransitionActor
    requires_assignment: bool
    invalid_state_message: str
    forbidden_message: str


SELECT_EXECUTOR = Transition(
    name="select_proposal",
    source=TaskStatus.OPEN,
    target=TaskStatus.IN_PROGRESS,
    actor="owner",
    requires_assignment=False,
    invalid_state_message="Only OPEN tasks can select executor.",
    forbidden_message="Only task owner can select proposal.",
)
CANCEL = Transition(
    name="cancel",
    source=TaskStatus.OPEN,
    target=TaskStatus.CANCELED,
    actor="owner",
    requires_assignment=False,
    invalid_state_message="Only OPEN tasks can be canceled.",
    forbidden_message="Only task owner can cancel this task.",
)
SEND_TO_REVIEW = Transition(
    name="send_to_review",
    source=TaskStatus.IN_PROGRESS,
    target=TaskStatus.ON_REVIEW,
    actor="executor",
    requires_assignment=True,
    invalid_state_message="Only IN_PROGRESS tasks can be sent to review.",
    forbidden_message="Only assigned executor can send task to review.",
)
APPROVE = Transition(
    name="approve",
    source=TaskStatus.ON_REVIEW,
    target=TaskStatus.COMPLETED,
    actor="owner",
    requires_assignment=True,
    invalid_state_message="Only ON_REVIEW tasks can be approved.",
    forbidden_message="Only task owner can approve task completion.",
)
REJECT_REVIEW = Transition(
    name="reject_review",
    source=TaskStatus.ON_REVIEW,
    target=TaskStatus.IN_PROGRESS,
    actor="owner",
    requires_assignment=True,
    invalid_state_message="Only ON_REVIEW tasks can be rejected.",
    forbidden_message="Only task owner can reject review.",
)
