"""Per-version state machine.

Success path:
  pending → fetched → analyzed → assembled → upload_requested →
  blob_uploaded → index_uploaded → notified

Every non-terminal state may also move to ``failed``. ``notified`` and
``failed`` are terminal. Transitions are explicit and validated; the
orchestrator never changes a task's state any other way.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Optional, Union

from worker.core.errors import InvalidTransitionError, reason_chain


class VersionState(StrEnum):
    PENDING = "pending"
    FETCHED = "fetched"
    ANALYZED = "analyzed"
    ASSEMBLED = "assembled"
    UPLOAD_REQUESTED = "upload_requested"
    BLOB_UPLOADED = "blob_uploaded"
    INDEX_UPLOADED = "index_uploaded"
    NOTIFIED = "notified"
    FAILED = "failed"


SUCCESS_PATH: list[VersionState] = [
    VersionState.PENDING,
    VersionState.FETCHED,
    VersionState.ANALYZED,
    VersionState.ASSEMBLED,
    VersionState.UPLOAD_REQUESTED,
    VersionState.BLOB_UPLOADED,
    VersionState.INDEX_UPLOADED,
    VersionState.NOTIFIED,
]

TERMINAL_STATES = frozenset({VersionState.NOTIFIED, VersionState.FAILED})

VALID_TRANSITIONS: dict[VersionState, set[VersionState]] = {
    current: {following, VersionState.FAILED}
    for current, following in zip(SUCCESS_PATH, SUCCESS_PATH[1:])
}


def validate_transition(current: VersionState, target: VersionState) -> None:
    """Enforce the version state machine.

    Raises InvalidTransitionError if the transition is not allowed.
    """
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            f"Invalid version state transition: {current} -> {target}. "
            f"Allowed transitions from '{current}': "
            f"{sorted(allowed) or 'none (terminal state)'}"
        )


@dataclass
class VersionTask:
    """Explicit state of one version's trip through the pipeline."""

    package: str
    version: str
    state: VersionState = VersionState.PENDING
    history: list[VersionState] = field(default_factory=lambda: [VersionState.PENDING])
    reasons: list[str] = field(default_factory=list)
    failed_in: Optional[VersionState] = None
    blob_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state == VersionState.NOTIFIED

    def advance(self, target: VersionState) -> None:
        validate_transition(self.state, target)
        self.state = target
        self.history.append(target)

    def fail(self, reason: Union[BaseException, str]) -> None:
        """Move to ``failed``, recording the reason chain."""
        validate_transition(self.state, VersionState.FAILED)
        self.failed_in = self.state
        if isinstance(reason, BaseException):
            self.reasons = reason_chain(reason)
        else:
            self.reasons = [reason]
        self.state = VersionState.FAILED
        self.history.append(VersionState.FAILED)
