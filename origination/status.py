"""
Application Status Module

Single status type covering every lifecycle state, including the staff-internal
review and sync states, plus the allowed-transition table and its checks.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Union
from enum import Enum


class ApplicationStatus(Enum):
    """Application lifecycle status; internal states are hidden from applicants"""
    DRAFT = ("DRAFT", False, "Borrador")
    SUBMITTED = ("SUBMITTED", False, "Enviada")
    IN_REVIEW = ("IN_REVIEW", False, "En revisión")
    DOCS_PENDING = ("DOCS_PENDING", False, "Documentos pendientes")
    CORRECTIONS_PENDING = ("CORRECTIONS_PENDING", False, "Correcciones pendientes")
    ANALYST_REVIEW = ("ANALYST_REVIEW", True, "Revisión de analista")
    SUPERVISOR_REVIEW = ("SUPERVISOR_REVIEW", True, "Revisión de supervisor")
    COUNTER_OFFERED = ("COUNTER_OFFERED", False, "Contraoferta")
    APPROVED = ("APPROVED", False, "Aprobada")
    REJECTED = ("REJECTED", False, "Rechazada")
    CANCELLED = ("CANCELLED", False, "Cancelada")
    SYNCED = ("SYNCED", True, "Sincronizada")
    DISBURSED = ("DISBURSED", False, "Desembolsada")
    ACTIVE = ("ACTIVE", False, "Activa")
    COMPLETED = ("COMPLETED", False, "Completada")
    DEFAULT = ("DEFAULT", False, "En mora")

    def __init__(self, code: str, internal: bool, label: str):
        self.code = code
        self.internal = internal
        self.label = label

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_public(self) -> bool:
        return not self.internal

    @classmethod
    def from_code(cls, code: Union[str, 'ApplicationStatus']) -> 'ApplicationStatus':
        """Look up a status by its code"""
        if isinstance(code, cls):
            return code
        try:
            return cls[str(code).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown application status: {code}") from None

    @classmethod
    def public_statuses(cls) -> List['ApplicationStatus']:
        return [status for status in cls if status.is_public]


S = ApplicationStatus

TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    S.DRAFT: frozenset({S.SUBMITTED, S.CANCELLED}),
    S.SUBMITTED: frozenset({S.IN_REVIEW, S.DOCS_PENDING, S.CORRECTIONS_PENDING, S.CANCELLED}),
    S.IN_REVIEW: frozenset({
        S.DOCS_PENDING, S.CORRECTIONS_PENDING, S.ANALYST_REVIEW, S.APPROVED, S.REJECTED, S.CANCELLED
    }),
    S.DOCS_PENDING: frozenset({S.IN_REVIEW, S.SUBMITTED, S.CANCELLED}),
    S.CORRECTIONS_PENDING: frozenset({S.IN_REVIEW, S.SUBMITTED, S.CANCELLED}),
    S.ANALYST_REVIEW: frozenset({
        S.SUPERVISOR_REVIEW, S.DOCS_PENDING, S.CORRECTIONS_PENDING, S.APPROVED, S.REJECTED, S.CANCELLED
    }),
    S.SUPERVISOR_REVIEW: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    # DISBURSED is reachable without passing through SYNCED
    S.APPROVED: frozenset({S.SYNCED, S.DISBURSED, S.CANCELLED}),
    S.DISBURSED: frozenset({S.ACTIVE, S.COMPLETED, S.DEFAULT}),
    S.ACTIVE: frozenset({S.COMPLETED, S.DEFAULT}),
    S.REJECTED: frozenset(),
    S.CANCELLED: frozenset(),
    S.SYNCED: frozenset(),
    S.COMPLETED: frozenset(),
    S.DEFAULT: frozenset(),
    # Counter offers are stored on the application without entering this state
    S.COUNTER_OFFERED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.REJECTED, S.CANCELLED, S.SYNCED, S.COMPLETED, S.DEFAULT})

REVIEW_STATUSES = frozenset({S.IN_REVIEW, S.ANALYST_REVIEW, S.SUPERVISOR_REVIEW})

ACTIVE_PROCESSING_STATUSES = frozenset({
    S.SUBMITTED, S.IN_REVIEW, S.DOCS_PENDING, S.CORRECTIONS_PENDING,
    S.COUNTER_OFFERED, S.ANALYST_REVIEW, S.SUPERVISOR_REVIEW,
})


@dataclass(frozen=True)
class TransitionCheck:
    """Outcome of validating a (current, target) pair"""
    allowed: bool
    current_status: ApplicationStatus
    attempted_status: ApplicationStatus
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def validate_transition(current: ApplicationStatus, target: ApplicationStatus) -> TransitionCheck:
    """Check a move against the transition table. No side effects."""
    if current.is_terminal:
        return TransitionCheck(False, current, target, f"Status '{current.code}' is terminal")
    if target not in TRANSITIONS.get(current, frozenset()):
        return TransitionCheck(
            False, current, target,
            f"Cannot change status from '{current.code}' to '{target.code}'"
        )
    return TransitionCheck(True, current, target)


def can_transition(current: ApplicationStatus, target: ApplicationStatus) -> bool:
    return validate_transition(current, target).allowed


def allowed_transitions(current: ApplicationStatus, include_internal: bool = True) -> List[ApplicationStatus]:
    """Statuses reachable in one step, in declaration order"""
    targets = TRANSITIONS.get(current, frozenset())
    return [
        status for status in ApplicationStatus
        if status in targets and (include_internal or status.is_public)
    ]


def is_terminal(status: ApplicationStatus) -> bool:
    return status in TERMINAL_STATUSES
