from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from config import DEFAULT_PRIORITY_WEIGHTS


class TokenSource(str, Enum):
    ONLINE = "online"
    WALK_IN = "walkin"
    PRIORITY = "priority"
    FOLLOW_UP = "followup"
    EMERGENCY = "emergency"


class TokenStatus(str, Enum):
    ALLOCATED = "allocated"
    WAITLISTED = "waitlisted"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    COMPLETED = "completed"


class PatientType(str, Enum):
    NORMAL = "normal"
    PRIORITY = "priority"
    FOLLOW_UP = "followup"


class AllocationOutcome(str, Enum):
    ALLOCATED = "allocated"
    PREEMPTED = "preempted"
    WAITLISTED = "waitlisted"


OUTSTANDING_STATUSES = frozenset({TokenStatus.ALLOCATED, TokenStatus.WAITLISTED})
TERMINAL_STATUSES = frozenset(
    {TokenStatus.CANCELLED, TokenStatus.NO_SHOW, TokenStatus.COMPLETED}
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AllocationError(Exception):
    """Base class for every recoverable error raised by the engine."""

    code = "allocation_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(AllocationError):
    code = "not_found"
    status_code = 404


class DuplicateSameSlot(AllocationError):
    code = "duplicate_same_slot"
    status_code = 409


class DuplicateOverlap(AllocationError):
    code = "duplicate_overlap"
    status_code = 409


class InvalidSlotWindow(AllocationError):
    code = "invalid_slot_window"


class InvalidCapacity(AllocationError):
    code = "invalid_capacity"


class ConcurrencyConflict(AllocationError):
    code = "concurrency_conflict"
    status_code = 409
    retryable = True


class InvalidTransition(AllocationError):
    code = "invalid_transition"
    status_code = 409


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def to_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Doctor:
    id: int
    name: str
    slot_ids: List[int] = field(default_factory=list)


@dataclass
class Patient:
    id: int
    name: str
    type: PatientType = PatientType.NORMAL


@dataclass
class Slot:
    id: int
    doctor_id: int
    start_time: datetime
    end_time: datetime
    max_capacity: int
    active_ids: Set[int] = field(default_factory=set)
    waitlist_ids: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.start_time = to_utc(self.start_time)
        self.end_time = to_utc(self.end_time)
        if self.end_time <= self.start_time:
            raise InvalidSlotWindow(
                f"Slot end time {self.end_time.isoformat()} must be after "
                f"start time {self.start_time.isoformat()}"
            )
        if self.max_capacity <= 0:
            raise InvalidCapacity(
                f"Slot capacity must be positive, got {self.max_capacity}"
            )

    @property
    def has_capacity(self) -> bool:
        return len(self.active_ids) < self.max_capacity

    def overlaps(self, other: "Slot") -> bool:
        """Strict overlap: windows that only touch at an endpoint do not overlap."""
        return self.start_time < other.end_time and self.end_time > other.start_time


@dataclass
class Token:
    id: int
    slot_id: int
    patient_id: int
    source: TokenSource
    priority: int
    created_at: datetime
    status: TokenStatus = TokenStatus.ALLOCATED

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_STATUSES


@dataclass
class AllocationResult:
    token: Token
    outcome: AllocationOutcome
    preempted_token: Optional[Token] = None

    @property
    def waitlisted(self) -> bool:
        return self.outcome is AllocationOutcome.WAITLISTED


@dataclass
class ReleaseResult:
    released: Token
    promoted: Optional[Token] = None

    @property
    def promoted_token_id(self) -> Optional[int]:
        return self.promoted.id if self.promoted else None


@dataclass
class SlotView:
    slot: Slot
    active_tokens: List[Token]
    waitlist_tokens: List[Token]


# ---------------------------------------------------------------------------
# Allocation components
# ---------------------------------------------------------------------------


class PriorityResolver:
    """Maps a booking source to its fixed priority weight.

    Unknown sources resolve to 0.
    """

    def __init__(self, weights: Optional[Mapping[str, int]] = None) -> None:
        self._weights: Mapping[str, int] = (
            weights if weights is not None else MappingProxyType(DEFAULT_PRIORITY_WEIGHTS)
        )

    def resolve(self, source: Union[TokenSource, str]) -> int:
        key = source.value if isinstance(source, TokenSource) else str(source)
        return self._weights.get(key, 0)


class DuplicateGuard:
    """
    Rejects a booking when the patient already holds an outstanding token
    on the target slot, or on another slot of the same doctor whose window
    overlaps the target slot.

    ``outstanding`` must be a snapshot taken under the same lock as the
    admission that follows.
    """

    def check(
        self,
        patient_id: int,
        target_slot: Slot,
        outstanding: Iterable[Tuple[Slot, Token]],
    ) -> None:
        candidates = [
            (slot, token)
            for slot, token in outstanding
            if token.patient_id == patient_id and token.is_outstanding
        ]

        for slot, token in candidates:
            if slot.id == target_slot.id:
                raise DuplicateSameSlot(
                    f"Patient {patient_id} already has token {token.id} "
                    f"for slot {target_slot.id}"
                )

        for slot, token in candidates:
            if slot.doctor_id == target_slot.doctor_id and slot.overlaps(target_slot):
                raise DuplicateOverlap(
                    f"Patient {patient_id} already has token {token.id} "
                    f"for overlapping slot {slot.id}"
                )


def preemption_key(token: Token) -> Tuple[int, datetime, int]:
    # lowest priority first, then the oldest
    return (token.priority, token.created_at, token.id)


def waitlist_key(token: Token) -> Tuple[int, datetime, int]:
    # highest priority first, then the earliest
    return (-token.priority, token.created_at, token.id)


class AllocationEngine:
    """
    Decides admit / preempt / waitlist for a candidate token on one slot.

    Responsibilities:
    - Enforces per-slot capacity.
    - On a full slot, evicts exactly one lowest-priority active token
      (oldest first among equals) when the candidate's priority is strictly
      higher.
    - Otherwise appends the candidate to the waitlist.

    ``tokens`` is the arena of Token records referenced by the slot; the
    candidate is added to it. Slot membership and token statuses are
    mutated in place.
    """

    def admit(
        self,
        slot: Slot,
        candidate: Token,
        tokens: Dict[int, Token],
    ) -> AllocationResult:
        tokens[candidate.id] = candidate

        if slot.has_capacity:
            self._activate(slot, candidate)
            return AllocationResult(token=candidate, outcome=AllocationOutcome.ALLOCATED)

        target = min((tokens[tid] for tid in slot.active_ids), key=preemption_key)

        if candidate.priority > target.priority:
            slot.active_ids.discard(target.id)
            target.status = TokenStatus.WAITLISTED
            slot.waitlist_ids.append(target.id)
            self._activate(slot, candidate)
            return AllocationResult(
                token=candidate,
                outcome=AllocationOutcome.PREEMPTED,
                preempted_token=target,
            )

        candidate.status = TokenStatus.WAITLISTED
        slot.waitlist_ids.append(candidate.id)
        return AllocationResult(token=candidate, outcome=AllocationOutcome.WAITLISTED)

    @staticmethod
    def _activate(slot: Slot, token: Token) -> None:
        token.status = TokenStatus.ALLOCATED
        slot.active_ids.add(token.id)


class WaitlistScheduler:
    """Releases a token from a slot and promotes at most one waitlisted token."""

    def release_and_promote(
        self,
        slot: Slot,
        released_token_id: int,
        new_status: TokenStatus,
        tokens: Dict[int, Token],
    ) -> Optional[int]:
        if new_status not in TERMINAL_STATUSES:
            raise ValueError(f"{new_status.value} is not a terminal status")

        slot.active_ids.discard(released_token_id)
        if released_token_id in slot.waitlist_ids:
            slot.waitlist_ids.remove(released_token_id)
        tokens[released_token_id].status = new_status

        if not slot.waitlist_ids or not slot.has_capacity:
            return None

        slot.waitlist_ids.sort(key=lambda tid: waitlist_key(tokens[tid]))
        promoted_id = slot.waitlist_ids.pop(0)
        tokens[promoted_id].status = TokenStatus.ALLOCATED
        slot.active_ids.add(promoted_id)
        return promoted_id
