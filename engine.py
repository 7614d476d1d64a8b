from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional, TypeVar

from loguru import logger

from config import Settings, get_settings
from coordinator import SlotCoordinator
from domain import (
    AllocationEngine,
    AllocationResult,
    ConcurrencyConflict,
    Doctor,
    DuplicateGuard,
    DuplicateOverlap,
    DuplicateSameSlot,
    InvalidTransition,
    OUTSTANDING_STATUSES,
    Patient,
    PatientType,
    PriorityResolver,
    ReleaseResult,
    Slot,
    SlotView,
    Token,
    TokenSource,
    TokenStatus,
    WaitlistScheduler,
)
from store import InMemoryStore

T = TypeVar("T")


class TokenEngine:
    """
    Entry point for every token operation.

    Responsibilities:
    - Runs the duplicate check and the admission decision for a booking
      under one patient + slot lock.
    - Runs release and promotion for cancel / no-show / completion under
      the slot lock.
    - Commits each operation's output to the store in one write.
    """

    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or InMemoryStore()
        self.coordinator = SlotCoordinator(timeout=self.settings.slot_lock_timeout)
        self.resolver = PriorityResolver(self.settings.priority_table())
        self.guard = DuplicateGuard()
        self.allocator = AllocationEngine()
        self.scheduler = WaitlistScheduler()

    def reset(self) -> None:
        """Clear all stored state. Slot and patient locks are kept."""
        self.store.reset()

    # -- entities ----------------------------------------------------------

    def create_doctor(self, name: str) -> Doctor:
        doctor = self.store.create_doctor(name)
        logger.info(f"Created doctor {doctor.id} ({doctor.name})")
        return doctor

    def list_doctors(self) -> List[Doctor]:
        return self.store.list_doctors()

    def create_slot(
        self,
        doctor_id: int,
        start_time: datetime,
        end_time: datetime,
        max_capacity: int,
    ) -> Slot:
        return self.store.create_slot(doctor_id, start_time, end_time, max_capacity)

    def create_patient(
        self, name: str, patient_type: PatientType = PatientType.NORMAL
    ) -> Patient:
        return self.store.create_patient(name, patient_type)

    # -- bookings ----------------------------------------------------------

    def book_token(
        self,
        slot_id: int,
        patient_id: int,
        source: TokenSource,
    ) -> AllocationResult:
        self.store.get_patient(patient_id)
        self.store.load_slot(slot_id)

        with self.coordinator.booking(patient_id, slot_id):
            slot = self.store.load_slot(slot_id)
            tokens = self.store.load_slot_tokens(slot)
            outstanding = self.store.load_patient_outstanding_tokens(
                patient_id, slot.doctor_id
            )
            try:
                self.guard.check(patient_id, slot, outstanding)
            except (DuplicateSameSlot, DuplicateOverlap) as exc:
                logger.warning(f"Rejected booking on slot {slot_id}: {exc}")
                raise

            token = Token(
                id=self.store.next_token_id(),
                slot_id=slot.id,
                patient_id=patient_id,
                source=source,
                priority=self.resolver.resolve(source),
                created_at=self.store.next_created_at(),
            )
            result = self.allocator.admit(slot, token, tokens)

            changed = [result.token]
            if result.preempted_token is not None:
                changed.append(result.preempted_token)
            self.store.commit(slot, changed)

        logger.info(
            f"Token {token.id} ({source.value}, priority {token.priority}) "
            f"for patient {patient_id} on slot {slot_id}: {result.outcome.value}"
        )
        if result.preempted_token is not None:
            logger.info(
                f"Token {result.preempted_token.id} preempted to the waitlist of slot {slot_id}"
            )
        return result

    def emergency_admit(self, slot_id: int, patient_id: int) -> AllocationResult:
        return self.book_token(slot_id, patient_id, TokenSource.EMERGENCY)

    # -- releases ----------------------------------------------------------

    def cancel_token(self, token_id: int) -> ReleaseResult:
        return self._release(token_id, TokenStatus.CANCELLED, OUTSTANDING_STATUSES)

    def mark_no_show(self, token_id: int) -> ReleaseResult:
        return self._release(token_id, TokenStatus.NO_SHOW, OUTSTANDING_STATUSES)

    def complete_token(self, token_id: int) -> ReleaseResult:
        return self._release(
            token_id, TokenStatus.COMPLETED, frozenset({TokenStatus.ALLOCATED})
        )

    def _release(
        self,
        token_id: int,
        new_status: TokenStatus,
        allowed: frozenset,
    ) -> ReleaseResult:
        slot_id = self.store.load_token(token_id).slot_id

        with self.coordinator.slot(slot_id):
            token = self.store.load_token(token_id)
            if token.status not in allowed:
                raise InvalidTransition(
                    f"Token {token_id} is {token.status.value}, "
                    f"cannot mark it {new_status.value}"
                )

            slot = self.store.load_slot(slot_id)
            tokens = self.store.load_slot_tokens(slot)
            tokens.setdefault(token.id, token)

            promoted_id = self.scheduler.release_and_promote(
                slot, token.id, new_status, tokens
            )
            released = tokens[token.id]
            promoted = tokens[promoted_id] if promoted_id is not None else None

            changed = [released] if promoted is None else [released, promoted]
            self.store.commit(slot, changed)

        logger.info(f"Token {token_id} on slot {slot_id} marked {new_status.value}")
        if promoted is not None:
            logger.info(f"Token {promoted.id} promoted from the waitlist of slot {slot_id}")
        return ReleaseResult(released=released, promoted=promoted)

    # -- views -------------------------------------------------------------

    def get_slot_view(self, slot_id: int) -> SlotView:
        self.store.load_slot(slot_id)
        with self.coordinator.slot(slot_id):
            slot = self.store.load_slot(slot_id)
            tokens = self.store.load_slot_tokens(slot)

        active = sorted(
            (tokens[tid] for tid in slot.active_ids),
            key=lambda t: (t.created_at, t.id),
        )
        waitlist = [tokens[tid] for tid in slot.waitlist_ids]
        return SlotView(slot=slot, active_tokens=active, waitlist_tokens=waitlist)

    def get_schedule_for_doctor(self, doctor_id: int) -> Dict:
        doctor = self.store.get_doctor(doctor_id)
        return {
            "doctor_id": doctor.id,
            "doctor_name": doctor.name,
            "slots": [self.get_slot_view(slot_id) for slot_id in doctor.slot_ids],
        }

    # -- retries -----------------------------------------------------------

    def with_retries(
        self, operation: Callable[[], T], attempts: Optional[int] = None
    ) -> T:
        """Run ``operation``, retrying it on ``ConcurrencyConflict``."""
        attempts = attempts or self.settings.conflict_retry_attempts
        attempt = 1
        while True:
            try:
                return operation()
            except ConcurrencyConflict:
                if attempt >= attempts:
                    raise
                logger.warning(f"Concurrency conflict, retrying ({attempt}/{attempts})")
                attempt += 1
