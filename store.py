"""
In-memory registry of record for doctors, patients, slots and tokens.

Every load returns a detached copy, so callers can mutate what they read
and hand it back through ``commit`` as one all-or-nothing write.
"""

import threading
from copy import deepcopy
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Tuple

from loguru import logger

from domain import Doctor, NotFound, Patient, PatientType, Slot, Token


class InMemoryStore:
    """
    Thread-safe in-memory store.

    Individual reads and commits are atomic; serializing a whole
    read-decide-write sequence is the job of ``SlotCoordinator``.
    """

    def __init__(self) -> None:
        self._doctors: Dict[int, Doctor] = {}
        self._patients: Dict[int, Patient] = {}
        self._slots: Dict[int, Slot] = {}
        self._tokens: Dict[int, Token] = {}
        self._lock = threading.RLock()
        self._next_doctor_id = 1
        self._next_patient_id = 1
        self._next_slot_id = 1
        self._next_token_id = 1
        self._last_created_at = datetime.min.replace(tzinfo=timezone.utc)

    def reset(self) -> None:
        with self._lock:
            self._doctors.clear()
            self._patients.clear()
            self._slots.clear()
            self._tokens.clear()
            self._next_doctor_id = 1
            self._next_patient_id = 1
            self._next_slot_id = 1
            self._next_token_id = 1
            self._last_created_at = datetime.min.replace(tzinfo=timezone.utc)

    # -- doctors / patients / slots ---------------------------------------

    def create_doctor(self, name: str) -> Doctor:
        with self._lock:
            doctor = Doctor(id=self._next_doctor_id, name=name)
            self._next_doctor_id += 1
            self._doctors[doctor.id] = doctor
            return deepcopy(doctor)

    def list_doctors(self) -> List[Doctor]:
        with self._lock:
            return [deepcopy(d) for d in self._doctors.values()]

    def get_doctor(self, doctor_id: int) -> Doctor:
        with self._lock:
            if doctor_id not in self._doctors:
                raise NotFound(f"Doctor {doctor_id} not found")
            return deepcopy(self._doctors[doctor_id])

    def create_slot(
        self,
        doctor_id: int,
        start_time: datetime,
        end_time: datetime,
        max_capacity: int,
    ) -> Slot:
        with self._lock:
            if doctor_id not in self._doctors:
                raise NotFound(f"Doctor {doctor_id} not found")

            # Slot validates its window and capacity on construction
            slot = Slot(
                id=self._next_slot_id,
                doctor_id=doctor_id,
                start_time=start_time,
                end_time=end_time,
                max_capacity=max_capacity,
            )
            self._next_slot_id += 1
            self._slots[slot.id] = slot
            self._doctors[doctor_id].slot_ids.append(slot.id)
            logger.info(
                f"Created slot {slot.id} for doctor {doctor_id} "
                f"({slot.start_time.isoformat()} - {slot.end_time.isoformat()}, capacity {max_capacity})"
            )
            return deepcopy(slot)

    def create_patient(self, name: str, patient_type: PatientType) -> Patient:
        with self._lock:
            patient = Patient(id=self._next_patient_id, name=name, type=patient_type)
            self._next_patient_id += 1
            self._patients[patient.id] = patient
            return deepcopy(patient)

    def get_patient(self, patient_id: int) -> Patient:
        with self._lock:
            if patient_id not in self._patients:
                raise NotFound(f"Patient {patient_id} not found")
            return deepcopy(self._patients[patient_id])

    # -- engine collaborator interface ------------------------------------

    def load_slot(self, slot_id: int) -> Slot:
        with self._lock:
            if slot_id not in self._slots:
                raise NotFound(f"Slot {slot_id} not found")
            return deepcopy(self._slots[slot_id])

    def load_token(self, token_id: int) -> Token:
        with self._lock:
            if token_id not in self._tokens:
                raise NotFound(f"Token {token_id} not found")
            return deepcopy(self._tokens[token_id])

    def load_slot_tokens(self, slot: Slot) -> Dict[int, Token]:
        """Copies of every token referenced by the slot's active set and waitlist."""
        with self._lock:
            ids = list(slot.active_ids) + list(slot.waitlist_ids)
            return {tid: deepcopy(self._tokens[tid]) for tid in ids}

    def load_patient_outstanding_tokens(
        self, patient_id: int, doctor_id: int
    ) -> List[Tuple[Slot, Token]]:
        """Outstanding tokens of a patient on any slot of the given doctor."""
        with self._lock:
            if doctor_id not in self._doctors:
                raise NotFound(f"Doctor {doctor_id} not found")
            slot_ids = set(self._doctors[doctor_id].slot_ids)
            return [
                (deepcopy(self._slots[token.slot_id]), deepcopy(token))
                for token in self._tokens.values()
                if token.patient_id == patient_id
                and token.slot_id in slot_ids
                and token.is_outstanding
            ]

    def next_token_id(self) -> int:
        with self._lock:
            token_id = self._next_token_id
            self._next_token_id += 1
            return token_id

    def next_created_at(self) -> datetime:
        """UTC creation stamp that never goes backwards, even if the clock does."""
        with self._lock:
            now = max(datetime.now(timezone.utc), self._last_created_at)
            self._last_created_at = now
            return now

    def commit(self, slot: Slot, tokens: Iterable[Token]) -> None:
        """Persist a slot's membership and the affected tokens in one step."""
        tokens = [deepcopy(t) for t in tokens]
        with self._lock:
            if slot.id not in self._slots:
                raise NotFound(f"Slot {slot.id} not found")
            stored = self._slots[slot.id]
            stored.active_ids = set(slot.active_ids)
            stored.waitlist_ids = list(slot.waitlist_ids)
            for token in tokens:
                self._tokens[token.id] = token
