"""
Serialization boundary for slot mutations.

Every read-decide-write sequence against one slot runs while holding that
slot's lock. Bookings additionally hold a per-patient lock, taken before
the slot lock, so the cross-slot overlap check and the write that follows
cannot interleave with another booking for the same patient.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from loguru import logger

from domain import ConcurrencyConflict


class SlotCoordinator:
    """
    Registry of per-slot and per-patient locks.

    Locks are acquired with a bounded wait; on timeout the caller gets a
    retryable ``ConcurrencyConflict`` instead of blocking forever. Operations
    on different slots never share a lock.

    Locks are never discarded: ids restart at 1 after a store reset, so a
    reset reuses the same locks and an operation still in flight keeps
    excluding new callers on its slot.
    """

    def __init__(self, timeout: float = 2.0) -> None:
        self.timeout = timeout
        self._registry_lock = threading.Lock()
        self._slot_locks: Dict[int, threading.Lock] = {}
        self._patient_locks: Dict[int, threading.Lock] = {}

    def _lock_for(self, registry: Dict[int, threading.Lock], key: int) -> threading.Lock:
        with self._registry_lock:
            lock = registry.get(key)
            if lock is None:
                lock = registry[key] = threading.Lock()
            return lock

    @contextmanager
    def _hold(self, lock: threading.Lock, label: str) -> Iterator[None]:
        if not lock.acquire(timeout=self.timeout):
            logger.warning(f"Timed out after {self.timeout}s waiting for {label}")
            raise ConcurrencyConflict(f"Could not acquire {label}, retry the request")
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def slot(self, slot_id: int) -> Iterator[None]:
        """Hold the lock of one slot."""
        with self._hold(self._lock_for(self._slot_locks, slot_id), f"lock on slot {slot_id}"):
            yield

    @contextmanager
    def booking(self, patient_id: int, slot_id: int) -> Iterator[None]:
        """Hold the patient lock, then the slot lock."""
        patient_lock = self._lock_for(self._patient_locks, patient_id)
        with self._hold(patient_lock, f"lock on patient {patient_id}"):
            with self.slot(slot_id):
                yield
