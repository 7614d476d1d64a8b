"""
Shared fixtures for the token allocation tests.
"""

from datetime import datetime, timedelta

import pytest

from config import Settings
from domain import Slot, Token, TokenSource, TokenStatus
from engine import TokenEngine

DAY = datetime(2026, 3, 2, 0, 0, 0)


def at(hour: int, minute: int = 0) -> datetime:
    return DAY + timedelta(hours=hour, minutes=minute)


def make_slot(slot_id: int = 1, doctor_id: int = 1, start=None, end=None, capacity: int = 3) -> Slot:
    start = start or at(9)
    end = end or start + timedelta(hours=1)
    return Slot(id=slot_id, doctor_id=doctor_id, start_time=start, end_time=end, max_capacity=capacity)


def make_token(
    token_id: int,
    priority: int,
    slot_id: int = 1,
    patient_id: int = None,
    seconds: int = None,
    source: TokenSource = TokenSource.ONLINE,
    status: TokenStatus = TokenStatus.ALLOCATED,
) -> Token:
    return Token(
        id=token_id,
        slot_id=slot_id,
        patient_id=patient_id if patient_id is not None else token_id,
        source=source,
        priority=priority,
        created_at=DAY + timedelta(seconds=seconds if seconds is not None else token_id),
        status=status,
    )


@pytest.fixture
def settings():
    return Settings(slot_lock_timeout=0.2, conflict_retry_attempts=3)


@pytest.fixture
def engine(settings):
    return TokenEngine(settings=settings)


@pytest.fixture
def doctor(engine):
    return engine.create_doctor("Dr. A")


@pytest.fixture
def slot(engine, doctor):
    return engine.create_slot(doctor.id, at(9), at(10), max_capacity=3)
