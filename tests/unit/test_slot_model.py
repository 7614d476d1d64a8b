"""
Unit tests for slot validation and window overlap.
"""

from datetime import timedelta, timezone

import pytest

from conftest import at, make_slot
from domain import InvalidCapacity, InvalidSlotWindow


class TestSlotValidation:
    """Slots reject bad windows and capacities on construction."""

    def test_end_before_start(self):
        with pytest.raises(InvalidSlotWindow):
            make_slot(start=at(10), end=at(9))

    def test_empty_window(self):
        with pytest.raises(InvalidSlotWindow):
            make_slot(start=at(10), end=at(10))

    @pytest.mark.parametrize("capacity", [0, -1])
    def test_non_positive_capacity(self, capacity):
        with pytest.raises(InvalidCapacity):
            make_slot(capacity=capacity)


class TestSlotOverlap:
    """Strict overlap test between slot windows."""

    def test_partial_overlap(self):
        a = make_slot(1, start=at(9), end=at(10))
        b = make_slot(2, start=at(9, 30), end=at(10, 30))
        assert a.overlaps(b) and b.overlaps(a)

    def test_containment(self):
        a = make_slot(1, start=at(9), end=at(12))
        b = make_slot(2, start=at(10), end=at(11))
        assert a.overlaps(b)

    def test_touching_endpoints(self):
        a = make_slot(1, start=at(9), end=at(10))
        b = make_slot(2, start=at(10), end=at(11))
        assert not a.overlaps(b)


class TestSlotTimezones:
    """Slot windows are stored as aware UTC datetimes."""

    def test_naive_times_taken_as_utc(self):
        slot = make_slot(start=at(9), end=at(10))
        assert slot.start_time == at(9).replace(tzinfo=timezone.utc)
        assert slot.end_time.tzinfo is timezone.utc

    def test_offsets_converted_to_utc(self):
        paris = timezone(timedelta(hours=2))
        slot = make_slot(start=at(11).replace(tzinfo=paris), end=at(12).replace(tzinfo=paris))
        assert slot.start_time == at(9).replace(tzinfo=timezone.utc)

    def test_mixed_aware_and_naive_window(self):
        slot = make_slot(start=at(9).replace(tzinfo=timezone.utc), end=at(10))
        assert slot.end_time - slot.start_time == timedelta(hours=1)

    def test_mixed_window_ending_before_start(self):
        with pytest.raises(InvalidSlotWindow):
            make_slot(start=at(9).replace(tzinfo=timezone.utc), end=at(8))

    def test_overlap_between_aware_and_naive_slots(self):
        aware = make_slot(1, start=at(9).replace(tzinfo=timezone.utc), end=at(10).replace(tzinfo=timezone.utc))
        naive = make_slot(2, start=at(9, 30), end=at(10, 30))
        later = make_slot(3, start=at(11), end=at(12))
        assert aware.overlaps(naive)
        assert not aware.overlaps(later)
