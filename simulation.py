from datetime import datetime, timedelta

from config import configure_logging, get_settings
from domain import AllocationError, PatientType, SlotView, TokenSource
from engine import TokenEngine


def print_slot(view: SlotView, names: dict) -> None:
    slot = view.slot
    print(
        f"\nSlot {slot.id} ({slot.start_time:%H:%M}-{slot.end_time:%H:%M}, "
        f"capacity {slot.max_capacity})"
    )
    print("  Active:")
    for t in view.active_tokens:
        print(f"    #{t.id} {names[t.patient_id]} [{t.source.value}] priority={t.priority}")
    print("  Waitlist:")
    for t in view.waitlist_tokens:
        print(f"    #{t.id} {names[t.patient_id]} [{t.source.value}] priority={t.priority}")


def run_simulation() -> None:
    """
    Simulate one OPD day with three doctors.

    Demonstrates:
    - Slot capacity limits.
    - Prioritisation between sources.
    - Preempting lower-priority patients to the waitlist.
    - Promotion from the waitlist after cancellation.
    - Duplicate and overlapping booking rejection.
    """
    configure_logging(get_settings().log_level)
    engine = TokenEngine()

    day = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
    doctors = [engine.create_doctor(name) for name in ("Dr. A", "Dr. B", "Dr. C")]
    slots = {}
    for doctor in doctors:
        for hour in (9, 10):
            start = day + timedelta(hours=hour)
            slots[(doctor.id, hour)] = engine.create_slot(
                doctor.id, start, start + timedelta(hours=1), max_capacity=3
            )
    # Straddles Dr. A's two regular slots
    overlapping = engine.create_slot(
        doctors[0].id,
        day + timedelta(hours=9, minutes=30),
        day + timedelta(hours=10, minutes=30),
        max_capacity=3,
    )

    patients = [
        engine.create_patient("Alice", PatientType.NORMAL),
        engine.create_patient("Bob", PatientType.PRIORITY),
        engine.create_patient("Charlie", PatientType.FOLLOW_UP),
        engine.create_patient("Daisy", PatientType.NORMAL),
        engine.create_patient("Eve", PatientType.NORMAL),
    ]
    names = {p.id: p.name for p in patients}
    alice, bob, charlie, daisy, eve = patients

    slot = slots[(doctors[0].id, 9)]
    print("Doctors created:", ", ".join(d.name for d in doctors))

    for patient, source in (
        (alice, TokenSource.ONLINE),
        (daisy, TokenSource.WALK_IN),
        (bob, TokenSource.PRIORITY),
    ):
        res = engine.book_token(slot.id, patient.id, source)
        print(f"{patient.name} [{source.value}]: {res.outcome.value}")

    res = engine.book_token(slot.id, charlie.id, TokenSource.FOLLOW_UP)
    print(f"Charlie [followup]: {res.outcome.value}")
    if res.preempted_token:
        print("  Preempted:", names[res.preempted_token.patient_id])

    res = engine.emergency_admit(slot.id, eve.id)
    print(f"Eve [emergency]: {res.outcome.value}")
    if res.preempted_token:
        print("  Preempted:", names[res.preempted_token.patient_id])

    bob_token = next(
        t for t in engine.get_slot_view(slot.id).active_tokens if t.patient_id == bob.id
    )
    cancel_info = engine.cancel_token(bob_token.id)
    print("Cancelled:", names[cancel_info.released.patient_id])
    if cancel_info.promoted:
        print("Promoted from waitlist:", names[cancel_info.promoted.patient_id])

    for target in (slot, overlapping):
        try:
            engine.book_token(target.id, charlie.id, TokenSource.ONLINE)
        except AllocationError as exc:
            print(f"Charlie on slot {target.id} rejected: {exc.code}")

    print("\nFinal schedule for", doctors[0].name)
    for view in engine.get_schedule_for_doctor(doctors[0].id)["slots"]:
        print_slot(view, names)


if __name__ == "__main__":
    run_simulation()
