from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from config import configure_logging, get_settings
from domain import (
    AllocationError,
    AllocationOutcome,
    PatientType,
    ReleaseResult,
    SlotView,
    Token,
    TokenSource,
    TokenStatus,
)
from engine import TokenEngine

engine = TokenEngine()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting OPD Token Allocation Engine")
    yield
    logger.info("Shutting down OPD Token Allocation Engine")


app = FastAPI(title="OPD Token Allocation Engine", lifespan=lifespan)


@app.exception_handler(AllocationError)
async def allocation_error_handler(request: Request, exc: AllocationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message, "retryable": exc.retryable},
    )


class CreateDoctorRequest(BaseModel):
    name: str = Field(min_length=1)


class DoctorSummary(BaseModel):
    id: int
    name: str
    slot_ids: List[int] = []


class CreateSlotRequest(BaseModel):
    start_time: datetime
    end_time: datetime
    max_capacity: int


class CreatePatientRequest(BaseModel):
    name: str = Field(min_length=1)
    type: PatientType = PatientType.NORMAL


class PatientResponse(BaseModel):
    id: int
    name: str
    type: PatientType


class BookTokenRequest(BaseModel):
    patient_id: int
    source: TokenSource


class EmergencyRequest(BaseModel):
    patient_id: int


class TokenResponse(BaseModel):
    id: int
    slot_id: int
    patient_id: int
    source: TokenSource
    priority: int
    status: TokenStatus
    created_at: datetime


class SlotResponse(BaseModel):
    id: int
    doctor_id: int
    start_time: datetime
    end_time: datetime
    max_capacity: int
    active_ids: List[int]
    waitlist_ids: List[int]


class AllocationResponse(BaseModel):
    token: TokenResponse
    status: AllocationOutcome
    preempted_token: Optional[TokenResponse] = None


class ReleaseResponse(BaseModel):
    success: bool = True
    token: TokenResponse
    promoted_token_id: Optional[int] = None


class SlotViewResponse(BaseModel):
    slot: SlotResponse
    tokens: List[TokenResponse]
    waitlist: List[TokenResponse]


class ScheduleResponse(BaseModel):
    doctor_id: int
    doctor_name: str
    slots: List[SlotViewResponse]


def to_token_response(t: Token) -> TokenResponse:
    return TokenResponse(
        id=t.id,
        slot_id=t.slot_id,
        patient_id=t.patient_id,
        source=t.source,
        priority=t.priority,
        status=t.status,
        created_at=t.created_at,
    )


def to_slot_view_response(view: SlotView) -> SlotViewResponse:
    slot = view.slot
    return SlotViewResponse(
        slot=SlotResponse(
            id=slot.id,
            doctor_id=slot.doctor_id,
            start_time=slot.start_time,
            end_time=slot.end_time,
            max_capacity=slot.max_capacity,
            active_ids=[t.id for t in view.active_tokens],
            waitlist_ids=list(slot.waitlist_ids),
        ),
        tokens=[to_token_response(t) for t in view.active_tokens],
        waitlist=[to_token_response(t) for t in view.waitlist_tokens],
    )


def to_release_response(result: ReleaseResult) -> ReleaseResponse:
    return ReleaseResponse(
        token=to_token_response(result.released),
        promoted_token_id=result.promoted_token_id,
    )


@app.get("/health")
def health_check() -> dict:
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.post("/doctors", response_model=DoctorSummary)
def create_doctor(body: CreateDoctorRequest) -> DoctorSummary:
    doctor = engine.create_doctor(body.name)
    return DoctorSummary(id=doctor.id, name=doctor.name, slot_ids=doctor.slot_ids)


@app.get("/doctors", response_model=List[DoctorSummary])
def list_doctors() -> List[DoctorSummary]:
    return [
        DoctorSummary(id=d.id, name=d.name, slot_ids=d.slot_ids)
        for d in engine.list_doctors()
    ]


@app.get("/doctors/{doctor_id}/schedule", response_model=ScheduleResponse)
def get_schedule(doctor_id: int) -> ScheduleResponse:
    schedule = engine.get_schedule_for_doctor(doctor_id)
    return ScheduleResponse(
        doctor_id=schedule["doctor_id"],
        doctor_name=schedule["doctor_name"],
        slots=[to_slot_view_response(v) for v in schedule["slots"]],
    )


@app.post("/doctors/{doctor_id}/slots", response_model=SlotResponse)
def create_slot(doctor_id: int, body: CreateSlotRequest) -> SlotResponse:
    slot = engine.create_slot(
        doctor_id=doctor_id,
        start_time=body.start_time,
        end_time=body.end_time,
        max_capacity=body.max_capacity,
    )
    return SlotResponse(
        id=slot.id,
        doctor_id=slot.doctor_id,
        start_time=slot.start_time,
        end_time=slot.end_time,
        max_capacity=slot.max_capacity,
        active_ids=[],
        waitlist_ids=[],
    )


@app.post("/patients", response_model=PatientResponse)
def create_patient(body: CreatePatientRequest) -> PatientResponse:
    patient = engine.create_patient(body.name, body.type)
    return PatientResponse(id=patient.id, name=patient.name, type=patient.type)


@app.post("/slots/{slot_id}/tokens", response_model=AllocationResponse)
def book_token(slot_id: int, body: BookTokenRequest) -> AllocationResponse:
    result = engine.with_retries(
        lambda: engine.book_token(slot_id, body.patient_id, body.source)
    )
    return AllocationResponse(
        token=to_token_response(result.token),
        status=result.outcome,
        preempted_token=to_token_response(result.preempted_token)
        if result.preempted_token
        else None,
    )


@app.post("/slots/{slot_id}/emergency", response_model=AllocationResponse)
def emergency_admit(slot_id: int, body: EmergencyRequest) -> AllocationResponse:
    result = engine.with_retries(lambda: engine.emergency_admit(slot_id, body.patient_id))
    return AllocationResponse(
        token=to_token_response(result.token),
        status=result.outcome,
        preempted_token=to_token_response(result.preempted_token)
        if result.preempted_token
        else None,
    )


@app.get("/slots/{slot_id}", response_model=SlotViewResponse)
def get_slot(slot_id: int) -> SlotViewResponse:
    return to_slot_view_response(engine.get_slot_view(slot_id))


@app.post("/tokens/{token_id}/cancel", response_model=ReleaseResponse)
def cancel_token(token_id: int) -> ReleaseResponse:
    return to_release_response(engine.with_retries(lambda: engine.cancel_token(token_id)))


@app.post("/tokens/{token_id}/no_show", response_model=ReleaseResponse)
def mark_no_show(token_id: int) -> ReleaseResponse:
    return to_release_response(engine.with_retries(lambda: engine.mark_no_show(token_id)))


@app.post("/tokens/{token_id}/complete", response_model=ReleaseResponse)
def complete_token(token_id: int) -> ReleaseResponse:
    return to_release_response(engine.with_retries(lambda: engine.complete_token(token_id)))


@app.post("/admin/reset")
def reset_all() -> dict:
    """Reset in-memory data (useful during development / simulation)."""
    engine.reset()
    return {"detail": "State cleared"}


def run_server() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run_server()
