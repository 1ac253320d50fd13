from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache

import boto3
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request
from starlette.responses import Response

from .config import Settings
from .dal import DynamoDBBookingStore
from .directory import DynamoDBDirectory, EntityDirectory, InMemoryDirectory, OpenDirectory
from .errors import (
    BookingNotFound,
    DuplicateIdentifier,
    InvalidTransition,
    InvalidWindow,
    ResourceBusy,
    ResourceUnavailable,
    SchedulingError,
    UnknownClient,
    UnknownResource,
)
from .lifecycle import BookingManager
from .models import Booking, BookingCreate, BookingUpdate
from .store import InMemoryBookingStore

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="ClinicScheduler")

_STATUS_BY_ERROR: dict[type[SchedulingError], int] = {
    InvalidWindow: 400,
    BookingNotFound: 404,
    UnknownClient: 404,
    UnknownResource: 404,
    ResourceUnavailable: 409,
    InvalidTransition: 409,
    ResourceBusy: 503,
    DuplicateIdentifier: 500,
}


def build_manager(settings: Settings) -> BookingManager:
    if settings.store_backend == "memory":
        return BookingManager(
            InMemoryBookingStore(),
            clients=_memory_directory(settings.patient_ids),
            resources=_memory_directory(settings.doctor_ids),
        )

    dynamodb = boto3.resource("dynamodb")
    return BookingManager(
        DynamoDBBookingStore.from_settings(settings, dynamodb),
        clients=DynamoDBDirectory(dynamodb.Table(settings.patients_table_name)),
        resources=DynamoDBDirectory(dynamodb.Table(settings.doctors_table_name)),
    )


def _memory_directory(entity_ids: tuple[str, ...]) -> EntityDirectory:
    if not entity_ids:
        return OpenDirectory()
    return InMemoryDirectory(list(entity_ids))


@lru_cache(maxsize=1)
def get_manager() -> BookingManager:
    return build_manager(Settings.from_env())


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    if get_manager.cache_info().currsize:
        get_manager().close()
        get_manager.cache_clear()


app = FastAPI(title="Clinic Scheduler API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(SchedulingError)
def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    status_code = next(
        (code for kind, code in _STATUS_BY_ERROR.items() if isinstance(exc, kind)), 400
    )
    body: dict = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, ResourceUnavailable):
        metrics.add_metric(name="BookingConflict", value=1, unit=MetricUnit.Count)
        body["conflicting_booking_id"] = exc.conflicting_booking_id
        if exc.conflicting_window is not None:
            body["conflicting_window"] = exc.conflicting_window.model_dump(mode="json")

    if isinstance(exc, DuplicateIdentifier):
        logger.error("Unexpected booking id collision", extra={"booking_id": exc.booking_id})
    else:
        logger.info(
            "Booking request rejected",
            extra={"code": exc.code, "path": request.url.path, "detail": exc.message},
        )
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@tracer.capture_method
@app.post("/bookings", response_model=Booking, status_code=201)
def create_booking(
    payload: BookingCreate, manager: BookingManager = Depends(get_manager)
) -> Booking:
    booking = manager.create(payload)
    metrics.add_metric(name="CreateBooking", value=1, unit=MetricUnit.Count)
    logger.info(
        "Created booking",
        extra={"booking_id": booking.booking_id, "resource_id": booking.resource_id},
    )
    return booking


@tracer.capture_method
@app.get("/bookings", response_model=list[Booking])
def list_bookings(manager: BookingManager = Depends(get_manager)) -> list[Booking]:
    return manager.list_all()


@tracer.capture_method
@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(booking_id: str, manager: BookingManager = Depends(get_manager)) -> Booking:
    return manager.get(booking_id)


@tracer.capture_method
@app.put("/bookings/{booking_id}", response_model=Booking)
def update_booking(
    booking_id: str, payload: BookingUpdate, manager: BookingManager = Depends(get_manager)
) -> Booking:
    booking = manager.update(booking_id, payload)
    metrics.add_metric(name="UpdateBooking", value=1, unit=MetricUnit.Count)
    logger.info("Updated booking", extra={"booking_id": booking_id})
    return booking


@tracer.capture_method
@app.delete("/bookings/{booking_id}")
def delete_booking(booking_id: str, manager: BookingManager = Depends(get_manager)) -> Response:
    manager.remove(booking_id)
    metrics.add_metric(name="DeleteBooking", value=1, unit=MetricUnit.Count)
    logger.info("Deleted booking", extra={"booking_id": booking_id})
    return Response(status_code=204)


@tracer.capture_method
@app.post("/bookings/{booking_id}/cancel", response_model=Booking)
def cancel_booking(booking_id: str, manager: BookingManager = Depends(get_manager)) -> Booking:
    booking = manager.cancel(booking_id)
    metrics.add_metric(name="CancelBooking", value=1, unit=MetricUnit.Count)
    return booking


@tracer.capture_method
@app.post("/bookings/{booking_id}/complete", response_model=Booking)
def complete_booking(
    booking_id: str, manager: BookingManager = Depends(get_manager)
) -> Booking:
    booking = manager.complete(booking_id)
    metrics.add_metric(name="CompleteBooking", value=1, unit=MetricUnit.Count)
    return booking


@tracer.capture_method
@app.get("/resources/{resource_id}/bookings", response_model=list[Booking])
def list_resource_bookings(
    resource_id: str, manager: BookingManager = Depends(get_manager)
) -> list[Booking]:
    return manager.list_for_resource(resource_id)


@tracer.capture_method
@app.get("/clients/{client_id}/bookings", response_model=list[Booking])
def list_client_bookings(
    client_id: str, manager: BookingManager = Depends(get_manager)
) -> list[Booking]:
    return manager.list_for_client(client_id)
