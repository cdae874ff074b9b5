"""
Bookings and their status lifecycle.

A booking moves pending -> accepted -> in-progress -> completed, and may end
early as rejected (provider) or cancelled (customer). Which moves are legal
depends on whether the actor is the booking's customer or its provider; see
TRANSITIONS.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from pymongo import DESCENDING
from pymongo.database import Database

from config import Settings
from constants import MAX_BOOKING_IMAGES, BookingStatus, PaymentMethod, Role
from database import BOOKINGS, SERVICES, USERS, as_utc, paginate, serialize, to_object_id, utcnow
from deps import get_current_user, get_db, get_settings, get_storage, parse_body, require_role, user_role, validate_payload
from errors import Forbidden, InvalidTransition, NotFound, PastDate, ProviderMismatch, SelfBooking, ValidationFailed
from schemas import Address, Booking
from storage import MediaStorage, UploadedFile

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[Role, Dict[BookingStatus, FrozenSet[BookingStatus]]] = {
    Role.CUSTOMER: {
        BookingStatus.PENDING: frozenset({BookingStatus.CANCELLED}),
        BookingStatus.ACCEPTED: frozenset({BookingStatus.CANCELLED}),
    },
    Role.PROVIDER: {
        BookingStatus.PENDING: frozenset({BookingStatus.ACCEPTED, BookingStatus.REJECTED}),
        BookingStatus.ACCEPTED: frozenset({BookingStatus.IN_PROGRESS}),
        BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED}),
    },
    # Admins act on bookings only as one of the two parties
    Role.ADMIN: {},
}

TIMESTAMP_FIELDS = {
    BookingStatus.ACCEPTED: "accepted_at",
    BookingStatus.IN_PROGRESS: "started_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}

PHONE_PATTERN = r"^\+?[1-9]\d{0,15}$"

_DATETIME = TypeAdapter(datetime)


def allowed_targets(role: Role, current: BookingStatus) -> FrozenSet[BookingStatus]:
    return TRANSITIONS[role].get(current, frozenset())


def check_transition(role: Role, current: str, target: str) -> BookingStatus:
    try:
        current_status, target_status = BookingStatus(current), BookingStatus(target)
    except ValueError:
        raise InvalidTransition(getattr(current, "value", current), getattr(target, "value", target))
    if target_status not in allowed_targets(role, current_status):
        raise InvalidTransition(current_status.value, target_status.value)
    return target_status


def transition_updates(role: Role, target: BookingStatus, now: datetime) -> Dict[str, Any]:
    update: Dict[str, Any] = {"status": target.value, "updated_at": now}
    field = TIMESTAMP_FIELDS.get(target)
    if field:
        update[field] = now
    if target == BookingStatus.CANCELLED:
        update["cancelled_by"] = role.value
    return update


def reject_past_date(value: Any, now: Optional[datetime] = None) -> None:
    """Raise PastDate for a scheduled date at or before now; unparseable values are left to validation."""
    try:
        scheduled = as_utc(_DATETIME.validate_python(value))
    except (ValidationError, TypeError):
        return
    if scheduled <= (now or utcnow()):
        raise PastDate()


def actor_role(booking: Dict[str, Any], user_id: str) -> Role:
    if str(booking.get("customer_id")) == user_id:
        return Role.CUSTOMER
    if str(booking.get("provider_id")) == user_id:
        return Role.PROVIDER
    raise Forbidden("Not authorized to update this booking")


# Pydantic models
class BookingAddress(Address):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)


class BookingCreateRequest(BaseModel):
    service_id: str
    provider_id: str
    scheduled_date: datetime
    notes: Optional[str] = Field(None, max_length=500)
    customer_address: BookingAddress
    contact_phone: str = Field(..., pattern=PHONE_PATTERN)
    payment_method: PaymentMethod = PaymentMethod.CASH

    @field_validator("scheduled_date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    notes: Optional[str] = Field(None, max_length=500)


class BookingService:
    def __init__(self, db: Database, storage: MediaStorage, settings: Settings):
        self.db = db
        self.storage = storage
        self.settings = settings

    def _populate(self, booking: Dict[str, Any]) -> Dict[str, Any]:
        person = {"name": 1, "email": 1, "phone": 1, "avatar": 1}
        out = serialize(booking)
        customer = self.db[USERS].find_one({"_id": booking.get("customer_id")}, person)
        provider = self.db[USERS].find_one({"_id": booking.get("provider_id")}, person)
        service = self.db[SERVICES].find_one(
            {"_id": booking.get("service_id")},
            {"title": 1, "description": 1, "price": 1, "duration": 1, "category": 1},
        )
        out["customer"] = serialize(customer)
        out["provider"] = serialize(provider)
        out["service"] = serialize(service)
        return out

    def _filter_for(self, user: Dict[str, Any]) -> Dict[str, Any]:
        role = user_role(user)
        if role == Role.CUSTOMER:
            return {"customer_id": to_object_id(user["id"])}
        if role == Role.PROVIDER:
            return {"provider_id": to_object_id(user["id"])}
        return {}

    def create_booking(
        self, payload: BookingCreateRequest, user: Dict[str, Any], images: List[UploadedFile]
    ) -> Dict[str, Any]:
        now = utcnow()
        reject_past_date(payload.scheduled_date, now)
        svc = self.db[SERVICES].find_one({"_id": to_object_id(payload.service_id, "service_id")})
        if not svc:
            raise NotFound("Service not found")
        if str(svc["provider_id"]) != payload.provider_id:
            raise ProviderMismatch()
        if str(svc["provider_id"]) == user["id"]:
            raise SelfBooking()
        if len(images) > MAX_BOOKING_IMAGES:
            raise ValidationFailed(f"At most {MAX_BOOKING_IMAGES} images can be attached")

        customer_images = [
            self.storage.store(f, f"bookings/{user['id']}", self.settings.max_upload_bytes) for f in images
        ]
        booking = validate_payload(
            Booking,
            {
                "customer_id": to_object_id(user["id"]),
                "provider_id": svc["provider_id"],
                "service_id": svc["_id"],
                "scheduled_date": payload.scheduled_date,
                # price is frozen at booking time
                "total_price": svc["price"],
                "notes": payload.notes,
                "customer_address": payload.customer_address.model_dump(),
                "contact_phone": payload.contact_phone,
                "payment_method": payload.payment_method,
                "customer_images": [ref.model_dump() for ref in customer_images],
                "created_at": now,
                "updated_at": now,
            },
        )
        doc = booking.to_mongo()
        res = self.db[BOOKINGS].insert_one(doc)
        doc["_id"] = res.inserted_id
        logger.info(f"Customer {user['id']} booked service {svc['_id']} as booking {res.inserted_id}")
        return self._populate(doc)

    def get_my_bookings(
        self, user: Dict[str, Any], status_filter: Optional[BookingStatus], page: int, limit: int
    ) -> Dict[str, Any]:
        query = self._filter_for(user)
        if status_filter:
            query["status"] = status_filter.value
        page_info = paginate(page, limit)
        total = self.db[BOOKINGS].count_documents(query)
        cursor = (
            self.db[BOOKINGS]
            .find(query)
            .sort("created_at", DESCENDING)
            .skip(page_info["skip"])
            .limit(page_info["limit"])
        )
        data = [self._populate(b) for b in cursor]
        return {
            "count": len(data),
            "total": total,
            "data": data,
            "pagination": {
                "page": page_info["page"],
                "limit": page_info["limit"],
                "pages": math.ceil(total / page_info["limit"]),
            },
        }

    def get_booking(self, booking_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        booking = self.db[BOOKINGS].find_one({"_id": to_object_id(booking_id)})
        if not booking:
            raise NotFound("Booking not found")
        if user["id"] not in (str(booking.get("customer_id")), str(booking.get("provider_id"))):
            raise Forbidden("Not authorized to view this booking")
        return self._populate(booking)

    def update_status(
        self, booking_id: str, target: BookingStatus, user: Dict[str, Any], notes: Optional[str] = None
    ) -> Dict[str, Any]:
        booking = self.db[BOOKINGS].find_one({"_id": to_object_id(booking_id)})
        if not booking:
            raise NotFound("Booking not found")
        role = actor_role(booking, user["id"])
        current = booking.get("status", BookingStatus.PENDING.value)
        target = check_transition(role, current, target)

        update = transition_updates(role, target, utcnow())
        if notes:
            update["notes"] = notes
        # Matching on the status we validated against keeps a concurrent change from being overwritten
        res = self.db[BOOKINGS].update_one({"_id": booking["_id"], "status": current}, {"$set": update})
        if res.modified_count == 0:
            fresh = self.db[BOOKINGS].find_one({"_id": booking["_id"]}, {"status": 1}) or {}
            raise InvalidTransition(fresh.get("status", current), target.value)

        logger.info(f"Booking {booking_id} moved {current} -> {target.value} by {role.value} {user['id']}")
        return self._populate(self.db[BOOKINGS].find_one({"_id": booking["_id"]}))

    def get_stats(self, user: Dict[str, Any]) -> Dict[str, Any]:
        query = self._filter_for(user)
        stats = list(
            self.db[BOOKINGS].aggregate(
                [{"$match": query}, {"$group": {"_id": "$status", "count": {"$sum": 1}}}]
            )
        )
        total_bookings = self.db[BOOKINGS].count_documents(query)
        revenue = list(
            self.db[BOOKINGS].aggregate(
                [
                    {"$match": {**query, "status": BookingStatus.COMPLETED.value}},
                    {"$group": {"_id": None, "total": {"$sum": "$total_price"}}},
                ]
            )
        )
        return {
            "stats": sorted(stats, key=lambda s: s["_id"]),
            "total_bookings": total_bookings,
            "total_revenue": revenue[0]["total"] if revenue else 0,
        }


def get_booking_service(
    db: Database = Depends(get_db),
    storage: MediaStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> BookingService:
    return BookingService(db, storage, settings)


router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: Request,
    user=Depends(require_role(Role.CUSTOMER)),
    svc: BookingService = Depends(get_booking_service),
):
    fields, files = await parse_body(request)
    reject_past_date(fields.get("scheduled_date"))
    payload = validate_payload(BookingCreateRequest, fields)
    images = files.get("customer_images", [])
    booking = await run_in_threadpool(svc.create_booking, payload, user, images)
    return {"success": True, "message": "Booking created successfully", "data": booking}


@router.get("/my-bookings")
def my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(get_current_user),
    svc: BookingService = Depends(get_booking_service),
):
    return {"success": True, **svc.get_my_bookings(user, status_filter, page, limit)}


@router.get("/stats")
def booking_stats(user=Depends(get_current_user), svc: BookingService = Depends(get_booking_service)):
    return {"success": True, "data": svc.get_stats(user)}


@router.get("/{booking_id}")
def get_booking(booking_id: str, user=Depends(get_current_user), svc: BookingService = Depends(get_booking_service)):
    return {"success": True, "data": svc.get_booking(booking_id, user)}


@router.put("/{booking_id}/status")
def update_booking_status(
    booking_id: str,
    payload: BookingStatusUpdate,
    user=Depends(get_current_user),
    svc: BookingService = Depends(get_booking_service),
):
    booking = svc.update_status(booking_id, payload.status, user, payload.notes)
    return {"success": True, "message": f"Booking {payload.status.value} successfully", "data": booking}
