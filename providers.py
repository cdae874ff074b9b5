import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from pymongo.database import Database

from bookings import BookingService, get_booking_service
from catalog import CatalogService, get_catalog_service
from constants import BookingStatus, Role
from database import BOOKINGS, REVIEWS, SERVICES, USERS, to_object_id, utcnow
from deps import get_db, require_role
from identity import public_user
from reviews import recompute_aggregate
from schemas import Address

logger = logging.getLogger(__name__)


class ProviderProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


def provider_stats(db: Database, provider_id: str) -> Dict[str, Any]:
    oid = to_object_id(provider_id)

    prices = [s.get("price", 0) for s in db[SERVICES].find({"provider_id": oid}, {"price": 1})]
    bookings = list(
        db[BOOKINGS].aggregate(
            [
                {"$match": {"provider_id": oid}},
                {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_revenue": {"$sum": "$total_price"}}},
            ]
        )
    )
    ratings = [r["rating"] for r in db[REVIEWS].find({"provider_id": oid}, {"rating": 1})]
    average, count = recompute_aggregate(ratings)
    completed = [b for b in bookings if b["_id"] == BookingStatus.COMPLETED.value]

    return {
        "services": {
            "total_services": len(prices),
            "average_service_price": round(sum(prices) / len(prices), 2) if prices else 0,
        },
        "bookings": sorted(bookings, key=lambda b: b["_id"]),
        "reviews": {"average_rating": average, "total_reviews": count},
        "total_revenue": completed[0]["total_revenue"] if completed else 0,
    }


router = APIRouter(prefix="/providers", tags=["Providers"])


@router.get("/profile")
def get_profile(user=Depends(require_role(Role.PROVIDER))):
    return {"success": True, "data": public_user(user)}


@router.put("/profile")
def update_profile(
    payload: ProviderProfileUpdate,
    user=Depends(require_role(Role.PROVIDER)),
    db: Database = Depends(get_db),
):
    update = payload.model_dump(exclude_none=True, exclude={"address"})
    if payload.address:
        # dotted keys so a partial address keeps the fields that were not sent
        for key, value in payload.address.model_dump().items():
            if value:
                update[f"address.{key}"] = value
    if update:
        update["updated_at"] = utcnow()
        db[USERS].update_one({"_id": to_object_id(user["id"])}, {"$set": update})
        logger.info(f"Provider {user['id']} updated profile")
    provider = db[USERS].find_one({"_id": to_object_id(user["id"])})
    return {"success": True, "message": "Profile updated successfully", "data": public_user(provider)}


@router.get("/stats")
def get_stats(user=Depends(require_role(Role.PROVIDER)), db: Database = Depends(get_db)):
    return {"success": True, "data": provider_stats(db, user["id"])}


@router.get("/services")
def get_services(user=Depends(require_role(Role.PROVIDER)), svc: CatalogService = Depends(get_catalog_service)):
    data = svc.get_provider_services(user["id"])
    return {"success": True, "count": len(data), "data": data}


@router.get("/bookings")
def get_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_role(Role.PROVIDER)),
    svc: BookingService = Depends(get_booking_service),
):
    return {"success": True, **svc.get_my_bookings(user, status_filter, page, limit)}
