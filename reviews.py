import logging
import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from constants import BookingStatus, Role
from database import BOOKINGS, REVIEWS, SERVICES, USERS, paginate, serialize, to_object_id, utcnow
from deps import get_db, require_role, validate_payload
from errors import BookingNotCompleted, DuplicateReview, Forbidden, NotFound
from schemas import DetailedRatings, Review

logger = logging.getLogger(__name__)

DETAIL_FIELDS = ("quality", "punctuality", "communication", "value")


def round_rating(value: float) -> float:
    # half-up to one decimal: 4.25 -> 4.3
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def recompute_aggregate(ratings: Iterable[int]) -> Tuple[float, int]:
    """Mean rating rounded to one decimal and the number of ratings; (0.0, 0) when there are none."""
    ratings = list(ratings)
    if not ratings:
        return 0.0, 0
    mean = Decimal(sum(ratings)) / Decimal(len(ratings))
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)), len(ratings)


def rating_distribution(ratings: Iterable[int]) -> Dict[str, int]:
    distribution = {str(star): 0 for star in range(5, 0, -1)}
    for rating in ratings:
        key = str(int(rating))
        if key in distribution:
            distribution[key] += 1
    return distribution


def _average(values: List[Optional[int]]) -> float:
    present = [v for v in values if v is not None]
    if not present:
        return 0.0
    return round_rating(sum(present) / len(present))


# Pydantic models
class ReviewCreateRequest(BaseModel):
    booking_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    detailed_ratings: Optional[DetailedRatings] = None


class ReviewUpdateRequest(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    detailed_ratings: Optional[DetailedRatings] = None


class ReviewService:
    def __init__(self, db: Database):
        self.db = db

    def refresh_ratings(self, service_id: ObjectId, provider_id: ObjectId) -> None:
        """Rewrite the cached average_rating/total_reviews of a service and its provider from the live reviews."""
        for collection, field, target_id in (
            (SERVICES, "service_id", service_id),
            (USERS, "provider_id", provider_id),
        ):
            ratings = [r["rating"] for r in self.db[REVIEWS].find({field: target_id}, {"rating": 1})]
            average, count = recompute_aggregate(ratings)
            self.db[collection].update_one(
                {"_id": target_id}, {"$set": {"average_rating": average, "total_reviews": count}}
            )
            logger.info(f"{collection} {target_id} rating refreshed: {average} over {count} reviews")

    def _populate(self, review: Dict[str, Any]) -> Dict[str, Any]:
        out = serialize(review)
        out["customer"] = serialize(self.db[USERS].find_one({"_id": review.get("customer_id")}, {"name": 1, "avatar": 1}))
        out["provider"] = serialize(self.db[USERS].find_one({"_id": review.get("provider_id")}, {"name": 1, "avatar": 1}))
        out["service"] = serialize(
            self.db[SERVICES].find_one({"_id": review.get("service_id")}, {"title": 1, "category": 1})
        )
        out["booking"] = serialize(
            self.db[BOOKINGS].find_one({"_id": review.get("booking_id")}, {"scheduled_date": 1, "total_price": 1})
        )
        return out

    def _get_own(self, review_id: str, user: Dict[str, Any], action: str) -> Dict[str, Any]:
        review = self.db[REVIEWS].find_one({"_id": to_object_id(review_id)})
        if not review:
            raise NotFound("Review not found")
        if str(review.get("customer_id")) != user["id"]:
            raise Forbidden(f"Not authorized to {action} this review")
        return review

    def create_review(self, payload: ReviewCreateRequest, user: Dict[str, Any]) -> Dict[str, Any]:
        booking = self.db[BOOKINGS].find_one({"_id": to_object_id(payload.booking_id, "booking_id")})
        if not booking:
            raise NotFound("Booking not found")
        if str(booking.get("customer_id")) != user["id"]:
            raise Forbidden("Not authorized to review this booking")
        if booking.get("status") != BookingStatus.COMPLETED.value:
            raise BookingNotCompleted()
        if self.db[REVIEWS].find_one({"booking_id": booking["_id"]}):
            raise DuplicateReview()

        now = utcnow()
        review = validate_payload(
            Review,
            {
                "booking_id": booking["_id"],
                "customer_id": booking["customer_id"],
                "provider_id": booking["provider_id"],
                "service_id": booking["service_id"],
                "rating": payload.rating,
                "comment": payload.comment,
                "detailed_ratings": payload.detailed_ratings.model_dump() if payload.detailed_ratings else None,
                "is_verified": True,
                "created_at": now,
                "updated_at": now,
            },
        )
        doc = review.to_mongo()
        try:
            res = self.db[REVIEWS].insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateReview()
        doc["_id"] = res.inserted_id
        logger.info(f"Customer {user['id']} reviewed booking {booking['_id']} with {payload.rating}")

        self.refresh_ratings(doc["service_id"], doc["provider_id"])
        return self._populate(doc)

    def update_review(self, review_id: str, payload: ReviewUpdateRequest, user: Dict[str, Any]) -> Dict[str, Any]:
        review = self._get_own(review_id, user, "update")
        update = payload.model_dump(exclude_unset=True, exclude_none=True)
        if update:
            update["updated_at"] = utcnow()
            self.db[REVIEWS].update_one({"_id": review["_id"]}, {"$set": update})
            if "rating" in update:
                self.refresh_ratings(review["service_id"], review["provider_id"])
        return self._populate(self.db[REVIEWS].find_one({"_id": review["_id"]}))

    def delete_review(self, review_id: str, user: Dict[str, Any]) -> None:
        review = self._get_own(review_id, user, "delete")
        self.db[REVIEWS].delete_one({"_id": review["_id"]})
        logger.info(f"Customer {user['id']} deleted review {review['_id']}")
        self.refresh_ratings(review["service_id"], review["provider_id"])

    def _page(self, query: Dict[str, Any], page: int, limit: int) -> Dict[str, Any]:
        page_info = paginate(page, limit)
        total = self.db[REVIEWS].count_documents(query)
        cursor = (
            self.db[REVIEWS]
            .find(query)
            .sort("created_at", DESCENDING)
            .skip(page_info["skip"])
            .limit(page_info["limit"])
        )
        data = [self._populate(r) for r in cursor]
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

    def get_provider_reviews(self, provider_id: str, page: int, limit: int, rating: Optional[int]) -> Dict[str, Any]:
        oid = to_object_id(provider_id, "provider_id")
        query: Dict[str, Any] = {"provider_id": oid}
        if rating:
            query["rating"] = rating
        result = self._page(query, page, limit)

        ratings = [r["rating"] for r in self.db[REVIEWS].find({"provider_id": oid}, {"rating": 1})]
        average, count = recompute_aggregate(ratings)
        result["stats"] = {
            "average_rating": average,
            "total_reviews": count,
            "rating_distribution": rating_distribution(ratings),
        }
        return result

    def get_service_reviews(self, service_id: str, page: int, limit: int) -> Dict[str, Any]:
        return self._page({"service_id": to_object_id(service_id, "service_id")}, page, limit)

    def get_my_reviews(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self.db[REVIEWS].find({"customer_id": to_object_id(user["id"])}).sort("created_at", DESCENDING)
        return [self._populate(r) for r in cursor]

    def get_review_stats(self, provider_id: str) -> Dict[str, Any]:
        reviews = list(
            self.db[REVIEWS].find(
                {"provider_id": to_object_id(provider_id, "provider_id")},
                {"rating": 1, "detailed_ratings": 1},
            )
        )
        ratings = [r["rating"] for r in reviews]
        average, count = recompute_aggregate(ratings)
        detailed = [r.get("detailed_ratings") or {} for r in reviews]
        return {
            "average_rating": average,
            "total_reviews": count,
            "rating_distribution": rating_distribution(ratings),
            "detailed_ratings": {f: _average([d.get(f) for d in detailed]) for f in DETAIL_FIELDS},
        }


def get_review_service(db: Database = Depends(get_db)) -> ReviewService:
    return ReviewService(db)


router = APIRouter(prefix="/reviews", tags=["Reviews"])


@router.get("/provider/{provider_id}")
def provider_reviews(
    provider_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    rating: Optional[int] = Query(None, ge=1, le=5),
    svc: ReviewService = Depends(get_review_service),
):
    return {"success": True, **svc.get_provider_reviews(provider_id, page, limit, rating)}


@router.get("/service/{service_id}")
def service_reviews(
    service_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    svc: ReviewService = Depends(get_review_service),
):
    return {"success": True, **svc.get_service_reviews(service_id, page, limit)}


@router.get("/stats/{provider_id}")
def review_stats(provider_id: str, svc: ReviewService = Depends(get_review_service)):
    return {"success": True, "data": svc.get_review_stats(provider_id)}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_review(
    payload: ReviewCreateRequest,
    user=Depends(require_role(Role.CUSTOMER)),
    svc: ReviewService = Depends(get_review_service),
):
    return {"success": True, "message": "Review created successfully", "data": svc.create_review(payload, user)}


@router.get("/my-reviews")
def my_reviews(user=Depends(require_role(Role.CUSTOMER)), svc: ReviewService = Depends(get_review_service)):
    data = svc.get_my_reviews(user)
    return {"success": True, "count": len(data), "data": data}


@router.put("/{review_id}")
def update_review(
    review_id: str,
    payload: ReviewUpdateRequest,
    user=Depends(require_role(Role.CUSTOMER)),
    svc: ReviewService = Depends(get_review_service),
):
    return {"success": True, "message": "Review updated successfully", "data": svc.update_review(review_id, payload, user)}


@router.delete("/{review_id}")
def delete_review(
    review_id: str,
    user=Depends(require_role(Role.CUSTOMER)),
    svc: ReviewService = Depends(get_review_service),
):
    svc.delete_review(review_id, user)
    return {"success": True, "message": "Review deleted successfully"}
