import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, field_validator
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from constants import EARTH_RADIUS_MILES, PREDEFINED_SERVICES, Role
from database import SERVICES, USERS, paginate, serialize, serialize_many, to_object_id, utcnow
from deps import get_db, require_role, validate_payload
from errors import Forbidden, NotFound, ValidationFailed
from schemas import Address, GeoPoint, Service

logger = logging.getLogger(__name__)

RESERVED_PARAMS = {"select", "sort", "page", "limit", "lat", "lon", "distance", "location"}
FILTER_OPERATORS = {"gt", "gte", "lt", "lte", "in", "ne"}
NUMERIC_FIELDS = {"price", "duration", "average_rating", "total_reviews"}
FILTERABLE_FIELDS = NUMERIC_FIELDS | {
    "title",
    "category",
    "availability",
    "provider_id",
    "address.street",
    "address.city",
    "address.state",
    "address.zip_code",
}
SORTABLE_FIELDS = FILTERABLE_FIELDS | {"created_at", "updated_at"}
DEFAULT_SORT = [("created_at", DESCENDING)]
DEFAULT_DISTANCE_MILES = 10.0
DEFAULT_PAGE_SIZE = 12

_FILTER_KEY = re.compile(r"^([\w.]+?)(?:\[(\w+)\])?$")


def _coerce(field: str, value: str) -> Any:
    if field == "provider_id":
        return to_object_id(value, "provider_id")
    if field in NUMERIC_FIELDS:
        try:
            number = float(value)
        except ValueError:
            raise ValidationFailed(f"{field} must be a number")
        return int(number) if number.is_integer() else number
    return value


def build_field_filters(params: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    """Translate query params such as price[gte]=10 or category=home into a Mongo filter."""
    query: Dict[str, Any] = {}
    for key, value in params:
        if key in RESERVED_PARAMS:
            continue
        match = _FILTER_KEY.match(key)
        if not match:
            raise ValidationFailed(f"Unsupported filter: {key}")
        field, op = match.group(1), match.group(2)
        if field not in FILTERABLE_FIELDS:
            raise ValidationFailed(f"Unsupported filter: {field}")

        if op is None:
            query[field] = _coerce(field, value)
            continue
        if op not in FILTER_OPERATORS:
            raise ValidationFailed(f"Unsupported operator: {op}")

        if op == "in":
            operand: Any = [_coerce(field, v.strip()) for v in value.split(",") if v.strip()]
        else:
            operand = _coerce(field, value)
        existing = query.get(field)
        if not isinstance(existing, dict):
            existing = {}
        existing[f"${op}"] = operand
        query[field] = existing
    return query


def build_location_filter(
    lat: Optional[float], lon: Optional[float], distance: Optional[float], location: Optional[str]
) -> Dict[str, Any]:
    # Coordinates win over the free-text city match
    if lat is not None and lon is not None:
        radius = (distance or DEFAULT_DISTANCE_MILES) / EARTH_RADIUS_MILES
        return {"location": {"$geoWithin": {"$centerSphere": [[lon, lat], radius]}}}
    if location:
        return {"address.city": {"$regex": f"^{re.escape(location.strip())}", "$options": "i"}}
    return {}


def parse_sort(sort: Optional[str]) -> List[Tuple[str, int]]:
    if not sort:
        return list(DEFAULT_SORT)
    order = []
    for part in sort.split(","):
        part = part.strip()
        if not part:
            continue
        direction = DESCENDING if part.startswith("-") else ASCENDING
        field = part.lstrip("-+")
        if field not in SORTABLE_FIELDS:
            raise ValidationFailed(f"Cannot sort by {field}")
        order.append((field, direction))
    return order or list(DEFAULT_SORT)


def parse_select(select: Optional[str]) -> Optional[Dict[str, int]]:
    if not select:
        return None
    fields = [f.strip() for f in select.split(",") if f.strip()]
    if not fields:
        return None
    projection = {f: 1 for f in fields}
    # needed to attach the provider summary
    projection["provider_id"] = 1
    return projection


def page_links(page: int, limit: int, total: int) -> Dict[str, Dict[str, int]]:
    pagination: Dict[str, Dict[str, int]] = {}
    start, end = (page - 1) * limit, page * limit
    if end < total:
        pagination["next"] = {"page": page + 1, "limit": limit}
    if start > 0:
        pagination["prev"] = {"page": page - 1, "limit": limit}
    return pagination


def _float_param(params, name: str) -> Optional[float]:
    value = params.get(name)
    if value in (None, ""):
        return None
    try:
        return float(value)
    except ValueError:
        raise ValidationFailed(f"{name} must be a number")


def _int_param(params, name: str, default: int) -> int:
    try:
        return int(params.get(name) or default)
    except ValueError:
        raise ValidationFailed(f"{name} must be an integer")


# Pydantic models
class ServiceIn(BaseModel):
    title: str
    description: str = Field(..., max_length=1000)
    price: float = Field(..., ge=0)
    category: str
    duration: int = Field(..., gt=0)
    images: List[str] = []
    availability: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None

    @field_validator("title")
    @classmethod
    def title_is_predefined(cls, v: str) -> str:
        if v not in PREDEFINED_SERVICES:
            raise ValueError("Service title is not supported")
        return v


class ServiceUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = Field(None, max_length=1000)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    duration: Optional[int] = Field(None, gt=0)
    images: Optional[List[str]] = None
    availability: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None

    @field_validator("title")
    @classmethod
    def title_is_predefined(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in PREDEFINED_SERVICES:
            raise ValueError("Service title is not supported")
        return v


class CatalogService:
    def __init__(self, db: Database):
        self.db = db

    def _attach_providers(self, services: List[Dict[str, Any]], fields: Dict[str, int]) -> List[Dict[str, Any]]:
        ids = list({s["provider_id"] for s in services if s.get("provider_id")})
        providers = {u["_id"]: u for u in self.db[USERS].find({"_id": {"$in": ids}}, fields)} if ids else {}
        out = []
        for s in services:
            doc = serialize(s)
            provider = providers.get(s.get("provider_id"))
            doc["provider"] = serialize(provider) if provider else None
            out.append(doc)
        return out

    def _get(self, service_id: str) -> Dict[str, Any]:
        svc = self.db[SERVICES].find_one({"_id": to_object_id(service_id)})
        if not svc:
            raise NotFound("Service not found")
        return svc

    def _get_owned(self, service_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        svc = self._get(service_id)
        if str(svc.get("provider_id")) != user["id"]:
            raise Forbidden("Not authorized to modify this service")
        return svc

    def list_services(self, params) -> Dict[str, Any]:
        query = build_field_filters(params.multi_items())
        query.update(
            build_location_filter(
                _float_param(params, "lat"),
                _float_param(params, "lon"),
                _float_param(params, "distance"),
                params.get("location"),
            )
        )
        page_info = paginate(_int_param(params, "page", 1), _int_param(params, "limit", DEFAULT_PAGE_SIZE))
        total = self.db[SERVICES].count_documents(query)
        cursor = (
            self.db[SERVICES]
            .find(query, parse_select(params.get("select")))
            .sort(parse_sort(params.get("sort")))
            .skip(page_info["skip"])
            .limit(page_info["limit"])
        )
        data = self._attach_providers(list(cursor), {"name": 1, "average_rating": 1})
        return {
            "count": len(data),
            "total": total,
            "pagination": page_links(page_info["page"], page_info["limit"], total),
            "data": data,
        }

    def get_service(self, service_id: str) -> Dict[str, Any]:
        svc = self._get(service_id)
        fields = {"name": 1, "email": 1, "phone": 1, "avatar": 1, "average_rating": 1, "total_reviews": 1}
        return self._attach_providers([svc], fields)[0]

    def get_provider_services(self, provider_id: str) -> List[Dict[str, Any]]:
        cursor = self.db[SERVICES].find({"provider_id": to_object_id(provider_id)}).sort("created_at", DESCENDING)
        return serialize_many(cursor)

    def create_service(self, payload: ServiceIn, user: Dict[str, Any]) -> Dict[str, Any]:
        provider_id = to_object_id(user["id"])
        now = utcnow()
        data = payload.model_dump(exclude_none=True)
        # Fall back to where the provider says they are
        provider = self.db[USERS].find_one({"_id": provider_id}, {"address": 1, "location": 1})
        if provider:
            if "address" not in data and provider.get("address"):
                data["address"] = provider["address"]
            if "location" not in data and provider.get("location"):
                data["location"] = provider["location"]

        service = validate_payload(
            Service, {**data, "provider_id": provider_id, "created_at": now, "updated_at": now}
        )
        doc = service.to_mongo()
        res = self.db[SERVICES].insert_one(doc)
        doc["_id"] = res.inserted_id
        logger.info(f"Provider {user['id']} created service {res.inserted_id}")
        return self._attach_providers([doc], {"name": 1, "average_rating": 1, "address": 1})[0]

    def update_service(self, service_id: str, payload: ServiceUpdate, user: Dict[str, Any]) -> Dict[str, Any]:
        svc = self._get_owned(service_id, user)
        update = payload.model_dump(exclude_unset=True, exclude_none=True)
        if update:
            update["updated_at"] = utcnow()
            self.db[SERVICES].update_one({"_id": svc["_id"]}, {"$set": update})
        return serialize(self.db[SERVICES].find_one({"_id": svc["_id"]}))

    def delete_service(self, service_id: str, user: Dict[str, Any]) -> None:
        svc = self._get_owned(service_id, user)
        self.db[SERVICES].delete_one({"_id": svc["_id"]})
        logger.info(f"Provider {user['id']} deleted service {svc['_id']}")


def get_catalog_service(db: Database = Depends(get_db)) -> CatalogService:
    return CatalogService(db)


router = APIRouter(prefix="/services", tags=["Services"])


@router.get("")
def list_services(request: Request, svc: CatalogService = Depends(get_catalog_service)):
    return {"success": True, **svc.list_services(request.query_params)}


@router.get("/predefined")
def predefined_services():
    return {"success": True, "data": PREDEFINED_SERVICES}


@router.get("/my-services")
def my_services(user=Depends(require_role(Role.PROVIDER)), svc: CatalogService = Depends(get_catalog_service)):
    return {"success": True, "data": svc.get_provider_services(user["id"])}


@router.get("/{service_id}")
def get_service(service_id: str, svc: CatalogService = Depends(get_catalog_service)):
    return {"success": True, "data": svc.get_service(service_id)}


@router.post("", status_code=status.HTTP_201_CREATED)
def create_service(
    payload: ServiceIn,
    user=Depends(require_role(Role.PROVIDER)),
    svc: CatalogService = Depends(get_catalog_service),
):
    return {"success": True, "data": svc.create_service(payload, user)}


@router.put("/{service_id}")
def update_service(
    service_id: str,
    payload: ServiceUpdate,
    user=Depends(require_role(Role.PROVIDER)),
    svc: CatalogService = Depends(get_catalog_service),
):
    return {"success": True, "data": svc.update_service(service_id, payload, user)}


@router.delete("/{service_id}")
def delete_service(
    service_id: str,
    user=Depends(require_role(Role.PROVIDER)),
    svc: CatalogService = Depends(get_catalog_service),
):
    svc.delete_service(service_id, user)
    return {"success": True, "data": {}}
