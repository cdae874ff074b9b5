import logging
import re
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, BeforeValidator, Field
from pymongo import DESCENDING
from pymongo.database import Database

from config import Settings
from constants import MAX_PORTFOLIO_IMAGES, Role
from database import PORTFOLIO, USERS, serialize, to_object_id, utcnow
from deps import get_db, get_settings, get_storage, parse_body, require_role, validate_payload
from errors import Forbidden, NotFound, ValidationFailed
from schemas import Certification, MediaRef, PortfolioItem
from storage import MediaStorage, UploadedFile, storage_id_of

logger = logging.getLogger(__name__)

PORTFOLIO_SORT = [("featured", DESCENDING), ("created_at", DESCENDING)]


def _split_skills(v: Any) -> Any:
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    return v


Skills = Annotated[List[str], BeforeValidator(_split_skills)]


def media_folder(provider_id: str) -> str:
    return f"portfolio/{provider_id}"


# Pydantic models
class PortfolioItemIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    skills: Skills = []
    experience: int = Field(0, ge=0)
    certifications: List[Certification] = []
    featured: bool = False
    # references to files the client already uploaded through /portfolio/sign-upload
    images: List[MediaRef] = []
    resume: Optional[MediaRef] = None


class PortfolioItemUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    category: Optional[str] = None
    skills: Optional[Skills] = None
    experience: Optional[int] = Field(None, ge=0)
    certifications: Optional[List[Certification]] = None
    featured: Optional[bool] = None
    images: Optional[List[MediaRef]] = None
    resume: Optional[MediaRef] = None


class SignUploadRequest(BaseModel):
    folder: Optional[str] = Field(None, max_length=64)
    resume: bool = False


class PortfolioService:
    def __init__(self, db: Database, storage: MediaStorage, settings: Settings):
        self.db = db
        self.storage = storage
        self.settings = settings

    def _check_refs(self, refs: List[MediaRef], provider_id: str) -> None:
        # Pre-uploaded media must live in the provider's own folder, or a later cleanup could delete someone else's file
        prefix = media_folder(provider_id) + "/"
        for ref in refs:
            if ref.storage_id and not ref.storage_id.startswith(prefix):
                raise ValidationFailed("Media reference does not belong to this provider")

    def _store_images(self, files: List[UploadedFile], provider_id: str) -> List[MediaRef]:
        if len(files) > MAX_PORTFOLIO_IMAGES:
            raise ValidationFailed(f"At most {MAX_PORTFOLIO_IMAGES} images can be uploaded")
        return [self.storage.store(f, media_folder(provider_id), self.settings.max_upload_bytes) for f in files]

    def _store_resume(self, file: Optional[UploadedFile], provider_id: str) -> Optional[MediaRef]:
        if file is None:
            return None
        return self.storage.store(
            file, media_folder(provider_id), self.settings.max_upload_bytes, allow_documents=True
        )

    def _with_provider(self, item: Dict[str, Any], fields: Dict[str, int]) -> Dict[str, Any]:
        out = serialize(item)
        out["provider"] = serialize(self.db[USERS].find_one({"_id": item.get("provider_id")}, fields))
        return out

    def _get_owned(self, item_id: str, user: Dict[str, Any], action: str) -> Dict[str, Any]:
        item = self.db[PORTFOLIO].find_one({"_id": to_object_id(item_id)})
        if not item or not item.get("is_active", True):
            raise NotFound("Portfolio item not found")
        if str(item.get("provider_id")) != user["id"]:
            raise Forbidden(f"Not authorized to {action} this portfolio item")
        return item

    def create_item(
        self,
        payload: PortfolioItemIn,
        user: Dict[str, Any],
        image_files: List[UploadedFile],
        resume_file: Optional[UploadedFile] = None,
    ) -> Dict[str, Any]:
        self._check_refs(payload.images + ([payload.resume] if payload.resume else []), user["id"])
        if not payload.images and not image_files:
            raise ValidationFailed("Please upload at least one image")

        images = payload.images + self._store_images(image_files, user["id"])
        resume = self._store_resume(resume_file, user["id"]) or payload.resume
        now = utcnow()
        item = validate_payload(
            PortfolioItem,
            {
                **payload.model_dump(exclude={"images", "resume"}),
                "provider_id": to_object_id(user["id"]),
                "images": [ref.model_dump() for ref in images],
                "resume": resume.model_dump() if resume else None,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            },
        )
        doc = item.to_mongo()
        res = self.db[PORTFOLIO].insert_one(doc)
        doc["_id"] = res.inserted_id
        logger.info(f"Provider {user['id']} created portfolio item {res.inserted_id}")
        return serialize(doc)

    def update_item(
        self,
        item_id: str,
        payload: PortfolioItemUpdate,
        user: Dict[str, Any],
        image_files: List[UploadedFile],
        resume_file: Optional[UploadedFile] = None,
    ) -> Dict[str, Any]:
        item = self._get_owned(item_id, user, "update")
        refs = (payload.images or []) + ([payload.resume] if payload.resume else [])
        self._check_refs(refs, user["id"])

        update = payload.model_dump(exclude_unset=True, exclude_none=True, exclude={"images", "resume"})

        if image_files or payload.images:
            images = (payload.images or []) + self._store_images(image_files, user["id"])
            # only objects dropped from the item are removed; re-sent refs stay
            kept = {ref.storage_id for ref in images if ref.storage_id}
            for old in item.get("images", []):
                if storage_id_of(old) not in kept:
                    self.storage.delete_quietly(old)
            update["images"] = [ref.model_dump() for ref in images]
        elif payload.images is not None:
            raise ValidationFailed("Please upload at least one image")

        resume = self._store_resume(resume_file, user["id"]) or payload.resume
        if resume:
            if storage_id_of(item.get("resume")) != resume.storage_id:
                self.storage.delete_quietly(item.get("resume"))
            update["resume"] = resume.model_dump()

        if update:
            update["updated_at"] = utcnow()
            self.db[PORTFOLIO].update_one({"_id": item["_id"]}, {"$set": update})
        return self._with_provider(
            self.db[PORTFOLIO].find_one({"_id": item["_id"]}), {"name": 1, "email": 1, "phone": 1, "avatar": 1}
        )

    def delete_item(self, item_id: str, user: Dict[str, Any]) -> None:
        item = self._get_owned(item_id, user, "delete")
        for image in item.get("images", []):
            self.storage.delete_quietly(image)
        self.storage.delete_quietly(item.get("resume"))
        # Soft delete keeps the record for auditing
        self.db[PORTFOLIO].update_one({"_id": item["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
        logger.info(f"Provider {user['id']} deleted portfolio item {item['_id']}")

    def get_item(self, item_id: str) -> Dict[str, Any]:
        item = self.db[PORTFOLIO].find_one({"_id": to_object_id(item_id)})
        if not item or not item.get("is_active", True):
            raise NotFound("Portfolio item not found")
        fields = {"name": 1, "email": 1, "phone": 1, "avatar": 1, "average_rating": 1, "total_reviews": 1}
        return self._with_provider(item, fields)

    def get_provider_portfolio(
        self, provider_id: str, category: Optional[str] = None, featured: Optional[bool] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"provider_id": to_object_id(provider_id, "provider_id"), "is_active": True}
        if category:
            query["category"] = category
        if featured:
            query["featured"] = True
        fields = {"name": 1, "email": 1, "phone": 1, "avatar": 1, "average_rating": 1, "total_reviews": 1}
        return [self._with_provider(i, fields) for i in self.db[PORTFOLIO].find(query).sort(PORTFOLIO_SORT)]

    def get_my_portfolio(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        query = {"provider_id": to_object_id(user["id"]), "is_active": True}
        fields = {"name": 1, "email": 1, "phone": 1, "avatar": 1}
        return [self._with_provider(i, fields) for i in self.db[PORTFOLIO].find(query).sort(PORTFOLIO_SORT)]

    def get_categories(self) -> List[Dict[str, Any]]:
        groups = self.db[PORTFOLIO].aggregate(
            [
                {"$match": {"is_active": True}},
                {"$group": {"_id": "$category", "count": {"$sum": 1}}},
                {"$sort": {"_id": 1}},
            ]
        )
        return [{"category": g["_id"], "count": g["count"]} for g in groups]

    def sign_upload(self, user: Dict[str, Any], folder: Optional[str] = None, resume: bool = False) -> Dict[str, Any]:
        target = media_folder(user["id"])
        if folder:
            sub = re.sub(r"[^A-Za-z0-9_-]", "", folder)
            if sub:
                target = f"{target}/{sub}"
        return self.storage.sign_upload(target, self.settings.upload_signature_expires, document=resume)


def get_portfolio_service(
    db: Database = Depends(get_db),
    storage: MediaStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> PortfolioService:
    return PortfolioService(db, storage, settings)


router = APIRouter(prefix="/portfolio", tags=["Portfolio"])


@router.get("/provider/{provider_id}")
def provider_portfolio(
    provider_id: str,
    category: Optional[str] = None,
    featured: Optional[bool] = Query(None),
    svc: PortfolioService = Depends(get_portfolio_service),
):
    data = svc.get_provider_portfolio(provider_id, category, featured)
    return {"success": True, "count": len(data), "data": data}


@router.get("/categories")
def portfolio_categories(svc: PortfolioService = Depends(get_portfolio_service)):
    return {"success": True, "data": svc.get_categories()}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_portfolio_item(
    request: Request,
    user=Depends(require_role(Role.PROVIDER)),
    svc: PortfolioService = Depends(get_portfolio_service),
):
    fields, files = await parse_body(request)
    payload = validate_payload(PortfolioItemIn, fields)
    resume = (files.get("resume") or [None])[0]
    item = await run_in_threadpool(svc.create_item, payload, user, files.get("images", []), resume)
    return {"success": True, "message": "Portfolio item created successfully", "data": item}


@router.post("/sign-upload")
def sign_upload(
    payload: Optional[SignUploadRequest] = Body(None),
    user=Depends(require_role(Role.PROVIDER)),
    svc: PortfolioService = Depends(get_portfolio_service),
):
    if payload is None:
        payload = SignUploadRequest()
    return {"success": True, "data": svc.sign_upload(user, payload.folder, payload.resume)}


@router.get("/my-portfolio")
def my_portfolio(user=Depends(require_role(Role.PROVIDER)), svc: PortfolioService = Depends(get_portfolio_service)):
    data = svc.get_my_portfolio(user)
    return {"success": True, "count": len(data), "data": data}


@router.get("/{item_id}")
def get_portfolio_item(item_id: str, svc: PortfolioService = Depends(get_portfolio_service)):
    return {"success": True, "data": svc.get_item(item_id)}


@router.put("/{item_id}")
async def update_portfolio_item(
    item_id: str,
    request: Request,
    user=Depends(require_role(Role.PROVIDER)),
    svc: PortfolioService = Depends(get_portfolio_service),
):
    fields, files = await parse_body(request)
    payload = validate_payload(PortfolioItemUpdate, fields)
    resume = (files.get("resume") or [None])[0]
    item = await run_in_threadpool(svc.update_item, item_id, payload, user, files.get("images", []), resume)
    return {"success": True, "message": "Portfolio item updated successfully", "data": item}


@router.delete("/{item_id}")
def delete_portfolio_item(
    item_id: str,
    user=Depends(require_role(Role.PROVIDER)),
    svc: PortfolioService = Depends(get_portfolio_service),
):
    svc.delete_item(item_id, user)
    return {"success": True, "message": "Portfolio item deleted successfully"}
