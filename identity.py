import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings
from constants import DEFAULT_AVATAR, Role
from database import PORTFOLIO, SERVICES, USERS, serialize, serialize_many, to_object_id, utcnow
from deps import get_auth, get_current_user, get_db, get_settings, get_storage, parse_body, validate_payload
from errors import EmailTaken, InvalidCredentials, NotFound, ValidationFailed
from schemas import Address, User
from security import AuthManager
from storage import MediaStorage, UploadedFile

logger = logging.getLogger(__name__)

PUBLIC_PORTFOLIO_LIMIT = 6


# Pydantic models
class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = Role.CUSTOMER
    phone: Optional[str] = None
    address: Optional[Address] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()

    @field_validator("role")
    @classmethod
    def no_self_service_admins(cls, v: Role) -> Role:
        if v == Role.ADMIN:
            raise ValueError("Role must be customer or provider")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize(doc)
    user.setdefault("avatar", DEFAULT_AVATAR)
    return user


class IdentityService:
    def __init__(self, db: Database, auth: AuthManager, storage: MediaStorage, settings: Settings):
        self.db = db
        self.auth = auth
        self.storage = storage
        self.settings = settings

    def _get_user(self, user_id) -> Dict[str, Any]:
        user = self.db[USERS].find_one({"_id": to_object_id(user_id)})
        if not user:
            raise NotFound("User not found")
        return user

    def signup(self, payload: SignupRequest) -> Tuple[Dict[str, Any], str]:
        email = payload.email.lower()
        if self.db[USERS].find_one({"email": email}):
            raise EmailTaken()

        now = utcnow()
        user = User(
            name=payload.name,
            email=email,
            password_hash=self.auth.hash_password(payload.password),
            role=payload.role,
            phone=payload.phone,
            address=payload.address,
            created_at=now,
            updated_at=now,
        )
        doc = user.to_mongo()
        try:
            res = self.db[USERS].insert_one(doc)
        except DuplicateKeyError:
            raise EmailTaken()
        doc["_id"] = res.inserted_id
        logger.info(f"Registered {doc['role']} {res.inserted_id}")
        return public_user(doc), self.auth.create_access_token(str(res.inserted_id))

    def login(self, email: str, password: str) -> Tuple[Dict[str, Any], str]:
        user = self.db[USERS].find_one({"email": email.lower()})
        if not user or not self.auth.verify_password(password, user.get("password_hash", "")):
            raise InvalidCredentials()
        if not user.get("is_active", True):
            raise InvalidCredentials("Account has been deactivated")

        now = utcnow()
        self.db[USERS].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
        user["last_login"] = now
        logger.info(f"User {user['_id']} logged in")
        return public_user(user), self.auth.create_access_token(str(user["_id"]))

    def update_profile(
        self, user_id: str, payload: ProfileUpdate, avatar: Optional[UploadedFile] = None
    ) -> Dict[str, Any]:
        current = self._get_user(user_id)
        update: Dict[str, Any] = {}

        if payload.name:
            update["name"] = payload.name.strip()
        if payload.email:
            email = payload.email.lower()
            if email != current.get("email") and self.db[USERS].find_one({"email": email}):
                raise EmailTaken()
            update["email"] = email
        if payload.phone:
            update["phone"] = payload.phone
        if payload.address:
            # Dotted keys so a partial address never wipes the other sub-fields
            for key, value in payload.address.model_dump().items():
                if value:
                    update[f"address.{key}"] = value
        if payload.latitude is not None and payload.longitude is not None:
            update["location"] = {"type": "Point", "coordinates": [payload.longitude, payload.latitude]}

        if avatar is not None:
            ref = self.storage.store(avatar, f"avatars/{user_id}", self.settings.max_upload_bytes)
            update["avatar"] = ref.model_dump()

        if update:
            update["updated_at"] = utcnow()
            try:
                self.db[USERS].update_one({"_id": current["_id"]}, {"$set": update})
            except DuplicateKeyError:
                raise EmailTaken()
            if avatar is not None:
                self.storage.delete_quietly(current.get("avatar"))

        return public_user(self._get_user(user_id))

    def update_avatar(self, user_id: str, avatar: Optional[UploadedFile]) -> Dict[str, Any]:
        if avatar is None:
            raise ValidationFailed("Please upload an image file")
        return self.update_profile(user_id, ProfileUpdate(), avatar)

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self._get_user(user_id)
        if not self.auth.verify_password(current_password, user.get("password_hash", "")):
            raise InvalidCredentials("Current password is incorrect")
        self.db[USERS].update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": self.auth.hash_password(new_password), "updated_at": utcnow()}},
        )
        logger.info(f"User {user_id} changed password")

    def get_public_profile(self, user_id: str) -> Dict[str, Any]:
        try:
            oid = to_object_id(user_id)
        except ValidationFailed:
            raise NotFound("Provider not found")
        user = self.db[USERS].find_one({"_id": oid})
        if not user or user.get("role") != Role.PROVIDER.value:
            raise NotFound("Provider not found")

        services = self.db[SERVICES].find(
            {"provider_id": oid},
            {"title": 1, "description": 1, "price": 1, "category": 1, "average_rating": 1},
        ).sort("created_at", DESCENDING)
        portfolio = (
            self.db[PORTFOLIO]
            .find(
                {"provider_id": oid, "is_active": True},
                {"title": 1, "images": 1, "category": 1, "featured": 1},
            )
            .sort([("featured", DESCENDING), ("created_at", DESCENDING)])
            .limit(PUBLIC_PORTFOLIO_LIMIT)
        )
        return {
            "id": str(user["_id"]),
            "name": user.get("name"),
            "avatar": serialize({"avatar": user.get("avatar", DEFAULT_AVATAR)})["avatar"],
            "average_rating": user.get("average_rating", 0.0),
            "total_reviews": user.get("total_reviews", 0),
            "created_at": serialize({"created_at": user.get("created_at")})["created_at"],
            "services": serialize_many(services),
            "portfolio": serialize_many(portfolio),
        }


def get_identity_service(
    db: Database = Depends(get_db),
    auth: AuthManager = Depends(get_auth),
    storage: MediaStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> IdentityService:
    return IdentityService(db, auth, storage, settings)


router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post("/signup", status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, svc: IdentityService = Depends(get_identity_service)):
    user, token = svc.signup(payload)
    return {"success": True, "message": "User registered successfully", "data": {"user": user, "token": token}}


@router.post("/login")
def login(payload: LoginRequest, svc: IdentityService = Depends(get_identity_service)):
    user, token = svc.login(payload.email, payload.password)
    return {"success": True, "message": "Login successful", "data": {"user": user, "token": token}}


@router.get("/me")
def me(user=Depends(get_current_user)):
    return {"success": True, "data": {"user": public_user(user)}}


@router.put("/profile")
async def update_profile(
    request: Request,
    user=Depends(get_current_user),
    svc: IdentityService = Depends(get_identity_service),
):
    fields, files = await parse_body(request)
    payload = validate_payload(ProfileUpdate, fields)
    avatar = (files.get("avatar") or [None])[0]
    updated = await run_in_threadpool(svc.update_profile, user["id"], payload, avatar)
    return {"success": True, "message": "Profile updated successfully", "data": {"user": updated}}


@router.put("/avatar")
async def update_avatar(
    request: Request,
    user=Depends(get_current_user),
    svc: IdentityService = Depends(get_identity_service),
):
    _, files = await parse_body(request)
    avatar = (files.get("avatar") or [None])[0]
    updated = await run_in_threadpool(svc.update_avatar, user["id"], avatar)
    return {"success": True, "message": "Avatar updated successfully", "data": {"user": updated}}


@router.put("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    user=Depends(get_current_user),
    svc: IdentityService = Depends(get_identity_service),
):
    svc.change_password(user["id"], payload.current_password, payload.new_password)
    return {"success": True, "message": "Password changed successfully"}


@router.get("/users/{user_id}")
def public_profile(user_id: str, svc: IdentityService = Depends(get_identity_service)):
    return {"success": True, "data": svc.get_public_profile(user_id)}
