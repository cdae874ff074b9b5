import json
import re
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, ValidationError
from pymongo.database import Database
from starlette.datastructures import UploadFile as StarletteUploadFile

from config import Settings
from constants import Role
from database import USERS, to_object_id
from errors import Forbidden, NotAuthenticated, ValidationFailed
from security import AuthManager
from storage import MediaStorage, UploadedFile

M = TypeVar("M", bound=BaseModel)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


# Injected clients live on app.state, built once by create_app()

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_storage(request: Request) -> MediaStorage:
    return request.app.state.storage


def get_auth(request: Request) -> AuthManager:
    return request.app.state.auth


# Dependency: get current user
def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Database = Depends(get_db),
    auth: AuthManager = Depends(get_auth),
) -> Dict[str, Any]:
    if not token:
        raise NotAuthenticated("Not authorized, no token")
    payload = auth.decode_access_token(token)
    try:
        user_id = to_object_id(payload["sub"])
    except Exception:
        raise NotAuthenticated("Not authorized, token failed")

    user = db[USERS].find_one({"_id": user_id}, {"password_hash": 0})
    if not user:
        raise NotAuthenticated("Not authorized, user not found")
    if not user.get("is_active", True):
        raise NotAuthenticated("Account has been deactivated")
    user["id"] = str(user.pop("_id"))
    return user


def user_role(user: Dict[str, Any]) -> Role:
    try:
        return Role(user.get("role", Role.CUSTOMER.value))
    except ValueError:
        raise Forbidden(f"User role {user.get('role')} is not authorized to access this route")


# Role guard
def require_role(*roles: Role):
    def _guard(user=Depends(get_current_user)):
        if user_role(user) not in roles:
            raise Forbidden(f"User role {user.get('role')} is not authorized to access this route")
        return user
    return _guard


def validate_payload(model: Type[M], data: Any) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()
        ]
        raise ValidationFailed("Validation failed", errors=errors)


def _nest(fields: Dict[str, Any]) -> Dict[str, Any]:
    # address[city]=x and address.city=x both become {"address": {"city": x}}
    nested: Dict[str, Any] = {}
    for key, value in fields.items():
        match = re.match(r"^(\w+)(?:\[(\w+)\]|\.(\w+))$", key)
        if match:
            parent, child = match.group(1), match.group(2) or match.group(3)
            if not isinstance(nested.get(parent), dict):
                nested[parent] = {}
            nested[parent][child] = value
            continue
        if isinstance(value, str) and value[:1] in "{[" and value[-1:] in "}]":
            try:
                value = json.loads(value)
            except ValueError:
                pass
        if isinstance(value, dict) and isinstance(nested.get(key), dict):
            nested[key].update(value)
        else:
            nested[key] = value
    return nested


async def parse_body(request: Request) -> Tuple[Dict[str, Any], Dict[str, List[UploadedFile]]]:
    """Read either a JSON body or a multipart form into (fields, files by field name)."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise ValidationFailed("Malformed JSON body")
        if not isinstance(data, dict):
            raise ValidationFailed("Request body must be a JSON object")
        return data, {}

    fields: Dict[str, Any] = {}
    files: Dict[str, List[UploadedFile]] = {}
    if not content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        return fields, files

    form = await request.form()
    for key, value in form.multi_items():
        if isinstance(value, StarletteUploadFile):
            if value.filename:
                data = await value.read()
                files.setdefault(key, []).append(UploadedFile(value.filename, value.content_type, data))
        else:
            fields[key] = value
    return _nest(fields), files
