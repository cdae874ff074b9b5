from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from errors import NotAuthenticated


class AuthManager:
    """Password hashing and session tokens, built once per app from settings."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expire_days: int = 30, bcrypt_rounds: int = 12):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_days = expire_days
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=bcrypt_rounds)

    @classmethod
    def from_settings(cls, settings) -> "AuthManager":
        return cls(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            expire_days=settings.jwt_expire_days,
            bcrypt_rounds=settings.bcrypt_rounds,
        )

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return self.pwd_context.verify(password, password_hash)
        except ValueError:
            # unknown or malformed hash
            return False

    def create_access_token(self, user_id: str, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=self.expire_days))
        to_encode = {"sub": str(user_id), "exp": expire}
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def decode_access_token(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            raise NotAuthenticated("Not authorized, token failed")
        if payload.get("sub") is None:
            raise NotAuthenticated("Not authorized, token failed")
        return payload
