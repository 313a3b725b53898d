import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from database import Database, get_db
from schemas import ADMIN_ROLES, User

SECRET_KEY = os.getenv("JWT_SECRET", "your-secret-key")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=int(os.getenv("BCRYPT_ROUNDS", 12)),
)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/signin")


class TokenData(BaseModel):
    user_id: str
    role: str


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for(user: User) -> str:
    return create_access_token({"userId": user.id, "role": user.role})


def decode_access_token(token: str) -> TokenData:
    """Raises JWTError on a bad signature, expiry or missing claims."""
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    user_id = payload.get("userId")
    role = payload.get("role")
    if not user_id or not role:
        raise JWTError("Missing claims")
    return TokenData(user_id=user_id, role=role)


def get_current_user(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> User:
    invalid_token = HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired token")
    try:
        data = decode_access_token(token)
    except JWTError:
        raise invalid_token
    user = db.get_user(data.user_id)
    if user is None or not user.is_active:
        raise invalid_token
    return user


def is_admin(user: User) -> bool:
    return user.role in ADMIN_ROLES


def require_roles(*roles: str) -> Callable[..., User]:
    def dependency(current: User = Depends(get_current_user)) -> User:
        if current.role not in roles:
            raise HTTPException(status_code=403, detail="Not allowed for role " + current.role)
        return current
    return dependency


def require_self_or_admin(current: User, owner_id: str) -> None:
    if current.id != owner_id and not is_admin(current):
        raise HTTPException(status_code=403, detail="Not allowed")


def require_can_manage(current: User, target: Optional[User]) -> None:
    """Self, or an admin acting on a non-superadmin account, or a superadmin."""
    if target is not None and target.id == current.id:
        return
    if not is_admin(current):
        raise HTTPException(status_code=403, detail="Not allowed")
    if target is None:
        raise HTTPException(status_code=404, detail="User not found")
    if target.role == "superadmin" and current.role != "superadmin":
        raise HTTPException(status_code=403, detail="Only a superadmin can manage superadmin accounts")
