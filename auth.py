"""
Account registration, login and the authenticated-principal dependency.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import settings
from database import create_document, get_db, serialize
from errors import EmailTaken, Forbidden, Unauthorized, ValidationError
from logger import get_logger
from schemas import ADMIN, DONOR, RECIPIENT, Principal, RegisterBody, User

logger = get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, password_hash: str) -> bool:
    return pwd_context.verify(plain_password, password_hash)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "iss": settings.JWT_ISSUER, "aud": settings.JWT_AUDIENCE})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def public_user(user: dict) -> dict:
    user = serialize(user)
    return {
        "id": user["id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role"),
        "is_active": user.get("is_active", True),
        "created_at": user.get("created_at"),
    }


def register_account(database: Database, body: RegisterBody) -> dict:
    name = body.name.strip()
    if not name:
        raise ValidationError("name is required")
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    email = body.email.lower().strip()
    if database["user"].find_one({"email": email}):
        raise EmailTaken()

    requested_role = (body.role or "").strip().upper()
    if requested_role == ADMIN:
        if email not in settings.ADMIN_EMAILS:
            raise ValidationError("You are not allowed to register as admin. Please register as Recipient or Donor.")
        role = ADMIN
    elif requested_role in (DONOR, RECIPIENT):
        role = requested_role
    else:
        role = RECIPIENT

    user = User(name=name, email=email, password_hash=hash_password(body.password), role=role, phone=body.phone)
    try:
        user_id = create_document("user", user, database=database)
    except DuplicateKeyError:
        raise EmailTaken()
    logger.info("Registered %s account %s", role, user_id)
    return public_user(database["user"].find_one({"_id": ObjectId(user_id)}))


def authenticate(database: Database, email: str, password: str) -> dict:
    user = database["user"].find_one({"email": email.lower().strip()})
    if not user:
        raise Unauthorized("Invalid credentials")
    if not user.get("is_active", True):
        raise Unauthorized("Account is deactivated")
    if not verify_password(password, user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return user


def get_current_account(token: str = Depends(oauth2_scheme), database: Database = Depends(get_db)) -> Principal:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM],
                             audience=settings.JWT_AUDIENCE, issuer=settings.JWT_ISSUER)
        account_id = ObjectId(payload.get("sub"))
    except (JWTError, InvalidId, TypeError):
        raise Unauthorized("Invalid or expired token")

    acc = database["user"].find_one({"_id": account_id})
    if not acc or not acc.get("is_active", True):
        raise Unauthorized()
    return Principal(id=str(acc["_id"]), role=acc["role"], email=acc.get("email"))


def require_role(*roles: str):
    def checker(me: Principal = Depends(get_current_account)) -> Principal:
        if roles and me.role not in roles:
            raise Forbidden()
        return me
    return checker
