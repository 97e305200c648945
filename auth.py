# auth.py
import os
import re
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import get_db, utcnow
from errors import AuthError, ConflictError, ForbiddenError, InvalidToken, ValidationError
from models import User, UserSession, USER_ACTIVE

log = logging.getLogger("auth")

# --- Config ---
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-prod")
JWT_ALG = "HS256"
JWT_ISSUER = "libretv"
SESSION_TTL_DAYS = int(os.getenv("SESSION_TTL_DAYS", "7"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
ADMIN_EMAILS = {e.strip().lower() for e in os.getenv("ADMIN_EMAIL", "").split(",") if e.strip()}

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)
pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")


# --- Input rules ---
def validate_email(email: str) -> None:
    if not EMAIL_RE.match(email or ""):
        raise ValidationError("Invalid email address", code="INVALID_EMAIL")


def validate_username(username: str) -> None:
    if not USERNAME_RE.match(username or ""):
        raise ValidationError("Username must be 3-20 letters, digits or underscores", code="INVALID_USERNAME")


def validate_password(password: str) -> None:
    if len(password or "") < 8:
        raise ValidationError("Password must be at least 8 characters", code="WEAK_PASSWORD")
    if not (re.search(r"[a-z]", password) and re.search(r"[A-Z]", password) and re.search(r"\d", password)):
        raise ValidationError("Password must contain upper and lower case letters and a digit", code="WEAK_PASSWORD")


# --- Password helpers ---
def hash_password(password: str) -> tuple[str, str]:
    """Returns (hash, salt). bcrypt embeds the salt; it is also stored on its own column."""
    hashed = pwd_ctx.hash(password)
    return hashed, hashed[:29]  # "$2b$12$" + 22 salt chars


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_ctx.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def is_admin(user: User) -> bool:
    return bool(user.is_admin) or (user.email or "").lower() in ADMIN_EMAILS


# --- Users ---
def register_user(db: Session, username: str, email: str, password: str) -> User:
    email = email.strip().lower()
    username = username.strip()
    validate_email(email)
    validate_username(username)
    validate_password(password)

    if db.query(User).filter(User.email == email).first():
        raise ConflictError("Email is already registered", code="EMAIL_EXISTS")
    if db.query(User).filter(User.username == username).first():
        raise ConflictError("Username is already taken", code="USERNAME_EXISTS")

    hashed, salt = hash_password(password)
    user = User(username=username, email=email, password_hash=hashed, salt=salt, status=USER_ACTIVE)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # lost a race against a concurrent registration with the same email/username
        db.rollback()
        raise ConflictError("Email or username is already registered", code="USER_EXISTS")
    db.refresh(user)
    log.info("registered user id=%s username=%s", user.id, user.username)
    return user


def authenticate_user(db: Session, login: str, password: str) -> Optional[User]:
    login = (login or "").strip()
    q = db.query(User).filter(User.status == USER_ACTIVE)
    if "@" in login:
        user = q.filter(User.email == login.lower()).first()
    else:
        user = q.filter(User.username == login).first()
    if not user or not verify_password(password, user.password_hash):
        return None
    return user


def update_profile(
    db: Session,
    user: User,
    username: Optional[str] = None,
    email: Optional[str] = None,
    password: Optional[str] = None,
    current_password: Optional[str] = None,
) -> User:
    if password:
        if not current_password:
            raise ValidationError("Current password is required", code="CURRENT_PASSWORD_REQUIRED")
        if not verify_password(current_password, user.password_hash):
            raise AuthError("Current password is incorrect", code="INVALID_CURRENT_PASSWORD")
        validate_password(password)
        user.password_hash, user.salt = hash_password(password)

    if username and username != user.username:
        validate_username(username)
        if db.query(User).filter(User.username == username, User.id != user.id).first():
            raise ConflictError("Username is already taken", code="USERNAME_EXISTS")
        user.username = username

    if email:
        email = email.strip().lower()
        if email != user.email:
            validate_email(email)
            if db.query(User).filter(User.email == email, User.id != user.id).first():
                raise ConflictError("Email is already registered", code="EMAIL_EXISTS")
            user.email = email

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Email or username is already registered", code="USER_EXISTS")
    db.refresh(user)
    return user


# --- Sessions ---
def create_session(db: Session, user: User, ttl_days: int = SESSION_TTL_DAYS) -> tuple[str, UserSession]:
    """Issue a bearer token and persist only its hash."""
    expires_at = utcnow() + timedelta(days=ttl_days)
    claims = {
        "sub": str(user.id),
        "jti": secrets.token_urlsafe(32),
        "iss": JWT_ISSUER,
        "exp": expires_at,
    }
    token = jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALG)
    session = UserSession(user_id=user.id, token_hash=hash_token(token), expires_at=expires_at)
    db.add(session)
    db.commit()
    return token, session


def validate_session(db: Session, token: str, now=None) -> User:
    """Resolve a bearer token to an active user or raise InvalidToken."""
    if not token:
        raise InvalidToken()
    try:
        jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG], issuer=JWT_ISSUER)
    except JWTError:
        raise InvalidToken()

    now = now or utcnow()
    user = (
        db.query(User)
        .join(UserSession, UserSession.user_id == User.id)
        .filter(
            UserSession.token_hash == hash_token(token),
            UserSession.expires_at > now,
            User.status == USER_ACTIVE,
        )
        .first()
    )
    if not user:
        raise InvalidToken()
    return user


def delete_session(db: Session, token: str) -> int:
    deleted = db.query(UserSession).filter(UserSession.token_hash == hash_token(token)).delete()
    db.commit()
    return deleted


def delete_user_sessions(db: Session, user_id: int) -> int:
    return db.query(UserSession).filter(UserSession.user_id == user_id).delete()


def purge_expired_sessions(db: Session, now=None) -> int:
    deleted = db.query(UserSession).filter(UserSession.expires_at <= (now or utcnow())).delete()
    db.commit()
    return deleted


# --- FastAPI dependencies ---
def get_current_token(token: Optional[str] = Depends(oauth2_scheme)) -> str:
    if not token:
        raise AuthError("Missing access token", code="NO_TOKEN")
    return token


def get_current_user(token: str = Depends(get_current_token), db: Session = Depends(get_db)) -> User:
    return validate_session(db, token)


def get_current_admin(current_user: User = Depends(get_current_user)) -> User:
    if not is_admin(current_user):
        raise ForbiddenError("Admin privileges required", code="ADMIN_REQUIRED")
    return current_user
