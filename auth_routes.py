# auth_routes.py
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.orm import Session

import access
import auth
import ledger
from db import get_db
from errors import AuthError, ValidationError, ok
from models import User

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterIn(BaseModel):
    username: str
    email: EmailStr
    password: str
    confirm_password: str

    @field_validator("username")
    @classmethod
    def username_not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("username cannot be empty")
        return v


class LoginIn(BaseModel):
    login: str  # email or username
    password: str

    @field_validator("login")
    @classmethod
    def login_not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("login cannot be empty")
        return v


class ProfileIn(BaseModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    current_password: Optional[str] = None


def _session_payload(user: User, token: str, session) -> dict:
    return {
        "user": user.to_safe_dict(),
        "token": token,
        "token_type": "bearer",
        "expires_at": session.expires_at.isoformat(),
    }


@router.post("/register", status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    if payload.password != payload.confirm_password:
        raise ValidationError("Passwords do not match", code="PASSWORD_MISMATCH")
    user = auth.register_user(db, payload.username, payload.email, payload.password)
    token, session = auth.create_session(db, user)
    return ok(_session_payload(user, token, session), "Registration successful")


@router.post("/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = auth.authenticate_user(db, payload.login, payload.password)
    if not user:
        raise AuthError("Invalid username/email or password", code="INVALID_CREDENTIALS")
    token, session = auth.create_session(db, user)
    return ok(_session_payload(user, token, session), "Login successful")


@router.post("/logout")
def logout(token: str = Depends(auth.get_current_token), db: Session = Depends(get_db)):
    auth.delete_session(db, token)
    return ok(message="Logged out")


@router.get("/profile")
def get_profile(current_user: User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    sub = ledger.find_active_for_user(db, current_user.id)
    data = current_user.to_safe_dict()
    data["is_admin"] = auth.is_admin(current_user)
    data["subscription"] = sub.to_safe_dict() if sub else None
    data["has_valid_subscription"] = access.is_authorized(db, current_user)
    return ok(data)


@router.put("/profile")
def update_profile(
    payload: ProfileIn,
    current_user: User = Depends(auth.get_current_user),
    db: Session = Depends(get_db),
):
    user = auth.update_profile(
        db,
        current_user,
        username=(payload.username or "").strip() or None,
        email=payload.email,
        password=payload.password,
        current_password=payload.current_password,
    )
    return ok(user.to_safe_dict(), "Profile updated")
