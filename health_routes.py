# health_routes.py
from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import get_db, utcnow

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health():
    # super fast: proves the app is mounted
    return {"ok": True, "service": "libretv-backend"}


@router.get("/ready")
def ready(request: Request, db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_up = True
    except SQLAlchemyError:
        db_up = False
    state = request.app.state
    startup_error = getattr(state, "startup_error", "")
    return {
        "ok": db_up and getattr(state, "startup_ok", True),
        "db": "up" if db_up else "down",
        "db_ready": getattr(state, "db_ready", db_up),
        "startup_ok": getattr(state, "startup_ok", True),
        # don't expose internal traces beyond a short summary
        "startup_error": startup_error[:500] if startup_error else "",
        "time": utcnow().isoformat() + "Z",
    }
