# grant_subscription.py  (lives in the backend root, next to main.py)
"""
Operator CLI for the subscription ledger, without going through HTTP.

Usage:
  export DATABASE_URL="<your Postgres URL>"
  python grant_subscription.py grant --email someone@example.com --plan-id 1 --months 3
  python grant_subscription.py grant --email someone@example.com --plan-id 1 --until 2025-12-31
  python grant_subscription.py cancel --email someone@example.com
  python grant_subscription.py status --email someone@example.com
  python grant_subscription.py sweep
"""

import argparse
import logging
import sys
from datetime import datetime

import ledger
from db import SessionLocal, init_db, utcnow
from errors import AppError
from models import User
from sweeper import ExpirySweeper

ACTOR = "cli"


def _user(db, email: str) -> User:
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if not user:
        raise SystemExit(f"User not found: {email}")
    return user


def cmd_grant(db, args) -> str:
    user = _user(db, args.email)
    now = utcnow()
    if args.until:
        end_date = datetime.fromisoformat(args.until)
    else:
        end_date = ledger.add_months(now, args.months)
    sub = ledger.override(db, user.id, args.plan_id, end_date, actor=ACTOR, now=now)
    return f"OK: {user.email} -> subscription {sub.id} plan={sub.plan_id} until {sub.end_date.isoformat()}"


def cmd_cancel(db, args) -> str:
    user = _user(db, args.email)
    count = ledger.cancel_all_for_user(db, user.id, source=f"admin:{ACTOR}")
    return f"OK: {user.email} -> cancelled {count} subscription(s)"


def cmd_status(db, args) -> str:
    user = _user(db, args.email)
    now = utcnow()
    sub = ledger.find_active_for_user(db, user.id, now)
    if not sub:
        return f"{user.email}: no active subscription (trial used: {ledger.has_used_trial(db, user.id)})"
    return f"{user.email}: subscription {sub.id} {sub.payment_status} until {sub.end_date.isoformat()}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LibreTV subscription operator tool")
    sub = parser.add_subparsers(dest="command", required=True)

    grant = sub.add_parser("grant", help="replace the user's active subscription")
    grant.add_argument("--email", required=True)
    grant.add_argument("--plan-id", type=int, required=True)
    until = grant.add_mutually_exclusive_group(required=True)
    until.add_argument("--months", type=int)
    until.add_argument("--until", help="ISO date/time in UTC")

    cancel = sub.add_parser("cancel", help="cancel the user's active subscription")
    cancel.add_argument("--email", required=True)

    status = sub.add_parser("status", help="show the user's current subscription")
    status.add_argument("--email", required=True)

    sub.add_parser("sweep", help="expire lapsed subscriptions now")
    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO)
    args = build_parser().parse_args(argv)
    init_db()

    if args.command == "sweep":
        result = ExpirySweeper(session_factory=SessionLocal).run_once()
        print(f"OK: expired={result['subscriptions_expired']} sessions_purged={result['sessions_purged']}")
        return 0

    handlers = {"grant": cmd_grant, "cancel": cmd_cancel, "status": cmd_status}
    db = SessionLocal()
    try:
        print(handlers[args.command](db, args))
    except AppError as e:
        print(f"ERROR {e.code}: {e.message}", file=sys.stderr)
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
