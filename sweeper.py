# sweeper.py
"""
Expiry sweeper.

Periodically moves lapsed active subscriptions to ``expired`` and drops dead
sessions. Access checks never depend on it (validity is derived from the end
date); the sweep keeps the status column and admin stats honest.

Single-flight: a tick that finds a sweep still running is skipped. A failed
sweep is logged and simply tried again on the next tick.
"""
import asyncio
import logging
import os
import threading
from typing import Optional

from fastapi import Request

import auth
import ledger
from db import SessionLocal, utcnow

log = logging.getLogger("sweeper")

SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))
SWEEP_ENABLED = os.getenv("SWEEP_ENABLED", "true").strip().lower() in ("1", "true", "yes", "y", "t")


class ExpirySweeper:
    def __init__(self, session_factory=SessionLocal, interval: float = SWEEP_INTERVAL_SECONDS, clock=utcnow):
        self.session_factory = session_factory
        self.interval = interval
        self.clock = clock
        self.last_result: Optional[dict] = None
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def run_once(self, as_of=None) -> Optional[dict]:
        """One sweep. Returns None when another sweep holds the lock."""
        if not self._lock.acquire(blocking=False):
            log.info("sweep already in progress, skipping")
            return None
        try:
            as_of = as_of or self.clock()
            db = self.session_factory()
            try:
                expired = ledger.expire_batch(db, as_of)
                sessions = auth.purge_expired_sessions(db, as_of)
            finally:
                db.close()
            self.last_result = {
                "as_of": as_of.isoformat(),
                "subscriptions_expired": expired,
                "sessions_purged": sessions,
            }
            log.info("sweep as_of=%s expired=%s sessions_purged=%s", as_of.isoformat(), expired, sessions)
            return self.last_result
        finally:
            self._lock.release()

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                log.exception("sweep failed, retrying next tick")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())
            log.info("expiry sweeper started, interval=%ss", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("expiry sweeper stopped")


def get_sweeper(request: Request) -> ExpirySweeper:
    return request.app.state.sweeper
