from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from taskpulse.logging import get_logger
from taskpulse.storage.errors import StorageError
from taskpulse.storage.models import Session, utcnow

logger = get_logger(__name__)

T = TypeVar("T")


class SessionRegistry:
    """Owns the refresh-session rows of the backing store.

    A row exists iff its refresh credential was issued and has not been
    rotated, revoked or swept. Rows are never updated in place.
    """

    def __init__(self, store: Any, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self._clock = clock or utcnow

    def _call(self, op: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except StorageError:
            logger.error("session_registry_storage_error", op=op)
            raise
        except Exception as exc:
            logger.error("session_registry_storage_error", op=op, error=str(exc))
            raise StorageError(f"session registry {op} failed", {"op": op}) from exc

    def create(self, owner_id: str, refresh_value: str, expires_at: datetime) -> Session:
        session = Session.new(owner_id, refresh_value, expires_at)
        return self._call("create", self.store.insert_session, session)

    def find_live(self, refresh_value: str, now: Optional[datetime] = None) -> Optional[Session]:
        session = self._call("find", self.store.get_session_by_token, refresh_value)
        if session is None or not session.is_live(now or self._clock()):
            return None
        return session

    def delete_by_value(self, refresh_value: str) -> bool:
        """Remove the row for ``refresh_value``; True only for the caller that removed it."""
        return self._call("delete", self.store.delete_session_by_token, refresh_value)

    def delete_by_owner(self, owner_id: str) -> int:
        removed = self._call("delete_owner", self.store.delete_user_sessions, owner_id)
        logger.info("sessions_revoked", user_id=owner_id, count=removed)
        return removed

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or self._clock()
        removed = self._call("sweep", self.store.delete_expired_sessions, cutoff)
        logger.info("session_sweep_complete", removed=removed, cutoff=cutoff.isoformat())
        return removed
