from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from tenantauth.config import AuthConfig
from tenantauth.logging import get_logger
from tenantauth.service.store import AuthStore
from tenantauth.storage.models import DeviceInfo, Session
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SessionService:
    """Per-device session lifecycle with sliding expiration.

    A session ends at whichever comes first: its hard ``expires_at`` or
    ``idle_timeout_minutes`` without activity. Validity checks that find an
    ended session revoke it, so later checks short-circuit on ``revoked``.
    """

    def __init__(
        self,
        store: AuthStore,
        config: AuthConfig,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.cache = cache

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.config.idle_timeout_minutes)

    @property
    def _marker_ttl(self) -> int:
        return self.config.session_max_age_hours * 3600

    async def create_session(
        self, user_id: str, device: Optional[DeviceInfo] = None
    ) -> Session:
        session = Session.new(user_id, self.config.session_max_age_hours, device)
        session = self.store.create_session(session)
        if self.cache:
            try:
                await self.cache.cache_session(session.id, user_id, session.expires_at)
                await self.cache.update_session_activity(
                    session.id, session.created_at, self._marker_ttl
                )
            except Exception as exc:
                logger.warning("session_cache_write_failed", session_id=session.id, error=str(exc))
        logger.info("session_created", session_id=session.id, user_id=user_id)
        return session

    async def _cache_says_revoked(self, session_id: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_session_revoked(session_id)
        except Exception as exc:
            # cache failures read as revoked
            logger.warning(
                "session_revocation_check_failed_defaulting_to_revoked",
                session_id=session_id,
                error=str(exc),
            )
            return True

    async def _last_activity(self, session: Session) -> datetime:
        last = session.last_activity
        if self.cache:
            try:
                cached = await self.cache.get_session_activity(session.id)
            except Exception as exc:
                logger.warning("session_activity_read_failed", session_id=session.id, error=str(exc))
                cached = None
            if cached and cached > last:
                last = cached
        return last

    async def is_session_valid(self, user_id: str, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        if not session or session.user_id != user_id or session.revoked:
            return False
        if await self._cache_says_revoked(session_id):
            return False
        now = self._now()
        if session.expires_at <= now:
            await self.revoke_session(session_id, reason="expired")
            logger.info("session_expired", session_id=session_id, user_id=user_id)
            return False
        idle = now - await self._last_activity(session)
        if idle > self.idle_timeout:
            await self.revoke_session(session_id, reason="idle_timeout")
            logger.info(
                "session_idle_timeout",
                session_id=session_id,
                user_id=user_id,
                idle_seconds=int(idle.total_seconds()),
            )
            return False
        return True

    async def get_session_remaining_time(self, session_id: str) -> int:
        """Seconds until the idle timeout (or hard expiry, if sooner); never negative."""
        session = self.store.get_session(session_id)
        if not session or session.revoked:
            return 0
        now = self._now()
        idle_left = self.idle_timeout - (now - await self._last_activity(session))
        hard_left = session.expires_at - now
        return max(0, int(min(idle_left, hard_left).total_seconds()))

    async def update_session_activity(self, session_id: str) -> bool:
        now = self._now()
        touched = self.store.touch_session(session_id, now)
        if touched and self.cache:
            try:
                await self.cache.update_session_activity(session_id, now, self._marker_ttl)
            except Exception as exc:
                logger.warning("session_activity_write_failed", session_id=session_id, error=str(exc))
        return touched

    async def revoke_session(
        self,
        session_id: str,
        revoked_by: Optional[str] = None,
        reason: str = "revoked",
    ) -> bool:
        """Revoke the session and every refresh token bound to it."""
        changed = self.store.revoke_session(
            session_id, revoked_by=revoked_by, reason=reason, now=self._now()
        )
        if self.cache:
            try:
                await self.cache.mark_session_revoked(session_id, self._marker_ttl)
            except Exception as exc:
                logger.warning("session_revocation_cache_failed", session_id=session_id, error=str(exc))
        if changed:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return changed

    async def revoke_all_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        *,
        revoked_by: Optional[str] = None,
        reason: str = "revoked",
    ) -> List[str]:
        revoked = self.store.revoke_user_sessions(
            user_id,
            except_session_id=except_session_id,
            revoked_by=revoked_by,
            reason=reason,
            now=self._now(),
        )
        if self.cache:
            try:
                await self.cache.revoke_user_sessions(
                    user_id, self._marker_ttl, except_session_id=except_session_id
                )
            except Exception as exc:
                logger.warning("session_revocation_cache_failed", user_id=user_id, error=str(exc))
        logger.info(
            "user_sessions_revoked", user_id=user_id, count=len(revoked), reason=reason
        )
        return revoked

    def list_active_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id, self._now())

    @staticmethod
    def describe_session(session: Session) -> Dict[str, Any]:
        return {
            "id": session.id,
            "created_at": session.created_at.isoformat(),
            "device_info": session.device_info or {},
            "last_used_at": session.last_used_at.isoformat() if session.last_used_at else None,
        }

    async def get_session_status(self, user_id: str, session_id: str) -> Dict[str, Any]:
        valid = await self.is_session_valid(user_id, session_id)
        remaining = await self.get_session_remaining_time(session_id) if valid else 0
        return {"valid": valid, "remaining_seconds": remaining, "session_id": session_id}
