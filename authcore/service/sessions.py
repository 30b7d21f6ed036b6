from __future__ import annotations

from typing import List, Optional

from authcore.clock import Clock, from_epoch, utcnow
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import NotFoundError, TokenRevokedError
from authcore.service.tokens import AuthContext, TokenIssuer, TokenPair
from authcore.storage.memory import MemoryStore
from authcore.storage.models import Session, User

logger = get_logger(__name__)


class SessionRegistry:
    """One row per signed-in device, each holding its live refresh and access jti.

    Refresh is single-use rotation: the store swaps the session's refresh
    jti only if it still matches the presented one, so exactly one of two
    concurrent refreshes wins and the other is rejected as revoked.
    """

    def __init__(
        self,
        store: MemoryStore,
        tokens: TokenIssuer,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self._clock = clock

    async def _revoke_row_tokens(self, session: Session) -> None:
        await self.tokens.revoke_access(session.access_jti, session.access_expires_at)
        await self.tokens.revoke_refresh(session.refresh_jti, session.refresh_expires_at)

    async def issue_token_pair(
        self,
        user: User,
        *,
        device_name: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[TokenPair, Session]:
        """Mint tokens for a fully authenticated user and record the session."""
        pair = self.tokens.mint_pair(user)
        session = Session.new(
            user.id,
            now=self._clock(),
            refresh_jti=pair.refresh_jti,
            refresh_expires_at=pair.refresh_expires_at,
            access_jti=pair.access_jti,
            access_expires_at=pair.access_expires_at,
            device_name=device_name,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        evicted = self.store.add_session(session, max_active=self.settings.max_concurrent_sessions)
        for stale in evicted:
            await self._revoke_row_tokens(stale)
            logger.info("session_evicted", user_id=user.id, session_id=stale.id)
        logger.info("session_created", user_id=user.id, session_id=session.id)
        return pair, session

    async def refresh(self, refresh_token: str) -> tuple[TokenPair, Session]:
        user, payload = await self.tokens.validate_refresh(refresh_token)
        presented_jti = payload["jti"]
        session = self.store.get_session_by_refresh_jti(presented_jti)
        if session is None:
            logger.warning("refresh_token_reuse_detected", user_id=user.id)
            raise TokenRevokedError(reason="refresh_token_reused")

        pair = self.tokens.mint_pair(user)
        previous = self.store.rotate_session_tokens(
            session.id,
            presented_jti,
            refresh_jti=pair.refresh_jti,
            refresh_expires_at=pair.refresh_expires_at,
            access_jti=pair.access_jti,
            access_expires_at=pair.access_expires_at,
            now=self._clock(),
        )
        if previous is None:
            logger.warning("refresh_token_reuse_detected", user_id=user.id, session_id=session.id)
            raise TokenRevokedError(reason="refresh_token_reused")

        await self.tokens.revoke_refresh(presented_jti, from_epoch(payload["exp"]))
        # Only the newest access token of a session stays usable
        await self.tokens.revoke_access(previous.access_jti, previous.access_expires_at)
        logger.info("session_refreshed", user_id=user.id, session_id=session.id)
        return pair, self.store.get_session(session.id) or session

    def current_session(self, ctx: AuthContext) -> Optional[Session]:
        if ctx.session_id:
            return self.store.get_session(ctx.session_id)
        session = self.store.get_session_by_access_jti(ctx.jti)
        if session:
            ctx.session_id = session.id
            self.store.touch_session(session.id, self._clock())
        return session

    def list_sessions(self, ctx: AuthContext) -> List[dict]:
        current = self.current_session(ctx)
        current_id = current.id if current else None
        return [
            {
                "id": sess.id,
                "device_name": sess.device_name,
                "ip_address": sess.ip_addr,
                "user_agent": sess.user_agent,
                "created_at": sess.created_at,
                "last_seen_at": sess.last_seen_at,
                "is_current": sess.id == current_id,
            }
            for sess in self.store.list_user_sessions(ctx.user_id)
        ]

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        existing = self.store.get_session(session_id)
        if not existing or existing.user_id != user_id:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        removed = self.store.revoke_session(session_id)
        if removed:
            await self._revoke_row_tokens(removed)
            logger.info("session_revoked", user_id=user_id, session_id=session_id)

    async def sign_out(self, ctx: AuthContext) -> None:
        """Revoke only the caller's session; other devices stay signed in."""
        session = self.current_session(ctx)
        await self.tokens.revoke_access(ctx.jti, ctx.expires_at)
        if session:
            await self.revoke_session(ctx.user_id, session.id)
        logger.info("signed_out", user_id=ctx.user_id)

    async def revoke_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        removed = self.store.revoke_user_sessions(user_id, except_session_id=except_session_id)
        for sess in removed:
            await self._revoke_row_tokens(sess)
        if removed:
            logger.info("sessions_revoked", user_id=user_id, count=len(removed))
        return len(removed)

    async def revoke_all_other(self, ctx: AuthContext) -> int:
        current = self.current_session(ctx)
        return await self.revoke_all(ctx.user_id, except_session_id=current.id if current else None)


__all__ = ["SessionRegistry"]
