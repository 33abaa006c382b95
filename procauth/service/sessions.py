from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from procauth.config import Settings
from procauth.logging import get_logger
from procauth.service.errors import SessionRevoked, TokenExpired, TokenInvalid
from procauth.service.tokens import TokenCodec, TokenType
from procauth.storage.models import Account, Clock, Session, SessionStatus, utcnow

logger = get_logger(__name__)


@dataclass
class SessionContext:
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class IssuedSession:
    session: Session
    tokens: TokenPair


@dataclass
class VerifiedToken:
    payload: Dict[str, Any]
    session: Session


class SessionManager:
    """Issues, rotates and revokes token pairs bound to session records.

    The refresh token's ``jti`` is the session's single stored refresh value;
    rotation is a compare-and-swap on it, so a refresh token succeeds at most
    once. Access tokens are only honoured while their session is active.
    """

    def __init__(
        self,
        store,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.session_ttl = timedelta(hours=settings.session_ttl_hours)
        self.remember_me_ttl = timedelta(days=settings.remember_me_ttl_days)
        self.clock = clock

    def _ttl(self, remember_me: bool) -> timedelta:
        return self.remember_me_ttl if remember_me else self.session_ttl

    def _issue_pair(self, session: Session) -> TokenPair:
        now = self.clock()
        access_exp = min(now + self.access_ttl, session.expires_at)
        access_token = self.codec.issue(
            TokenType.ACCESS,
            session.account_id,
            expires_at=access_exp,
            session_id=session.id,
        )
        refresh_token = self.codec.issue(
            TokenType.REFRESH,
            session.account_id,
            expires_at=session.expires_at,
            session_id=session.id,
            jti=session.refresh_jti,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session.id,
            access_expires_at=access_exp,
            refresh_expires_at=session.expires_at,
        )

    def create_session(self, account: Account, context: SessionContext) -> IssuedSession:
        session = Session.new(
            account.id,
            self._ttl(context.remember_me),
            self.clock(),
            device_fingerprint=context.device_fingerprint,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            remember_me=context.remember_me,
        )
        session = self.store.create_session(session)
        logger.info(
            "session_created",
            account_id=account.id,
            session_id=session.id,
            remember_me=session.remember_me,
        )
        return IssuedSession(session=session, tokens=self._issue_pair(session))

    def rotate(self, refresh_token: str) -> IssuedSession:
        payload = self.codec.decode(refresh_token, TokenType.REFRESH)
        session_id = payload.get("sid")
        jti = payload.get("jti")
        if not session_id or not jti:
            raise TokenInvalid()
        now = self.clock()
        session = self.store.rotate_session_tokens(
            session_id,
            expected_refresh_jti=jti,
            new_refresh_jti=str(uuid.uuid4()),
            now=now,
        )
        if session is None:
            current = self.store.get_session(session_id)
            if current is not None and current.status == SessionStatus.REVOKED:
                raise SessionRevoked()
            if current is not None and not current.is_live(now):
                raise TokenExpired("Session has expired")
            logger.warning("refresh_token_reuse_rejected", session_id=session_id)
            raise TokenInvalid("Refresh token is no longer valid")
        return IssuedSession(session=session, tokens=self._issue_pair(session))

    def revoke(self, session_id: str, *, reason: str = "logout") -> bool:
        revoked = self.store.revoke_session(session_id, reason=reason, now=self.clock())
        if revoked:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return revoked

    def revoke_all(
        self,
        account_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str = "logout_all",
    ) -> int:
        count = self.store.revoke_account_sessions(
            account_id,
            except_session_id=except_session_id,
            reason=reason,
            now=self.clock(),
        )
        logger.info(
            "sessions_revoked",
            account_id=account_id,
            count=count,
            reason=reason,
            kept_session_id=except_session_id,
        )
        return count

    def verify(self, token: str, expected_type: TokenType = TokenType.ACCESS) -> VerifiedToken:
        payload = self.codec.decode(token, expected_type)
        session_id = payload.get("sid")
        if not session_id:
            raise TokenInvalid()
        session = self.store.get_session(session_id)
        if session is None or session.account_id != payload.get("sub"):
            raise TokenInvalid()
        # Session state wins over the token's own expiry
        if session.status == SessionStatus.REVOKED:
            raise SessionRevoked()
        if not session.is_live(self.clock()):
            raise TokenExpired("Session has expired")
        if expected_type == TokenType.REFRESH and payload.get("jti") != session.refresh_jti:
            raise TokenInvalid("Refresh token is no longer valid")
        return VerifiedToken(payload=payload, session=session)

    def touch(self, session_id: str) -> None:
        self.store.touch_session(session_id, self.clock())

    def list_active(self, account_id: str) -> List[Session]:
        now = self.clock()
        return [s for s in self.store.list_sessions(account_id) if s.is_live(now)]

    def sweep(self) -> int:
        return self.store.expire_sessions(self.clock())
