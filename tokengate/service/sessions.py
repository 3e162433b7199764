from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from tokengate.logging import get_logger
from tokengate.service.credentials import Store
from tokengate.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
)
from tokengate.service.identifiers import DEFAULT_ATTEMPTS, create_with_unique_id
from tokengate.service.tokens import SessionClaims, TokenCodec
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import LoginToken, User, UserToken, utcnow

logger = get_logger(__name__)

# Bound on successor hops followed from one presented session
_MAX_RENEWAL_HOPS = 8


@dataclass
class SessionValidation:
    session: UserToken
    user: User
    must_reissue: bool = False
    token: Optional[str] = None


class SessionAuthority:
    """Issues, renews and invalidates user tokens (sessions).

    A session is active until ``expires_at``. After that it may be renewed
    once, into a child session, while both its last activity and its expiry
    fall inside the grace window. Disconnection is terminal and the owner's
    ban state is re-read on every validation.
    """

    def __init__(
        self,
        store: Store,
        codec: TokenCodec,
        *,
        ttl: timedelta = timedelta(days=30),
        grace: timedelta = timedelta(days=3),
        clock_skew: timedelta = timedelta(0),
        require_fingerprint: bool = False,
        id_attempts: int = DEFAULT_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl = ttl
        self.grace = grace
        self.clock_skew = clock_skew
        self.require_fingerprint = require_fingerprint
        self.id_attempts = id_attempts
        self._clock = clock

    def sign(self, session: UserToken) -> str:
        """Mint a bearer token for ``session``.

        The token outlives the row by the grace window so that an expired
        session can still reach renewal; the row decides validity.
        """
        now = self._clock()
        return self.codec.sign(
            SessionClaims(
                session_id=session.id,
                issued_at=now.replace(microsecond=0),
                expires_at=(session.expires_at + self.grace).replace(microsecond=0),
            )
        )

    def issue_from_login(self, login_token: LoginToken, user: User) -> UserToken:
        """Create the single session a login token may ever redeem into."""
        if self.require_fingerprint and not (login_token.ip_address and login_token.device):
            raise BadRequestError("client IP address and device information are required")
        now = self._clock()
        try:
            session = create_with_unique_id(
                lambda session_id: self.store.create_user_token(
                    session_id,
                    user.id,
                    login_token.ip_address,
                    login_token.device,
                    now + self.ttl,
                    login_token_id=login_token.id,
                    created_at=now,
                ),
                attempts=self.id_attempts,
                kind="user_token",
            )
        except ConstraintViolation as exc:
            if exc.field == "login_token_id":
                logger.warning("login_token_replayed", login_token_id=login_token.id)
                raise ConflictError("login token already redeemed") from exc
            raise
        logger.info(
            "session_created",
            session_id=session.id,
            user_id=user.id,
            login_token_id=login_token.id,
        )
        return session

    def validate(self, session_id: str, *, _hops: int = 0) -> SessionValidation:
        """Resolve a session id to a usable session.

        Raises:
            AuthenticationError: unknown session or owner, or created-at in
                the future.
            ForbiddenError: session disconnected or owner banned.
            SessionExpiredError: expired beyond the grace window.
            ConflictError: a concurrent request renewed the session first.
        """
        now = self._clock()
        session = self.store.get_user_token(session_id)
        if not session:
            raise AuthenticationError("session not found")
        if session.disconnected:
            raise ForbiddenError("session disconnected")
        if session.created_at > now + self.clock_skew:
            logger.warning("session_created_in_future", session_id=session.id)
            raise AuthenticationError("invalid date")
        user = self.store.get_user(session.user_id)
        if not user:
            raise AuthenticationError("session owner not found")
        if user.banned:
            raise ForbiddenError("user is banned")

        if not session.is_expired(now):
            return SessionValidation(session=session, user=user)

        gap = now - self.grace
        if not (session.last_activity > gap and session.expires_at > gap):
            logger.info("session_expired", session_id=session.id)
            raise SessionExpiredError("session expired")

        successor = self.store.get_user_token_by_parent(session.id)
        if successor is not None:
            if _hops >= _MAX_RENEWAL_HOPS:
                raise SessionExpiredError("session expired")
            followed = self.validate(successor.id, _hops=_hops + 1)
            return SessionValidation(
                session=followed.session,
                user=followed.user,
                must_reissue=True,
                token=followed.token or self.sign(followed.session),
            )

        renewed = self._renew(session, now)
        return SessionValidation(
            session=renewed, user=user, must_reissue=True, token=self.sign(renewed)
        )

    def _renew(self, session: UserToken, now: datetime) -> UserToken:
        try:
            renewed = create_with_unique_id(
                lambda session_id: self.store.create_user_token(
                    session_id,
                    session.user_id,
                    session.ip_address,
                    session.device,
                    now + self.ttl,
                    parent_user_token_id=session.id,
                    created_at=now,
                ),
                attempts=self.id_attempts,
                kind="user_token",
            )
        except ConstraintViolation as exc:
            if exc.field == "parent_user_token_id":
                logger.info("session_renewal_lost_race", session_id=session.id)
                raise ConflictError(
                    "session already renewed", detail={"session_id": session.id}
                ) from exc
            raise
        logger.info("session_renewed", session_id=session.id, renewed_session_id=renewed.id)
        return renewed

    def touch(self, session_id: str) -> None:
        """Record activity on a session. Failures are logged, never raised."""
        try:
            if not self.store.touch_user_token(session_id, self._clock()):
                logger.warning("session_touch_missed", session_id=session_id)
        except Exception as exc:
            logger.warning(
                "session_touch_failed",
                session_id=session_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def disconnect(self, session_id: str, user_id: str) -> UserToken:
        session = self.store.get_user_token(session_id)
        if not session:
            raise NotFoundError("session not found")
        if session.user_id != user_id:
            raise ForbiddenError("unauthorized action")
        if not self.store.disconnect_user_token(session_id):
            raise ConflictError("session already disconnected")
        logger.info("session_disconnected", session_id=session_id, user_id=user_id)
        return self.store.get_user_token(session_id) or session
