from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from tokengate.logging import get_logger
from tokengate.service.credentials import CredentialStore, Store
from tokengate.service.devices import ClientFingerprint
from tokengate.service.email import EmailService, normalize_email
from tokengate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    ServiceError,
    SessionExpiredError,
)
from tokengate.service.identifiers import DEFAULT_ATTEMPTS, create_with_unique_id
from tokengate.service.sessions import SessionAuthority
from tokengate.service.tokens import (
    LOGIN_SCOPE_APPROVE,
    LOGIN_SCOPE_REDEEM,
    LoginClaims,
    TokenCodec,
)
from tokengate.storage.errors import LOGIN_RATE_LIMIT, ConstraintViolation
from tokengate.storage.models import LoginToken, User, UserToken, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginRequest:
    login_token_id: str
    handoff_token: str
    expires_at: datetime


@dataclass(frozen=True)
class Redemption:
    login_token: LoginToken
    user: User
    session: UserToken
    token: str


class LoginTokenAuthority:
    """Issues single-use login tokens and turns approved ones into sessions.

    Every login token yields two signed credentials. The ``approve`` token is
    mailed to the address owner and is the only way to decide the request.
    The ``redeem`` token goes back to the requesting device and is the only
    way to exchange an authorized request for a session.
    """

    def __init__(
        self,
        store: Store,
        codec: TokenCodec,
        credentials: CredentialStore,
        sessions: SessionAuthority,
        *,
        mailer: Optional[EmailService] = None,
        ttl: timedelta = timedelta(minutes=10),
        max_active: int = 3,
        min_interval: timedelta = timedelta(seconds=60),
        clock_skew: timedelta = timedelta(0),
        id_attempts: int = DEFAULT_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.credentials = credentials
        self.sessions = sessions
        self.mailer = mailer
        self.ttl = ttl
        self.max_active = max_active
        self.min_interval = min_interval
        self.clock_skew = clock_skew
        self.id_attempts = id_attempts
        self._clock = clock

    def _sign(self, token: LoginToken, scope: str) -> str:
        return self.codec.sign(
            LoginClaims(
                login_token_id=token.id,
                issued_at=token.created_at.replace(microsecond=0),
                expires_at=token.expires_at.replace(microsecond=0),
                scope=scope,
            )
        )

    def _rate_limited(self, violation: ConstraintViolation) -> RateLimitedError:
        active = violation.detail.get("active")
        retry_after = violation.detail.get("retry_after")
        if retry_after is not None:
            interval = int(self.min_interval.total_seconds())
            logger.warning("login_request_too_soon", active=active)
            return RateLimitedError(
                f"wait {interval} seconds between login requests",
                detail={"retry_after": retry_after},
            )
        logger.warning("login_request_too_many_active", active=active)
        return RateLimitedError(
            "too many active login requests for this email",
            detail={"max_active": self.max_active},
        )

    def request_login(self, email: str, fingerprint: ClientFingerprint) -> LoginRequest:
        """Create a pending login token for ``email`` and mail its approval link."""
        address = normalize_email(email)
        user = self.store.get_user_by_email(address)
        if user is not None and user.banned:
            raise ForbiddenError("user is banned")
        now = self._clock()

        try:
            token = create_with_unique_id(
                lambda token_id: self.store.create_login_token_limited(
                    token_id,
                    address,
                    fingerprint.ip_address,
                    fingerprint.device,
                    now + self.ttl,
                    now=now,
                    max_active=self.max_active,
                    min_interval=self.min_interval,
                ),
                attempts=self.id_attempts,
                kind="login_token",
            )
        except ConstraintViolation as exc:
            if exc.field != LOGIN_RATE_LIMIT:
                raise
            raise self._rate_limited(exc) from exc
        logger.info("login_token_created", login_token_id=token.id)
        self._deliver(token)
        return LoginRequest(
            login_token_id=token.id,
            handoff_token=self._sign(token, LOGIN_SCOPE_REDEEM),
            expires_at=token.expires_at,
        )

    def _deliver(self, token: LoginToken) -> None:
        if self.mailer is None:
            logger.warning("login_token_mailer_missing", login_token_id=token.id)
            return
        try:
            sent = self.mailer.send_login_confirmation(
                token.email,
                self._sign(token, LOGIN_SCOPE_APPROVE),
                device=token.device,
                ip_address=token.ip_address,
                ttl_minutes=max(1, int(self.ttl.total_seconds() // 60)),
            )
        except ServiceError as exc:
            logger.error("login_token_delivery_failed", login_token_id=token.id, error=exc.message)
            return
        if not sent:
            logger.error("login_token_delivery_failed", login_token_id=token.id)

    def _load(self, token: str, scope: str) -> LoginToken:
        claims = self.codec.verify(token, LoginClaims, now=self._clock())
        if claims.scope != scope:
            raise AuthenticationError("login token not valid for this action")
        row = self.store.get_login_token(claims.login_token_id)
        if not row:
            raise AuthenticationError("login token not found")
        now = self._clock()
        if row.created_at > now + self.clock_skew:
            logger.warning("login_token_created_in_future", login_token_id=row.id)
            raise AuthenticationError("invalid date")
        if row.is_expired(now):
            raise SessionExpiredError("login token expired")
        return row

    def decide(self, token: str, approve: bool) -> LoginToken:
        """Authorize or deny a pending login token, exactly once."""
        row = self._load(token, LOGIN_SCOPE_APPROVE)
        if row.authorized:
            raise ConflictError("login token already authorized")
        if row.denied:
            raise ConflictError("login token already denied")
        if not self.store.decide_login_token(row.id, authorized=approve):
            # Another decision landed between the read and the update
            raise ConflictError("login token already decided")
        logger.info("login_token_decided", login_token_id=row.id, approved=approve)
        return self.store.get_login_token(row.id) or row

    def redeem(self, token: str) -> Redemption:
        """Exchange an authorized login token for its one session."""
        row = self._load(token, LOGIN_SCOPE_REDEEM)
        if row.denied:
            raise ForbiddenError("login token denied")
        if not row.authorized:
            raise ForbiddenError("login token not yet authorized")
        user = self.credentials.get_or_create_user(row.email)
        if user.banned:
            raise ForbiddenError("user is banned")
        session = self.sessions.issue_from_login(row, user)
        logger.info("login_token_redeemed", login_token_id=row.id, session_id=session.id)
        return Redemption(
            login_token=row,
            user=user,
            session=session,
            token=self.sessions.sign(session),
        )
