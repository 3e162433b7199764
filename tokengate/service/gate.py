from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from tokengate.logging import get_logger
from tokengate.service.credentials import CredentialStore
from tokengate.service.errors import AuthenticationError, ConflictError, NotFoundError
from tokengate.service.login_tokens import LoginTokenAuthority
from tokengate.service.sessions import SessionAuthority, SessionValidation
from tokengate.service.tokens import AdminClaims, SessionClaims, TokenCodec
from tokengate.storage.models import Admin, User, UserToken, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class AdminPrincipal:
    admin: Admin


@dataclass(frozen=True)
class UserPrincipal:
    user: User
    session: UserToken
    # Set when the client must replace its stored session token
    token: Optional[str] = None


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


class AuthenticationGate:
    """Single entry point resolving request credentials into principals."""

    def __init__(
        self,
        codec: TokenCodec,
        credentials: CredentialStore,
        login_tokens: LoginTokenAuthority,
        sessions: SessionAuthority,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.credentials = credentials
        self.login_tokens = login_tokens
        self.sessions = sessions
        self._clock = clock

    def authenticate_admin(self, authorization: Optional[str]) -> AdminPrincipal:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        try:
            claims = self.codec.verify(token, AdminClaims, now=self._clock())
            admin = self.credentials.find_admin_by_id(claims.admin_id)
        except (AuthenticationError, NotFoundError) as exc:
            logger.info("admin_authentication_failed", reason=exc.message)
            # Expired, invalid and unknown all read the same to the caller
            raise AuthenticationError("unauthorized") from exc
        return AdminPrincipal(admin=admin)

    def authenticate_user(
        self,
        authorization: Optional[str],
        login_token: Optional[str] = None,
    ) -> UserPrincipal:
        """Resolve a login-token handoff or a session bearer into a user.

        A handoff redeems the login token into a new session and always
        returns its token. A session bearer returns a token only when the
        session was renewed.
        """
        if login_token:
            redemption = self.login_tokens.redeem(login_token)
            validation = self._validate(redemption.session.id)
            token = validation.token or redemption.token
        else:
            bearer = extract_bearer(authorization)
            if not bearer:
                raise AuthenticationError("missing bearer token")
            claims = self.codec.verify(bearer, SessionClaims, now=self._clock())
            validation = self._validate(claims.session_id)
            token = validation.token if validation.must_reissue else None

        self.sessions.touch(validation.session.id)
        return UserPrincipal(user=validation.user, session=validation.session, token=token)

    def _validate(self, session_id: str) -> SessionValidation:
        try:
            return self.sessions.validate(session_id)
        except ConflictError:
            # A concurrent request renewed first; the retry follows its successor
            logger.info("session_validation_retry", session_id=session_id)
            return self.sessions.validate(session_id)
