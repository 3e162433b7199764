from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Type, TypeVar, Union

from tokengate.logging import get_logger
from tokengate.service.errors import AuthenticationError, SessionExpiredError
from tokengate.storage.models import utcnow

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}

LOGIN_SCOPE_APPROVE = "approve"
LOGIN_SCOPE_REDEEM = "redeem"
_LOGIN_SCOPES = {LOGIN_SCOPE_APPROVE, LOGIN_SCOPE_REDEEM}


@dataclass(frozen=True)
class AdminClaims:
    admin_id: str
    issued_at: datetime
    expires_at: datetime
    kind = "admin"


@dataclass(frozen=True)
class LoginClaims:
    login_token_id: str
    issued_at: datetime
    expires_at: datetime
    scope: str = LOGIN_SCOPE_APPROVE
    kind = "login"


@dataclass(frozen=True)
class SessionClaims:
    session_id: str
    issued_at: datetime
    expires_at: datetime
    kind = "session"


Claims = Union[AdminClaims, LoginClaims, SessionClaims]
ClaimsT = TypeVar("ClaimsT", AdminClaims, LoginClaims, SessionClaims)

_ID_KEYS = {"admin": "adminId", "login": "loginTokenId", "session": "userTokenId"}


def _encode_segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":"), sort_keys=True).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _decode_segment(segment: str) -> dict:
    padding = "=" * (-len(segment) % 4)
    decoded = base64.urlsafe_b64decode(segment + padding)
    data = json.loads(decoded)
    if not isinstance(data, dict):
        raise ValueError("segment is not an object")
    return data


def _to_timestamp(value: datetime) -> int:
    return int(value.timestamp())


def _from_timestamp(value: object) -> datetime:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("timestamp must be an integer")
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _claims_to_payload(claims: Claims) -> dict:
    if isinstance(claims, AdminClaims):
        subject = claims.admin_id
    elif isinstance(claims, LoginClaims):
        subject = claims.login_token_id
    elif isinstance(claims, SessionClaims):
        subject = claims.session_id
    else:
        raise TypeError(f"unsupported claims type: {type(claims).__name__}")
    payload = {
        "kind": claims.kind,
        _ID_KEYS[claims.kind]: subject,
        "createdAt": _to_timestamp(claims.issued_at),
        "expiresAt": _to_timestamp(claims.expires_at),
    }
    if isinstance(claims, LoginClaims):
        payload["scope"] = claims.scope
    return payload


def _payload_to_claims(payload: dict) -> Claims:
    kind = payload.get("kind")
    id_key = _ID_KEYS.get(kind) if isinstance(kind, str) else None
    if id_key is None:
        raise ValueError("unknown claims kind")
    subject = payload.get(id_key)
    if not isinstance(subject, str) or not subject:
        raise ValueError("missing subject")
    issued_at = _from_timestamp(payload.get("createdAt"))
    expires_at = _from_timestamp(payload.get("expiresAt"))
    if kind == "admin":
        return AdminClaims(admin_id=subject, issued_at=issued_at, expires_at=expires_at)
    if kind == "login":
        scope = payload.get("scope")
        if scope not in _LOGIN_SCOPES:
            raise ValueError("invalid login scope")
        return LoginClaims(
            login_token_id=subject,
            issued_at=issued_at,
            expires_at=expires_at,
            scope=scope,
        )
    return SessionClaims(session_id=subject, issued_at=issued_at, expires_at=expires_at)


class TokenCodec:
    """Signs and verifies ``header.payload.signature`` bearer tokens.

    The signature is a lowercase hex HMAC-SHA256 over the two encoded
    segments. Verification authenticates the token before any claim is
    trusted, then checks issued-at and expiry.
    """

    def __init__(self, secret: str, *, clock_skew_seconds: int = 0) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._key = secret.encode()
        self.clock_skew = timedelta(seconds=clock_skew_seconds)

    def _signature(self, signing_input: str) -> str:
        return hmac.new(self._key, signing_input.encode(), hashlib.sha256).hexdigest()

    def sign(self, claims: Claims) -> str:
        signing_input = f"{_encode_segment(_HEADER)}.{_encode_segment(_claims_to_payload(claims))}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(
        self,
        token: str,
        expected: Optional[Type[ClaimsT]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Claims:
        """Return the claims carried by ``token``.

        Raises:
            AuthenticationError: malformed token, bad signature, unexpected
                claims kind, or issued-at in the future.
            SessionExpiredError: expires-at is not after ``now``.
        """
        if not token or not isinstance(token, str):
            raise AuthenticationError("missing token")
        parts = token.split(".")
        if len(parts) != 3:
            raise AuthenticationError("malformed token")
        header_segment, payload_segment, signature = parts
        expected_signature = self._signature(f"{header_segment}.{payload_segment}")
        if not hmac.compare_digest(
            expected_signature.encode(), signature.encode("utf-8", "replace")
        ):
            logger.warning("token_signature_mismatch")
            raise AuthenticationError("invalid token signature")

        try:
            header = _decode_segment(header_segment)
            payload = _decode_segment(payload_segment)
            claims = _payload_to_claims(payload)
        except (ValueError, TypeError, OverflowError, OSError) as exc:
            logger.warning("token_payload_invalid", error=str(exc))
            raise AuthenticationError("malformed token") from exc
        if header != _HEADER:
            logger.warning("token_header_invalid", alg=header.get("alg"))
            raise AuthenticationError("unsupported token header")

        if expected is not None and not isinstance(claims, expected):
            raise AuthenticationError("unexpected token type")

        current = now or utcnow()
        if claims.issued_at > current + self.clock_skew:
            raise AuthenticationError("invalid date")
        if claims.expires_at <= current:
            raise SessionExpiredError("token expired")
        return claims
