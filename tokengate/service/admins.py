from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from tokengate.logging import get_logger
from tokengate.service.credentials import CredentialStore, Store
from tokengate.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from tokengate.service.identifiers import DEFAULT_ATTEMPTS, create_with_unique_id
from tokengate.service.passwords import hash_password, needs_rehash
from tokengate.service.tokens import AdminClaims, TokenCodec
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import Admin, utcnow

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def _validate_password(password: Optional[str], confirm: Optional[str]) -> str:
    if not password:
        raise BadRequestError("password is required", detail={"field": "password"})
    if password != confirm:
        raise BadRequestError("passwords do not match", detail={"field": "confirm_password"})
    if not MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH:
        raise BadRequestError(
            f"password must be between {MIN_PASSWORD_LENGTH} and {MAX_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )
    return password


def _require(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise BadRequestError(f"{field} is required", detail={"field": field})
    return cleaned


class AdminService:
    """Admin login, registration and profile updates."""

    def __init__(
        self,
        store: Store,
        codec: TokenCodec,
        credentials: CredentialStore,
        *,
        token_ttl: timedelta = timedelta(days=7),
        id_attempts: int = DEFAULT_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.credentials = credentials
        self.token_ttl = token_ttl
        self.id_attempts = id_attempts
        self._clock = clock

    def issue_token(self, admin: Admin) -> str:
        now = self._clock().replace(microsecond=0)
        return self.codec.sign(
            AdminClaims(admin_id=admin.id, issued_at=now, expires_at=now + self.token_ttl)
        )

    def login(self, username: str, password: str) -> Tuple[Admin, str]:
        admin = self.credentials.authenticate_admin(username, password)
        if needs_rehash(admin.password_hash):
            self.store.update_admin(
                admin.id,
                name=admin.name,
                username=admin.username,
                password_hash=hash_password(password),
            )
        logger.info("admin_login", admin_id=admin.id)
        return admin, self.issue_token(admin)

    def registration_open(self) -> bool:
        """True while no admin exists and the first one may self-register."""
        return self.store.count_admins() == 0

    def register(
        self,
        *,
        name: str,
        username: str,
        password: str,
        confirm_password: str,
        created_by: Optional[Admin] = None,
    ) -> Admin:
        name = _require(name, "name")
        username = _require(username, "username")
        password_hash = hash_password(_validate_password(password, confirm_password))
        first_only = created_by is None
        try:
            admin = create_with_unique_id(
                lambda admin_id: self.store.create_admin(
                    admin_id,
                    name,
                    username,
                    password_hash,
                    created_by.id if created_by else None,
                    first_only=first_only,
                ),
                attempts=self.id_attempts,
                kind="admin",
            )
        except ConstraintViolation as exc:
            if exc.field == "first_admin":
                raise AuthenticationError("admin registration requires authentication") from exc
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "admin_registered",
            admin_id=admin.id,
            created_by=created_by.id if created_by else None,
        )
        return admin

    def update(
        self,
        admin_id: str,
        *,
        name: str,
        username: str,
        password: Optional[str] = None,
        confirm_password: Optional[str] = None,
    ) -> Admin:
        name = _require(name, "name")
        username = _require(username, "username")
        password_hash = None
        if password or confirm_password:
            password_hash = hash_password(_validate_password(password, confirm_password))
        try:
            admin = self.store.update_admin(
                admin_id, name=name, username=username, password_hash=password_hash
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if not admin:
            raise NotFoundError("admin not found")
        logger.info("admin_updated", admin_id=admin_id, password_changed=bool(password_hash))
        return admin
