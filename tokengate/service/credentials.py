from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from tokengate.logging import get_logger
from tokengate.service.errors import AuthenticationError, ConflictError, NotFoundError
from tokengate.service.identifiers import DEFAULT_ATTEMPTS, create_with_unique_id
from tokengate.service.passwords import verify_password
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import Admin, LoginToken, User, UserToken

logger = get_logger(__name__)


class Store(Protocol):
    """Row-level operations shared by MemoryStore and PostgresStore."""

    def count_admins(self) -> int: ...

    def get_admin(self, admin_id: str) -> Optional[Admin]: ...

    def get_admin_by_username(self, username: str) -> Optional[Admin]: ...

    def create_admin(
        self,
        admin_id: str,
        name: str,
        username: str,
        password_hash: str,
        created_by: Optional[str] = None,
        *,
        first_only: bool = False,
    ) -> Admin: ...

    def update_admin(
        self,
        admin_id: str,
        *,
        name: str,
        username: str,
        password_hash: Optional[str] = None,
    ) -> Optional[Admin]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(self, user_id: str, email: str) -> User: ...

    def set_user_banned(self, user_id: str, banned: bool) -> Optional[User]: ...

    def create_login_token(
        self,
        token_id: str,
        email: str,
        ip_address: str,
        device: str,
        expires_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> LoginToken: ...

    def get_login_token(self, token_id: str) -> Optional[LoginToken]: ...

    def create_login_token_limited(
        self,
        token_id: str,
        email: str,
        ip_address: str,
        device: str,
        expires_at: datetime,
        *,
        now: datetime,
        max_active: int,
        min_interval: timedelta,
    ) -> LoginToken: ...

    def decide_login_token(self, token_id: str, *, authorized: bool) -> bool: ...

    def create_user_token(
        self,
        token_id: str,
        user_id: str,
        ip_address: str,
        device: str,
        expires_at: datetime,
        *,
        login_token_id: Optional[str] = None,
        parent_user_token_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> UserToken: ...

    def get_user_token(self, token_id: str) -> Optional[UserToken]: ...

    def get_user_token_by_parent(self, parent_id: str) -> Optional[UserToken]: ...

    def touch_user_token(self, token_id: str, at: datetime) -> bool: ...

    def disconnect_user_token(self, token_id: str) -> bool: ...


class CredentialStore:
    """Principal lookups used by the authorities.

    Missing rows raise NotFoundError and uniqueness failures raise
    ConflictError so callers deal only in service errors.
    """

    def __init__(self, store: Store, *, id_attempts: int = DEFAULT_ATTEMPTS) -> None:
        self.store = store
        self.id_attempts = id_attempts

    def find_admin_by_id(self, admin_id: str) -> Admin:
        admin = self.store.get_admin(admin_id)
        if not admin:
            raise NotFoundError("admin not found")
        return admin

    def authenticate_admin(self, username: str, password: str) -> Admin:
        admin = self.store.get_admin_by_username((username or "").strip())
        # Same failure for unknown username and wrong password
        if not admin or not verify_password(admin.password_hash, password):
            logger.warning("admin_login_failed", username=username)
            raise AuthenticationError("incorrect username or password")
        return admin

    def find_user_by_id(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def find_user_by_email(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        return user

    def create_user(self, email: str) -> User:
        try:
            user = create_with_unique_id(
                lambda user_id: self.store.create_user(user_id, email),
                attempts=self.id_attempts,
                kind="user",
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("user_created", user_id=user.id)
        return user

    def get_or_create_user(self, email: str) -> User:
        """Resolve a user by email, creating it on first sight.

        A concurrent creation of the same email resolves to the winner's row.
        """
        existing = self.store.get_user_by_email(email)
        if existing:
            return existing
        try:
            return self.create_user(email)
        except ConflictError:
            return self.find_user_by_email(email)

    def set_banned(self, user_id: str, banned: bool) -> User:
        user = self.store.set_user_banned(user_id, banned)
        if not user:
            raise NotFoundError("user not found")
        logger.info("user_ban_updated", user_id=user_id, banned=banned)
        return user
