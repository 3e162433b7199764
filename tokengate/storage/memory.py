from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

from tokengate.logging import get_logger
from tokengate.storage.errors import ConstraintViolation, login_rate_limit_violation
from tokengate.storage.models import (
    Admin,
    EmailSettings,
    LoginToken,
    User,
    UserToken,
    utcnow,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    Enforces the same uniqueness rules as the Postgres schema so that
    services behave identically against either backend.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.admins: Dict[str, Admin] = {}
        self.users: Dict[str, User] = {}
        self.login_tokens: Dict[str, LoginToken] = {}
        self.user_tokens: Dict[str, UserToken] = {}
        self.email_settings: Dict[str, EmailSettings] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def close(self) -> None:
        return None

    # -- admins -----------------------------------------------------------

    def count_admins(self) -> int:
        with self._data_lock:
            return len(self.admins)

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with self._data_lock:
            return self.admins.get(admin_id)

    def get_admin_by_username(self, username: str) -> Optional[Admin]:
        with self._data_lock:
            return next(
                (a for a in self.admins.values() if a.username == username), None
            )

    def create_admin(
        self,
        admin_id: str,
        name: str,
        username: str,
        password_hash: str,
        created_by: Optional[str] = None,
        *,
        first_only: bool = False,
    ) -> Admin:
        with self._data_lock:
            if first_only and self.admins:
                raise ConstraintViolation(
                    "an admin already exists", {"field": "first_admin"}
                )
            if admin_id in self.admins:
                raise ConstraintViolation("admin id already exists", {"field": "id"})
            if any(a.username == username for a in self.admins.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if created_by is not None and created_by not in self.admins:
                raise ConstraintViolation(
                    "created_by admin does not exist", {"field": "created_by"}
                )
            admin = Admin(
                id=admin_id,
                name=name,
                username=username,
                password_hash=password_hash,
                created_by=created_by,
            )
            self.admins[admin_id] = admin
            return admin

    def update_admin(
        self,
        admin_id: str,
        *,
        name: str,
        username: str,
        password_hash: Optional[str] = None,
    ) -> Optional[Admin]:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            if not admin:
                return None
            if any(
                a.username == username and a.id != admin_id
                for a in self.admins.values()
            ):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            admin.name = name
            admin.username = username
            if password_hash:
                admin.password_hash = password_hash
            return admin

    # -- users ------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def create_user(self, user_id: str, email: str) -> User:
        with self._data_lock:
            if user_id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=user_id, email=email)
            self.users[user_id] = user
            return user

    def set_user_banned(self, user_id: str, banned: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.banned = banned
            return user

    # -- login tokens -----------------------------------------------------

    def create_login_token(
        self,
        token_id: str,
        email: str,
        ip_address: str,
        device: str,
        expires_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> LoginToken:
        with self._data_lock:
            if token_id in self.login_tokens:
                raise ConstraintViolation(
                    "login token id already exists", {"field": "id"}
                )
            token = LoginToken(
                id=token_id,
                email=email,
                ip_address=ip_address,
                device=device,
                expires_at=expires_at,
                created_at=created_at or utcnow(),
            )
            self.login_tokens[token_id] = token
            return token

    def get_login_token(self, token_id: str) -> Optional[LoginToken]:
        with self._data_lock:
            return self.login_tokens.get(token_id)

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
    ) -> LoginToken:
        """Insert a login token unless ``email`` already has ``max_active`` live ones.

        The count and the insert happen under a single lock hold.
        """
        with self._data_lock:
            mine = [t for t in self.login_tokens.values() if t.email == email]
            active = sum(1 for t in mine if t.expires_at > now)
            if active >= max_active:
                latest = max((t.created_at for t in mine), default=None)
                raise login_rate_limit_violation(active, latest, now, min_interval)
            return self.create_login_token(
                token_id, email, ip_address, device, expires_at, created_at=now
            )

    def decide_login_token(self, token_id: str, *, authorized: bool) -> bool:
        """Set the terminal flag on a pending login token; False if not pending."""
        with self._data_lock:
            token = self.login_tokens.get(token_id)
            if not token or not token.pending:
                return False
            if authorized:
                token.authorized = True
            else:
                token.denied = True
            return True

    # -- user tokens ------------------------------------------------------

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
    ) -> UserToken:
        with self._data_lock:
            if (login_token_id is None) == (parent_user_token_id is None):
                raise ConstraintViolation(
                    "session must derive from exactly one login token or parent session",
                    {"field": "derived_from"},
                )
            if token_id in self.user_tokens:
                raise ConstraintViolation(
                    "user token id already exists", {"field": "id"}
                )
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            for existing in self.user_tokens.values():
                if login_token_id and existing.login_token_id == login_token_id:
                    raise ConstraintViolation(
                        "login token already redeemed", {"field": "login_token_id"}
                    )
                if (
                    parent_user_token_id
                    and existing.parent_user_token_id == parent_user_token_id
                ):
                    raise ConstraintViolation(
                        "session already renewed", {"field": "parent_user_token_id"}
                    )
            now = created_at or utcnow()
            token = UserToken(
                id=token_id,
                user_id=user_id,
                ip_address=ip_address,
                device=device,
                expires_at=expires_at,
                last_activity=now,
                login_token_id=login_token_id,
                parent_user_token_id=parent_user_token_id,
                created_at=now,
            )
            self.user_tokens[token_id] = token
            return token

    def get_user_token(self, token_id: str) -> Optional[UserToken]:
        with self._data_lock:
            return self.user_tokens.get(token_id)

    def get_user_token_by_parent(self, parent_id: str) -> Optional[UserToken]:
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.user_tokens.values()
                    if t.parent_user_token_id == parent_id
                ),
                None,
            )

    def touch_user_token(self, token_id: str, at: datetime) -> bool:
        with self._data_lock:
            token = self.user_tokens.get(token_id)
            if not token:
                return False
            token.last_activity = at
            return True

    def disconnect_user_token(self, token_id: str) -> bool:
        """Mark a connected session disconnected; False if missing or already so."""
        with self._data_lock:
            token = self.user_tokens.get(token_id)
            if not token or token.disconnected:
                return False
            token.disconnected = True
            return True

    # -- email settings ---------------------------------------------------

    def get_email_settings(self) -> Optional[EmailSettings]:
        with self._data_lock:
            if not self.email_settings:
                return None
            return list(self.email_settings.values())[-1]

    def save_email_settings(
        self,
        settings_id: str,
        *,
        host: str,
        port: int,
        username: str,
        password_encrypted: Optional[str],
        use_tls: bool = True,
        from_address: Optional[str] = None,
        from_name: Optional[str] = None,
    ) -> EmailSettings:
        with self._data_lock:
            if settings_id in self.email_settings:
                raise ConstraintViolation(
                    "email settings id already exists", {"field": "id"}
                )
            row = EmailSettings(
                id=settings_id,
                host=host,
                port=port,
                username=username,
                password_encrypted=password_encrypted,
                use_tls=use_tls,
                from_address=from_address,
                from_name=from_name,
            )
            self.email_settings[settings_id] = row
            return row
