from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS admins (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_by TEXT REFERENCES admins (id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        banned BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_tokens (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        ip_address TEXT NOT NULL DEFAULT '',
        device TEXT NOT NULL DEFAULT '',
        authorized BOOLEAN NOT NULL DEFAULT FALSE,
        denied BOOLEAN NOT NULL DEFAULT FALSE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT login_tokens_single_decision CHECK (NOT (authorized AND denied))
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_tokens_email_idx ON login_tokens (email, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS user_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users (id),
        login_token_id TEXT UNIQUE REFERENCES login_tokens (id),
        parent_user_token_id TEXT UNIQUE REFERENCES user_tokens (id),
        ip_address TEXT NOT NULL DEFAULT '',
        device TEXT NOT NULL DEFAULT '',
        disconnected BOOLEAN NOT NULL DEFAULT FALSE,
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT user_tokens_derived_from CHECK (
            (login_token_id IS NULL) <> (parent_user_token_id IS NULL)
        )
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_settings (
        id TEXT PRIMARY KEY,
        host TEXT NOT NULL,
        port INTEGER NOT NULL,
        username TEXT NOT NULL,
        password_encrypted TEXT,
        use_tls BOOLEAN NOT NULL DEFAULT TRUE,
        from_address TEXT,
        from_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]

_REQUIRED_TABLES = ["admins", "users", "login_tokens", "user_tokens", "email_settings"]

# constraint name -> (field, message)
_UNIQUE_CONSTRAINTS = {
    "admins_pkey": ("id", "admin id already exists"),
    "admins_username_key": ("username", "username already exists"),
    "users_pkey": ("id", "user id already exists"),
    "users_email_key": ("email", "email already exists"),
    "login_tokens_pkey": ("id", "login token id already exists"),
    "user_tokens_pkey": ("id", "user token id already exists"),
    "user_tokens_login_token_id_key": ("login_token_id", "login token already redeemed"),
    "user_tokens_parent_user_token_id_key": (
        "parent_user_token_id",
        "session already renewed",
    ),
    "email_settings_pkey": ("id", "email settings id already exists"),
}


def _constraint_violation(exc: errors.IntegrityError) -> ConstraintViolation:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) or ""
    if isinstance(exc, errors.UniqueViolation) and name in _UNIQUE_CONSTRAINTS:
        field, message = _UNIQUE_CONSTRAINTS[name]
        return ConstraintViolation(message, {"field": field})
    if name == "user_tokens_derived_from":
        return ConstraintViolation(
            "session must derive from exactly one login token or parent session",
            {"field": "derived_from"},
        )
    if isinstance(exc, errors.ForeignKeyViolation):
        return ConstraintViolation(
            "referenced row does not exist", {"field": name or "foreign_key"}
        )
    return ConstraintViolation("constraint violated", {"field": name or None})


class PostgresStore:
    """Postgres-backed store reached through an owned connection pool.

    Every operation borrows a connection for the duration of one statement
    (or one transaction) and returns it to the pool.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 25,
        max_idle: float = 60.0,
        max_lifetime: float = 300.0,
        timeout: float = 10.0,
        statement_timeout_ms: int = 5000,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            max_idle=max_idle,
            max_lifetime=max_lifetime,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()
        self._verify_required_schema()

    def close(self) -> None:
        self.pool.close()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Ensure required tables exist before serving requests."""
        with self._connect() as conn:
            missing = [
                table
                for table in _REQUIRED_TABLES
                if not conn.execute(
                    "SELECT to_regclass(%s) AS oid", (table,)
                ).fetchone()["oid"]
            ]
        if missing:
            self.logger.error("postgres_schema_missing", tables=missing)
            raise RuntimeError(f"missing required tables: {', '.join(missing)}")

    def _insert(self, sql: str, params: tuple) -> Dict[str, Any]:
        try:
            with self._connect() as conn:
                return conn.execute(sql, params).fetchone()
        except errors.IntegrityError as exc:
            raise _constraint_violation(exc) from exc

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _row_to_admin(row: Dict[str, Any]) -> Admin:
        return Admin(
            id=str(row["id"]),
            name=row["name"],
            username=row["username"],
            password_hash=row["password_hash"],
            created_by=row.get("created_by"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            banned=bool(row["banned"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_login_token(row: Dict[str, Any]) -> LoginToken:
        return LoginToken(
            id=str(row["id"]),
            email=row["email"],
            ip_address=row.get("ip_address") or "",
            device=row.get("device") or "",
            authorized=bool(row["authorized"]),
            denied=bool(row["denied"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_user_token(row: Dict[str, Any]) -> UserToken:
        return UserToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            login_token_id=row.get("login_token_id"),
            parent_user_token_id=row.get("parent_user_token_id"),
            ip_address=row.get("ip_address") or "",
            device=row.get("device") or "",
            disconnected=bool(row["disconnected"]),
            last_activity=row["last_activity"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_email_settings(row: Dict[str, Any]) -> EmailSettings:
        return EmailSettings(
            id=str(row["id"]),
            host=row["host"],
            port=int(row["port"]),
            username=row["username"],
            password_encrypted=row.get("password_encrypted"),
            use_tls=bool(row.get("use_tls", True)),
            from_address=row.get("from_address"),
            from_name=row.get("from_name"),
            created_at=row["created_at"],
        )

    # -- admins -----------------------------------------------------------

    def count_admins(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM admins").fetchone()
        return int(row["total"])

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admins WHERE id = %s", (admin_id,)
            ).fetchone()
        return self._row_to_admin(row) if row else None

    def get_admin_by_username(self, username: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admins WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_admin(row) if row else None

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
        if first_only:
            # Serialize first-admin registration so only one self-registration wins
            try:
                with self._connect() as conn:
                    conn.execute("LOCK TABLE admins IN SHARE ROW EXCLUSIVE MODE")
                    row = conn.execute(
                        """
                        INSERT INTO admins (id, name, username, password_hash, created_by)
                        SELECT %s, %s, %s, %s, %s
                        WHERE NOT EXISTS (SELECT 1 FROM admins)
                        RETURNING *
                        """,
                        (admin_id, name, username, password_hash, created_by),
                    ).fetchone()
            except errors.IntegrityError as exc:
                raise _constraint_violation(exc) from exc
            if not row:
                raise ConstraintViolation(
                    "an admin already exists", {"field": "first_admin"}
                )
            return self._row_to_admin(row)
        row = self._insert(
            """
            INSERT INTO admins (id, name, username, password_hash, created_by)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (admin_id, name, username, password_hash, created_by),
        )
        return self._row_to_admin(row)

    def update_admin(
        self,
        admin_id: str,
        *,
        name: str,
        username: str,
        password_hash: Optional[str] = None,
    ) -> Optional[Admin]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE admins
                    SET name = %s,
                        username = %s,
                        password_hash = COALESCE(%s, password_hash)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, username, password_hash or None, admin_id),
                ).fetchone()
        except errors.IntegrityError as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_admin(row) if row else None

    # -- users ------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def create_user(self, user_id: str, email: str) -> User:
        row = self._insert(
            "INSERT INTO users (id, email) VALUES (%s, %s) RETURNING *",
            (user_id, email),
        )
        return self._row_to_user(row)

    def set_user_banned(self, user_id: str, banned: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET banned = %s WHERE id = %s RETURNING *",
                (banned, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

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
        row = self._insert(
            """
            INSERT INTO login_tokens (id, email, ip_address, device, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (token_id, email, ip_address, device, expires_at, created_at or utcnow()),
        )
        return self._row_to_login_token(row)

    def get_login_token(self, token_id: str) -> Optional[LoginToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_tokens WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_login_token(row) if row else None

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

        A transaction-scoped advisory lock on the email serializes concurrent
        requests for the same address between the count and the insert.
        """
        try:
            with self._connect() as conn:
                conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (email,))
                stats = conn.execute(
                    """
                    SELECT COUNT(*) FILTER (WHERE expires_at > %s) AS active,
                           MAX(created_at) AS latest
                    FROM login_tokens WHERE email = %s
                    """,
                    (now, email),
                ).fetchone()
                active = int(stats["active"])
                if active >= max_active:
                    raise login_rate_limit_violation(
                        active, stats["latest"], now, min_interval
                    )
                row = conn.execute(
                    """
                    INSERT INTO login_tokens (id, email, ip_address, device, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token_id, email, ip_address, device, expires_at, now),
                ).fetchone()
        except errors.IntegrityError as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_login_token(row)

    def decide_login_token(self, token_id: str, *, authorized: bool) -> bool:
        column = "authorized" if authorized else "denied"
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE login_tokens SET {column} = TRUE
                WHERE id = %s AND authorized = FALSE AND denied = FALSE
                """,
                (token_id,),
            )
            return cur.rowcount == 1

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
        now = created_at or utcnow()
        row = self._insert(
            """
            INSERT INTO user_tokens (
                id, user_id, login_token_id, parent_user_token_id,
                ip_address, device, last_activity, expires_at, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                token_id,
                user_id,
                login_token_id,
                parent_user_token_id,
                ip_address,
                device,
                now,
                expires_at,
                now,
            ),
        )
        return self._row_to_user_token(row)

    def get_user_token(self, token_id: str) -> Optional[UserToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_tokens WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_user_token(row) if row else None

    def get_user_token_by_parent(self, parent_id: str) -> Optional[UserToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_tokens WHERE parent_user_token_id = %s",
                (parent_id,),
            ).fetchone()
        return self._row_to_user_token(row) if row else None

    def touch_user_token(self, token_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_tokens SET last_activity = %s WHERE id = %s",
                (at, token_id),
            )
            return cur.rowcount == 1

    def disconnect_user_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_tokens SET disconnected = TRUE
                WHERE id = %s AND disconnected = FALSE
                """,
                (token_id,),
            )
            return cur.rowcount == 1

    # -- email settings ---------------------------------------------------

    def get_email_settings(self) -> Optional[EmailSettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_settings ORDER BY created_at DESC LIMIT 1"
            ).fetchone()
        return self._row_to_email_settings(row) if row else None

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
        row = self._insert(
            """
            INSERT INTO email_settings (
                id, host, port, username, password_encrypted, use_tls, from_address, from_name
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                settings_id,
                host,
                port,
                username,
                password_encrypted,
                use_tls,
                from_address,
                from_name,
            ),
        )
        return self._row_to_email_settings(row)
