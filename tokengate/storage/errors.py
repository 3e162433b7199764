from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

LOGIN_RATE_LIMIT = "login_rate_limit"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or check constraint is violated.

    ``detail["field"]`` names the column whose constraint failed, or
    ``login_rate_limit`` when a guarded login token insert was refused.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


def login_rate_limit_violation(
    active: int,
    latest_created_at: Optional[datetime],
    now: datetime,
    min_interval: timedelta,
) -> ConstraintViolation:
    """Build the refusal for an email that already holds too many active tokens.

    ``retry_after`` is only present while the newest token is younger than
    ``min_interval``.
    """
    detail: Dict[str, Any] = {"field": LOGIN_RATE_LIMIT, "active": active}
    if latest_created_at is not None and now - latest_created_at < min_interval:
        remaining = latest_created_at + min_interval - now
        detail["retry_after"] = int(remaining.total_seconds()) + 1
    return ConstraintViolation("login request limit reached", detail)


__all__ = ["ConstraintViolation", "LOGIN_RATE_LIMIT", "login_rate_limit_violation"]
