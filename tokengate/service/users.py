from __future__ import annotations

from tokengate.logging import get_logger
from tokengate.service.credentials import CredentialStore
from tokengate.service.errors import ConflictError
from tokengate.storage.models import Admin, User

logger = get_logger(__name__)


class UserService:
    """Admin-driven ban state changes.

    A ban takes effect on the next validation of any of the user's
    sessions; no session rows are touched.
    """

    def __init__(self, credentials: CredentialStore) -> None:
        self.credentials = credentials

    def ban(self, user_id: str, *, by: Admin) -> User:
        user = self.credentials.find_user_by_id(user_id)
        if user.banned:
            raise ConflictError("user already banned")
        updated = self.credentials.set_banned(user_id, True)
        logger.info("user_banned", user_id=user_id, admin_id=by.id)
        return updated

    def unban(self, user_id: str, *, by: Admin) -> User:
        user = self.credentials.find_user_by_id(user_id)
        if not user.banned:
            raise ConflictError("user is not banned")
        updated = self.credentials.set_banned(user_id, False)
        logger.info("user_unbanned", user_id=user_id, admin_id=by.id)
        return updated
