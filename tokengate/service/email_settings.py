from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.email import MailConfig, is_valid_email
from tokengate.service.errors import BadRequestError, ServerError
from tokengate.service.identifiers import create_with_unique_id
from tokengate.storage.models import EmailSettings

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailSettingsView:
    host: Optional[str]
    port: int
    username: Optional[str]
    use_tls: bool
    from_address: Optional[str]
    from_name: str
    password_set: bool
    source: str


class EmailSettingsService:
    """Stores the SMTP configuration, with the password encrypted at rest.

    Stored rows are append-only; the newest row wins. Environment settings
    are used until a row exists.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._cipher = self._build_cipher(settings.encryption_key or settings.token_secret)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        if not self.settings.encryption_key:
            logger.warning("encryption_key_missing_using_token_secret")
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def _decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            logger.error("email_settings_decrypt_failed")
            raise ServerError("stored email password cannot be decrypted") from exc

    def get(self) -> EmailSettingsView:
        row = self.store.get_email_settings()
        if row is None:
            return EmailSettingsView(
                host=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_user,
                use_tls=self.settings.smtp_use_tls,
                from_address=self.settings.email_from_address,
                from_name=self.settings.email_from_name,
                password_set=bool(self.settings.smtp_password),
                source="environment",
            )
        return EmailSettingsView(
            host=row.host,
            port=row.port,
            username=row.username,
            use_tls=row.use_tls,
            from_address=row.from_address,
            from_name=row.from_name or self.settings.email_from_name,
            password_set=bool(row.password_encrypted),
            source="stored",
        )

    def update(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_address: Optional[str] = None,
        from_name: Optional[str] = None,
    ) -> EmailSettingsView:
        host = (host or "").strip()
        username = (username or "").strip()
        if not host or not username or not port:
            raise BadRequestError("host, port and username are required")
        if not 0 < port < 65536:
            raise BadRequestError("port must be between 1 and 65535", detail={"field": "port"})
        if from_address and not is_valid_email(from_address):
            raise BadRequestError("invalid from address", detail={"field": "from_address"})

        if password:
            password_encrypted: Optional[str] = self._encrypt(password)
        else:
            previous = self.store.get_email_settings()
            password_encrypted = previous.password_encrypted if previous else None

        create_with_unique_id(
            lambda settings_id: self.store.save_email_settings(
                settings_id,
                host=host,
                port=port,
                username=username,
                password_encrypted=password_encrypted,
                use_tls=use_tls,
                from_address=from_address,
                from_name=from_name,
            ),
            attempts=self.settings.id_generation_attempts,
            kind="email_settings",
        )
        logger.info("email_settings_updated", host=host, port=port)
        return self.get()

    def mail_config(self) -> MailConfig:
        """Resolve the transport configuration used for outbound mail."""
        row: Optional[EmailSettings] = self.store.get_email_settings()
        if row is None:
            return MailConfig(
                host=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_user,
                password=self.settings.smtp_password,
                use_tls=self.settings.smtp_use_tls,
                from_email=self.settings.email_from_address or self.settings.smtp_user,
                from_name=self.settings.email_from_name,
            )
        return MailConfig(
            host=row.host,
            port=row.port,
            username=row.username,
            password=self._decrypt(row.password_encrypted) if row.password_encrypted else None,
            use_tls=row.use_tls,
            from_email=row.from_address or row.username,
            from_name=row.from_name or self.settings.email_from_name,
        )
