"""Field-level encryption for integration secrets stored in settings."""

from __future__ import annotations

from typing import Any

import structlog
from cryptography.fernet import Fernet, InvalidToken

from engimetric.config import get_settings
from engimetric.integrations.base import IntegrationMetadata
from engimetric.kernel.errors import MissingCredentialsError, ValidationError

logger = structlog.get_logger()


def _get_fernet() -> Fernet:
    key = get_settings().encryption_key
    if not key:
        raise MissingCredentialsError(
            message="ENCRYPTION_KEY is not configured",
            integration="settings",
        )
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_secret(value: str) -> str:
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt_secret(value: str) -> str:
    try:
        return _get_fernet().decrypt(value.encode()).decode()
    except InvalidToken as exc:
        logger.warning("Integration secret failed to decrypt")
        raise ValidationError(
            message="Stored integration secret could not be decrypted",
            code="integration.secret_invalid",
        ) from exc


def decrypt_integration_fields(raw: dict[str, Any], metadata: IntegrationMetadata | None) -> dict[str, Any]:
    """Return a copy of `raw` with every non-empty encrypted field decrypted."""
    decrypted = dict(raw)
    if metadata is None:
        return decrypted
    for key in metadata.encrypted_fields:
        value = decrypted.get(key)
        if value:
            decrypted[key] = decrypt_secret(str(value))
    return decrypted

