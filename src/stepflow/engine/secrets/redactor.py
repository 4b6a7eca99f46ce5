"""Secret redaction for execution traces and stored results.

Secret values loaded from a provider are replaced by ``***REDACTED***``
wherever they occur inside strings of an arbitrarily nested JSON value.
Values shorter than ``MIN_SECRET_LENGTH`` are ignored to avoid redacting
common words.

Example:
    >>> redactor = SecretRedactor(EnvVarSecretProvider())
    >>> await redactor.initialize()
    >>> redactor.redact({"token": "sk-1234567890abcdef", "ok": True})
    {'token': '***REDACTED***', 'ok': True}
"""

import logging
import re
from typing import Any

from .exceptions import SecretError
from .provider import SecretProvider

logger = logging.getLogger(__name__)


class SecretRedactor:
    """
    Replaces known secret values in data structures.

    Attributes:
        provider: Provider the secrets are loaded from
        secrets: Loaded secrets by key
    """

    MIN_SECRET_LENGTH = 8
    REDACTION_MARKER = "***REDACTED***"

    def __init__(self, provider: SecretProvider | None = None) -> None:
        self.provider = provider
        self.secrets: dict[str, str] = {}
        self._patterns: list[re.Pattern[str]] = []

    async def initialize(self) -> None:
        """Load every secret of the provider. Unreadable keys are skipped."""
        if self.provider is None:
            return
        for key in await self.provider.list_secret_keys():
            try:
                value = await self.provider.get_secret(key)
            except SecretError as e:
                logger.debug(f"Skipping secret '{key}' for redaction: {e}")
                continue
            if len(value) >= self.MIN_SECRET_LENGTH:
                self.secrets[key] = value
        self._compile()

    def add_secret(self, key: str, value: str) -> None:
        if len(value) >= self.MIN_SECRET_LENGTH:
            self.secrets[key] = value
            self._compile()

    def _compile(self) -> None:
        # Longest first, so a secret containing another one is replaced whole
        ordered = sorted(set(self.secrets.values()), key=len, reverse=True)
        self._patterns = [re.compile(re.escape(value)) for value in ordered]

    def redact(self, data: Any) -> Any:
        """Return a copy of ``data`` with secret values replaced."""
        if not self._patterns:
            return data
        if isinstance(data, str):
            for pattern in self._patterns:
                data = pattern.sub(self.REDACTION_MARKER, data)
            return data
        if isinstance(data, dict):
            return {key: self.redact(value) for key, value in data.items()}
        if isinstance(data, list | tuple):
            return type(data)(self.redact(item) for item in data)
        return data

    def get_loaded_secret_keys(self) -> list[str]:
        return list(self.secrets)


__all__ = ["SecretRedactor"]
