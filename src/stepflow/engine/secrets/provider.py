"""Secret and parameter providers.

Providers:
    - SecretProvider: abstract interface
    - EnvVarSecretProvider: environment variables prefixed ``STEPFLOW_SECRET_``
    - StaticSecretProvider: in-memory parameters (embedding applications, tests)

Example:
    >>> provider = EnvVarSecretProvider()
    >>> token = await provider.get_secret("task_token")
"""

import os
from abc import ABC, abstractmethod
from collections.abc import Mapping

from .exceptions import SecretNotFoundError

DEFAULT_ENV_PREFIX = "STEPFLOW_SECRET_"


class SecretProvider(ABC):
    """Source of named secret values. All methods are async so that remote
    stores can be plugged in without changing callers."""

    @abstractmethod
    async def get_secret(self, key: str) -> str:
        """
        Retrieve a secret value by key.

        Raises:
            SecretNotFoundError: If the key does not exist
            SecretProviderError: If the backing store fails
        """

    @abstractmethod
    async def list_secret_keys(self) -> list[str]:
        """List every key this provider can serve."""


class EnvVarSecretProvider(SecretProvider):
    """
    Secrets from environment variables.

    ``get_secret("task_token")`` reads ``STEPFLOW_SECRET_TASK_TOKEN``.

    Attributes:
        prefix: Environment variable prefix
    """

    def __init__(self, prefix: str = DEFAULT_ENV_PREFIX) -> None:
        self.prefix = prefix

    def _env_var_name(self, key: str) -> str:
        return f"{self.prefix}{key.upper()}"

    async def get_secret(self, key: str) -> str:
        env_var_name = self._env_var_name(key)
        value = os.environ.get(env_var_name)
        if value is None:
            raise SecretNotFoundError(
                key=key,
                provider_hint=f"Set environment variable: {env_var_name}=<secret_value>",
            )
        return value

    async def list_secret_keys(self) -> list[str]:
        return [
            name[len(self.prefix) :].lower() for name in os.environ if name.startswith(self.prefix)
        ]


class StaticSecretProvider(SecretProvider):
    """Secrets held in memory, e.g. parameters fetched once at startup."""

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def get_secret(self, key: str) -> str:
        try:
            return self._values[key]
        except KeyError:
            raise SecretNotFoundError(key=key) from None

    async def list_secret_keys(self) -> list[str]:
        return list(self._values)


__all__ = ["DEFAULT_ENV_PREFIX", "EnvVarSecretProvider", "SecretProvider", "StaticSecretProvider"]
