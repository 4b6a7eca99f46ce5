"""Exceptions raised by the secret/parameter store.

Hierarchy:
    SecretError (base)
    ├── SecretNotFoundError (missing secret)
    └── SecretProviderError (provider-level failure)
"""


class SecretError(Exception):
    """Base exception for all secret store errors."""


class SecretNotFoundError(SecretError):
    """
    A requested secret does not exist.

    Attributes:
        key: The secret key that was not found
        provider_hint: Optional hint about where to configure the secret
    """

    def __init__(self, key: str, provider_hint: str | None = None) -> None:
        self.key = key
        self.provider_hint = provider_hint

        message = f"Secret '{key}' not found"
        if provider_hint:
            message += f". {provider_hint}"
        super().__init__(message)


class SecretProviderError(SecretError):
    """
    A provider failed to read its backing store.

    Attributes:
        provider_name: Name of the failing provider
        details: Provider-specific error information
    """

    def __init__(self, provider_name: str, details: str) -> None:
        self.provider_name = provider_name
        self.details = details
        super().__init__(f"Secret provider '{provider_name}' error: {details}")


__all__ = ["SecretError", "SecretNotFoundError", "SecretProviderError"]
