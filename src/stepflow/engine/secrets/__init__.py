"""Secret/parameter store and redaction.

Task clients read credentials through a SecretProvider; the execution trace
passes every recorded payload through a SecretRedactor.
"""

from .exceptions import SecretError, SecretNotFoundError, SecretProviderError
from .provider import DEFAULT_ENV_PREFIX, EnvVarSecretProvider, SecretProvider, StaticSecretProvider
from .redactor import SecretRedactor

__all__ = [
    "DEFAULT_ENV_PREFIX",
    "EnvVarSecretProvider",
    "SecretError",
    "SecretNotFoundError",
    "SecretProvider",
    "SecretProviderError",
    "SecretRedactor",
    "StaticSecretProvider",
]
