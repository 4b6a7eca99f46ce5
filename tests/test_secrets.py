"""Shared test secrets configuration.

Single source of truth for the secrets installed by conftest.py.
"""

import os

TEST_SECRETS = {
    "STEPFLOW_SECRET_TASK_TOKEN": "bearer-token-xyz-123",
    "STEPFLOW_SECRET_GCP_CONFIG": "gcp-service-account-key",
    "STEPFLOW_SECRET_REDACTION_TEST": "secret-to-be-redacted",
    # Below the redaction minimum length
    "STEPFLOW_SECRET_SHORT": "abc",
}


def setup_test_secrets() -> None:
    """Configure test secrets in environment variables."""
    for key, value in TEST_SECRETS.items():
        os.environ[key] = value


def teardown_test_secrets() -> None:
    """Remove test secrets from environment variables."""
    for key in TEST_SECRETS:
        os.environ.pop(key, None)
