"""Shared test configuration for stepflow tests.

Provides:
- Test secrets installed for the whole session
- A LocalTaskClient and a WorkflowRunner whose retry backoff is recorded
  instead of slept
- A factory turning a ``States`` mapping into a validated definition
"""

from collections.abc import Callable, Iterator
from typing import Any

import pytest
from test_secrets import setup_test_secrets as _setup_secrets
from test_secrets import teardown_test_secrets as _teardown_secrets

from stepflow.engine import (
    EngineConfig,
    LocalTaskClient,
    WorkflowDefinition,
    WorkflowRunner,
)


class RecordingSleep:
    """Stands in for asyncio.sleep in retry backoff; records the delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(scope="session", autouse=True)
def setup_test_secrets() -> Iterator[None]:
    """Install STEPFLOW_SECRET_* variables for every test (values in test_secrets.py)."""
    _setup_secrets()
    yield
    _teardown_secrets()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def task_client() -> LocalTaskClient:
    return LocalTaskClient()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(execution_timeout=30, task_timeout=5)


@pytest.fixture
def runner(
    task_client: LocalTaskClient, recording_sleep: RecordingSleep, engine_config: EngineConfig
) -> WorkflowRunner:
    """Runner with recorded backoff and jitter that always adds nothing."""
    return WorkflowRunner(
        task_client,
        config=engine_config,
        sleep=recording_sleep,
        uniform=lambda low, high: low,
    )


@pytest.fixture
def make_definition() -> Callable[..., WorkflowDefinition]:
    """Build a definition from a ``States`` mapping.

    Usage:
        definition = make_definition({"Done": {"Type": "Succeed"}}, start_at="Done")
    """

    def _make(
        states: dict[str, Any],
        start_at: str | None = None,
        name: str = "test-workflow",
        **extra: Any,
    ) -> WorkflowDefinition:
        document = {
            "Name": name,
            "StartAt": start_at or next(iter(states)),
            "States": states,
            **extra,
        }
        return WorkflowDefinition.from_dict(document, source="<test>")

    return _make
