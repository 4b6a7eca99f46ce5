"""Tests for EngineConfig and the server environment helpers."""

import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from stepflow.engine import EngineConfig, HttpTaskClient, LocalTaskClient, WorkflowRegistry
from stepflow.engine.config import MAX_EXECUTION_TIMEOUT
from stepflow.engine.secrets import EnvVarSecretProvider
from stepflow.server import (
    create_items_sources,
    create_task_client,
    get_queue_workers,
    load_workflows,
)

ENV_VARS = (
    "STEPFLOW_EXECUTION_TIMEOUT",
    "STEPFLOW_TASK_TIMEOUT",
    "STEPFLOW_PARALLEL_FAIL_FAST",
    "STEPFLOW_MAX_CONCURRENCY",
    "STEPFLOW_JOB_ID_KEY",
    "STEPFLOW_JOB_ID_LENGTH",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig.from_env()
        assert config == EngineConfig()
        assert config.execution_timeout == 3600
        assert config.parallel_fail_fast is False
        assert config.job_id_key is None

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STEPFLOW_EXECUTION_TIMEOUT", "120")
        monkeypatch.setenv("STEPFLOW_TASK_TIMEOUT", "30")
        monkeypatch.setenv("STEPFLOW_PARALLEL_FAIL_FAST", "true")
        monkeypatch.setenv("STEPFLOW_MAX_CONCURRENCY", "4")
        monkeypatch.setenv("STEPFLOW_JOB_ID_KEY", "jobId")
        monkeypatch.setenv("STEPFLOW_JOB_ID_LENGTH", "16")

        config = EngineConfig.from_env()

        assert config.execution_timeout == 120
        assert config.task_timeout == 30
        assert config.parallel_fail_fast is True
        assert config.max_concurrency == 4
        assert config.job_id_key == "jobId"
        assert config.job_id_length == 16

    def test_out_of_range_values_are_clamped(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        monkeypatch.setenv("STEPFLOW_EXECUTION_TIMEOUT", "999999")
        monkeypatch.setenv("STEPFLOW_JOB_ID_LENGTH", "2")

        with caplog.at_level(logging.WARNING):
            config = EngineConfig.from_env()

        assert config.execution_timeout == MAX_EXECUTION_TIMEOUT
        assert config.job_id_length == 4
        assert "clamped" in caplog.text

    def test_invalid_values_fall_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STEPFLOW_TASK_TIMEOUT", "soon")
        monkeypatch.setenv("STEPFLOW_PARALLEL_FAIL_FAST", "maybe")
        config = EngineConfig.from_env()
        assert config.task_timeout == 300
        assert config.parallel_fail_fast is False

    def test_direct_validation(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig(execution_timeout=0)
        with pytest.raises(ValidationError):
            EngineConfig(max_concurrency=-1)


class TestServerEnvironment:
    @pytest.mark.parametrize(
        "value, expected", [(None, 3), ("0", 0), ("8", 8), ("500", 64), ("-2", 0), ("x", 3)]
    )
    def test_queue_workers(
        self, monkeypatch: pytest.MonkeyPatch, value: str | None, expected: int
    ) -> None:
        if value is None:
            monkeypatch.delenv("STEPFLOW_QUEUE_WORKERS", raising=False)
        else:
            monkeypatch.setenv("STEPFLOW_QUEUE_WORKERS", value)
        assert get_queue_workers() == expected

    def test_task_client_selection(self, monkeypatch: pytest.MonkeyPatch) -> None:
        provider = EnvVarSecretProvider()
        monkeypatch.delenv("STEPFLOW_TASK_BASE_URL", raising=False)
        assert isinstance(create_task_client(provider), LocalTaskClient)

        monkeypatch.setenv("STEPFLOW_TASK_BASE_URL", "http://tasks.internal")
        monkeypatch.setenv("STEPFLOW_TASK_AUTH_SECRET", "task_token")
        client = create_task_client(provider)
        assert isinstance(client, HttpTaskClient)
        assert client.url_for("ffmpeg-burn") == "http://tasks.internal/ffmpeg-burn"
        assert client.auth_secret == "task_token"

    def test_items_sources(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("STEPFLOW_OBJECT_STORE_ROOT", raising=False)
        assert create_items_sources() == {}
        monkeypatch.setenv("STEPFLOW_OBJECT_STORE_ROOT", str(tmp_path))
        assert list(create_items_sources()) == ["object-store"]

    def test_user_templates_override_built_ins(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        (tmp_path / "custom.yaml").write_text(
            "Name: dmq-make\nComment: Custom override\nStartAt: Done\n"
            "States:\n  Done:\n    Type: Succeed\n"
        )
        monkeypatch.setenv("STEPFLOW_TEMPLATE_PATHS", f"{tmp_path},/does/not/exist")

        registry = WorkflowRegistry()
        load_workflows(registry)

        assert registry.get("dmq-make").comment == "Custom override"
        assert "video-deliver" in registry
