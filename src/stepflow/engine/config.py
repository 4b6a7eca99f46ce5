"""Engine configuration.

An explicit settings object handed to WorkflowRunner and ExecutionQueue.
``EngineConfig.from_env()`` reads the ``STEPFLOW_*`` environment variables;
out-of-range values are clamped and unparsable values fall back to the
default with a warning.
"""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MAX_EXECUTION_TIMEOUT = 86400  # 24 hours hard limit


def _env_number(name: str, default: float, minimum: float, maximum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default:g}")
        return default
    if value < minimum:
        logger.warning(f"{name}={value:g} below minimum, clamped to {minimum:g}")
        value = minimum
    if maximum is not None and value > maximum:
        logger.warning(f"{name}={value:g} above maximum, clamped to {maximum:g}")
        value = maximum
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class EngineConfig(BaseModel):
    """
    Engine-wide settings.

    Attributes:
        execution_timeout: Default overall deadline in seconds, used when the
            definition has no ``TimeoutSeconds``
        task_timeout: Default per-invocation timeout for Task states without
            ``TimeoutSeconds``
        parallel_fail_fast: Cancel sibling branches/items on the first failure
            when the state does not set ``FailFast``
        max_concurrency: Cap on concurrently running Map items for states with
            ``MaxConcurrency: 0`` (0 keeps them unbounded)
        job_id_key: Input key a generated job id is injected under (disabled when None)
        job_id_length: Length of generated job ids
    """

    model_config = ConfigDict(frozen=True)

    execution_timeout: float = Field(default=3600, gt=0, le=MAX_EXECUTION_TIMEOUT)
    task_timeout: float = Field(default=300, gt=0)
    parallel_fail_fast: bool = False
    max_concurrency: int = Field(default=0, ge=0)
    job_id_key: str | None = None
    job_id_length: int = Field(default=12, ge=4, le=64)

    @classmethod
    def from_env(cls) -> EngineConfig:
        return cls(
            execution_timeout=_env_number(
                "STEPFLOW_EXECUTION_TIMEOUT", 3600, 1, MAX_EXECUTION_TIMEOUT
            ),
            task_timeout=_env_number("STEPFLOW_TASK_TIMEOUT", 300, 1),
            parallel_fail_fast=_env_bool("STEPFLOW_PARALLEL_FAIL_FAST", False),
            max_concurrency=int(_env_number("STEPFLOW_MAX_CONCURRENCY", 0, 0)),
            job_id_key=os.getenv("STEPFLOW_JOB_ID_KEY") or None,
            job_id_length=int(_env_number("STEPFLOW_JOB_ID_LENGTH", 12, 4, 64)),
        )


__all__ = ["EngineConfig", "MAX_EXECUTION_TIMEOUT"]
