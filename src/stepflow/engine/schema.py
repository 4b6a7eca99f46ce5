"""
Workflow definition schema with Pydantic v2 models.

Definitions are state machines written with the PascalCase keys of the
States Language family:

    Name: video-deliver
    StartAt: Check delivery
    States:
      Check delivery:
        Type: Choice
        Choices:
          - Condition: "{{ states.input.deliveryWorkflow == 'googleSpreadsheet' }}"
            Next: Deliver
        Default: Deliver param Fail
      Deliver:
        Type: Task
        Resource: deliver-gsheet
        Retry:
          - ErrorEquals: [ThrottlingError]
            IntervalSeconds: 1
            MaxAttempts: 3
            BackoffRate: 2
            JitterStrategy: FULL
        End: true
      Deliver param Fail:
        Type: Fail
        Error: InvalidDeliveryWorkflow
        Cause: Unsupported delivery workflow

``StateNode`` is a closed union discriminated on ``Type``; every variant is
validated exhaustively when the document is loaded:

- every ``StartAt``/``Next``/``Default``/``Catch.Next`` resolves inside its graph
- exactly one of ``Next``/``End`` on non-terminal states
- ``Choice`` requires ``Default``
- ``MaxAttempts >= 1`` and ``BackoffRate >= 1``
- expressions are whole-string and syntactically valid
- ``Assign`` names are identifiers and not reserved
- ``States.ALL`` appears alone, in the last Retry/Catch entry
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import WILDCARD, DefinitionError
from .expressions import RESERVED_NAMES, check_template, is_expression

logger = logging.getLogger(__name__)

_MODEL_CONFIG = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class JitterStrategy(str, Enum):
    NONE = "NONE"
    FULL = "FULL"


def _check_matchers(matchers: list[str]) -> list[str]:
    if any(not m for m in matchers):
        raise ValueError("ErrorEquals entries must be non-empty strings")
    if WILDCARD in matchers and len(matchers) > 1:
        raise ValueError(f"'{WILDCARD}' must appear alone in ErrorEquals")
    return matchers


def _check_assign_names(assign: dict[str, Any] | None) -> dict[str, Any] | None:
    if assign is None:
        return None
    for name in assign:
        if not _IDENTIFIER_RE.match(name):
            raise ValueError(f"Assign variable name '{name}' is not a valid identifier")
        if name in RESERVED_NAMES:
            raise ValueError(f"Assign variable name '{name}' is reserved")
    return assign


class RetryPolicy(BaseModel):
    """
    Retry configuration for one family of error classes.

    ``MaxAttempts`` counts invocations: with ``MaxAttempts: 3`` a failing task
    is invoked three times before the error is handed to ``Catch``. The delay
    before retry ``k`` (k counted from 1) is
    ``IntervalSeconds * BackoffRate ** (k - 1)``, plus up to the same amount
    of random jitter when ``JitterStrategy`` is ``FULL``.
    """

    model_config = _MODEL_CONFIG

    error_equals: list[str] = Field(alias="ErrorEquals", min_length=1)
    interval_seconds: float = Field(default=1.0, alias="IntervalSeconds", ge=0)
    max_attempts: int = Field(default=3, alias="MaxAttempts", ge=1)
    backoff_rate: float = Field(default=2.0, alias="BackoffRate", ge=1)
    jitter_strategy: JitterStrategy = Field(default=JitterStrategy.NONE, alias="JitterStrategy")
    max_delay_seconds: float | None = Field(default=None, alias="MaxDelaySeconds", gt=0)

    @field_validator("error_equals")
    @classmethod
    def validate_matchers(cls, v: list[str]) -> list[str]:
        return _check_matchers(v)

    def base_delay(self, failures: int) -> float:
        """Delay after this policy accepted its ``failures``-th error, before jitter."""
        return self.interval_seconds * self.backoff_rate ** (failures - 1)


class CatchRule(BaseModel):
    """Fallback transition for unrecovered errors."""

    model_config = _MODEL_CONFIG

    error_equals: list[str] = Field(alias="ErrorEquals", min_length=1)
    next: str = Field(alias="Next", min_length=1)
    output: Any = Field(default=None, alias="Output")
    assign: dict[str, Any] | None = Field(default=None, alias="Assign")

    @field_validator("error_equals")
    @classmethod
    def validate_matchers(cls, v: list[str]) -> list[str]:
        return _check_matchers(v)

    @field_validator("assign")
    @classmethod
    def validate_assign_names(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        return _check_assign_names(v)

    @property
    def has_output(self) -> bool:
        return "output" in self.model_fields_set


class _StateBase(BaseModel):
    model_config = _MODEL_CONFIG

    comment: str | None = Field(default=None, alias="Comment")

    @property
    def has_output(self) -> bool:
        return "output" in self.model_fields_set

    def transitions(self) -> list[str]:
        """Every state name this state may move to."""
        return []

    def templates(self) -> Iterator[tuple[str, Any]]:
        """(label, template) pairs checked at load time."""
        return iter(())


class _FlowState(_StateBase):
    """State with ``Output``/``Assign`` and exactly one of ``Next``/``End``."""

    output: Any = Field(default=None, alias="Output")
    assign: dict[str, Any] | None = Field(default=None, alias="Assign")
    next: str | None = Field(default=None, alias="Next", min_length=1)
    end: bool = Field(default=False, alias="End")

    @field_validator("assign")
    @classmethod
    def validate_assign_names(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        return _check_assign_names(v)

    @model_validator(mode="after")
    def validate_next_or_end(self) -> _FlowState:
        if self.end and self.next is not None:
            raise ValueError("'Next' and 'End' are mutually exclusive")
        if not self.end and self.next is None:
            raise ValueError("one of 'Next' or 'End: true' is required")
        return self

    def transitions(self) -> list[str]:
        return [self.next] if self.next else []

    def templates(self) -> Iterator[tuple[str, Any]]:
        if self.has_output:
            yield "Output", self.output
        if self.assign:
            yield "Assign", self.assign


class _RecoverableState(_FlowState):
    """State whose failures can be retried and caught."""

    retry: list[RetryPolicy] = Field(default_factory=list, alias="Retry")
    catch: list[CatchRule] = Field(default_factory=list, alias="Catch")

    @model_validator(mode="after")
    def validate_wildcard_last(self) -> _RecoverableState:
        for label, entries in (("Retry", self.retry), ("Catch", self.catch)):
            for index, entry in enumerate(entries[:-1]):
                if WILDCARD in entry.error_equals:
                    raise ValueError(
                        f"{label}[{index}]: '{WILDCARD}' is only allowed in the last entry"
                    )
        return self

    def transitions(self) -> list[str]:
        return super().transitions() + [rule.next for rule in self.catch]

    def templates(self) -> Iterator[tuple[str, Any]]:
        yield from super().templates()
        for index, rule in enumerate(self.catch):
            if rule.has_output:
                yield f"Catch[{index}].Output", rule.output
            if rule.assign:
                yield f"Catch[{index}].Assign", rule.assign


class TaskState(_RecoverableState):
    """Invoke a named compute task."""

    type: Literal["Task"] = Field(alias="Type")
    resource: str = Field(alias="Resource", min_length=1)
    arguments: Any = Field(default=None, alias="Arguments")
    timeout_seconds: float | None = Field(default=None, alias="TimeoutSeconds", gt=0)

    @property
    def has_arguments(self) -> bool:
        return "arguments" in self.model_fields_set

    def templates(self) -> Iterator[tuple[str, Any]]:
        if self.has_arguments:
            yield "Arguments", self.arguments
        yield from super().templates()


class ChoiceRule(BaseModel):
    model_config = _MODEL_CONFIG

    condition: str = Field(alias="Condition")
    next: str = Field(alias="Next", min_length=1)
    assign: dict[str, Any] | None = Field(default=None, alias="Assign")

    @field_validator("assign")
    @classmethod
    def validate_assign_names(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        return _check_assign_names(v)

    @field_validator("condition")
    @classmethod
    def validate_condition_is_expression(cls, v: str) -> str:
        if not is_expression(v):
            raise ValueError(f"Condition must be a '{{{{ ... }}}}' expression, got {v!r}")
        return v


class ChoiceState(_StateBase):
    """Branch on the first truthy condition, else ``Default``."""

    type: Literal["Choice"] = Field(alias="Type")
    choices: list[ChoiceRule] = Field(alias="Choices", min_length=1)
    default: str = Field(alias="Default", min_length=1)
    output: Any = Field(default=None, alias="Output")
    assign: dict[str, Any] | None = Field(default=None, alias="Assign")

    @field_validator("assign")
    @classmethod
    def validate_assign_names(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        return _check_assign_names(v)

    def transitions(self) -> list[str]:
        return [rule.next for rule in self.choices] + [self.default]

    def templates(self) -> Iterator[tuple[str, Any]]:
        for index, rule in enumerate(self.choices):
            yield f"Choices[{index}].Condition", rule.condition
            if rule.assign:
                yield f"Choices[{index}].Assign", rule.assign
        if self.has_output:
            yield "Output", self.output
        if self.assign:
            yield "Assign", self.assign


class PassState(_FlowState):
    """Transform data without any external call."""

    type: Literal["Pass"] = Field(alias="Type")


class FailState(_StateBase):
    """Terminal failure carrying an error class and a cause."""

    type: Literal["Fail"] = Field(alias="Type")
    error: str = Field(alias="Error", min_length=1)
    cause: str = Field(default="", alias="Cause")

    def templates(self) -> Iterator[tuple[str, Any]]:
        yield "Error", self.error
        yield "Cause", self.cause


class SucceedState(_StateBase):
    """Terminal success."""

    type: Literal["Succeed"] = Field(alias="Type")
    output: Any = Field(default=None, alias="Output")

    def templates(self) -> Iterator[tuple[str, Any]]:
        if self.has_output:
            yield "Output", self.output


class ParallelState(_RecoverableState):
    """Run every branch concurrently and join their outputs in declaration order."""

    type: Literal["Parallel"] = Field(alias="Type")
    branches: list[StateGraph] = Field(alias="Branches", min_length=1)
    fail_fast: bool | None = Field(
        default=None,
        alias="FailFast",
        description="Cancel sibling branches on the first failure (default: engine setting)",
    )


class ItemReader(BaseModel):
    """Items listed from a registered ItemsSource."""

    model_config = _MODEL_CONFIG

    source: str = Field(alias="Source", min_length=1)
    arguments: Any = Field(default=None, alias="Arguments")


class ProcessorConfig(BaseModel):
    model_config = _MODEL_CONFIG

    mode: Literal["INLINE"] = Field(default="INLINE", alias="Mode")


class MapState(_RecoverableState):
    """Run the item processor once per item with bounded concurrency."""

    type: Literal["Map"] = Field(alias="Type")
    items: list[Any] | str | None = Field(default=None, alias="Items")
    item_reader: ItemReader | None = Field(default=None, alias="ItemReader")
    item_processor: ItemProcessor = Field(alias="ItemProcessor")
    max_concurrency: int = Field(
        default=0, alias="MaxConcurrency", ge=0, description="0 means unbounded"
    )
    fail_fast: bool | None = Field(default=None, alias="FailFast")

    @model_validator(mode="after")
    def validate_items_source(self) -> MapState:
        if (self.items is None) == (self.item_reader is None):
            raise ValueError("exactly one of 'Items' or 'ItemReader' is required")
        if isinstance(self.items, str) and not is_expression(self.items):
            raise ValueError("'Items' must be a list or a '{{ ... }}' expression")
        return self

    def templates(self) -> Iterator[tuple[str, Any]]:
        if self.items is not None:
            yield "Items", self.items
        if self.item_reader is not None and self.item_reader.arguments is not None:
            yield "ItemReader.Arguments", self.item_reader.arguments
        yield from super().templates()


StateNode = Annotated[
    TaskState | ChoiceState | PassState | ParallelState | MapState | FailState | SucceedState,
    Field(discriminator="type"),
]

TERMINAL_TYPES = (FailState, SucceedState)


class StateGraph(BaseModel):
    """A start state plus the states reachable from it."""

    model_config = _MODEL_CONFIG

    start_at: str = Field(alias="StartAt", min_length=1)
    states: dict[str, StateNode] = Field(alias="States", min_length=1)

    @model_validator(mode="after")
    def validate_graph(self) -> StateGraph:
        """Check references and expressions of this graph (nested graphs check themselves)."""
        errors: list[str] = []
        names = set(self.states)

        if self.start_at not in names:
            errors.append(
                f"StartAt references unknown state '{self.start_at}'. "
                f"Available states: {sorted(names)}"
            )

        for name, state in self.states.items():
            for target in state.transitions():
                if target not in names:
                    errors.append(f"State '{name}' references unknown state '{target}'")
            for label, template in state.templates():
                errors.extend(check_template(template, f"State '{name}' {label}"))

        if errors:
            raise ValueError("; ".join(errors))

        unreachable = names - self.reachable()
        if unreachable:
            logger.warning(f"Unreachable states: {sorted(unreachable)}")

        return self

    def reachable(self) -> set[str]:
        seen: set[str] = set()
        pending = [self.start_at]
        while pending:
            current = pending.pop()
            if current in seen or current not in self.states:
                continue
            seen.add(current)
            pending.extend(self.states[current].transitions())
        return seen

    def iter_states(self, prefix: str = "") -> Iterator[tuple[str, str, Any]]:
        """Yield ``(path, name, state)`` for this graph and every nested graph."""
        for name, state in self.states.items():
            yield prefix, name, state
            if isinstance(state, ParallelState):
                for index, branch in enumerate(state.branches):
                    yield from branch.iter_states(f"{prefix}{name}[{index}]/")
            elif isinstance(state, MapState):
                yield from state.item_processor.iter_states(f"{prefix}{name}/")

    def resources(self) -> list[str]:
        """Task resources used anywhere in the graph, sorted."""
        return sorted(
            {state.resource for _, _, state in self.iter_states() if isinstance(state, TaskState)}
        )


class ItemProcessor(StateGraph):
    """Sub-graph run for each Map item."""

    processor_config: ProcessorConfig | None = Field(default=None, alias="ProcessorConfig")


class WorkflowDefinition(StateGraph):
    """
    Root workflow document.

    Attributes:
        name: Unique kebab-case identifier used by the registry
        comment: Free-form description
        version: Definition version
        tags: Searchable tags
        timeout_seconds: Overall execution deadline (engine default when unset)
    """

    name: str = Field(
        alias="Name",
        pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$",
        min_length=1,
        max_length=100,
    )
    comment: str = Field(default="", alias="Comment")
    version: str = Field(default="1.0", alias="Version", pattern=r"^\d+\.\d+(\.\d+)?$")
    tags: list[str] = Field(default_factory=list, alias="Tags")
    timeout_seconds: float | None = Field(default=None, alias="TimeoutSeconds", gt=0)

    @classmethod
    def from_dict(cls, data: Any, source: str = "<string>") -> WorkflowDefinition:
        """
        Validate a parsed document.

        Raises:
            DefinitionError: With one detail line per validation problem
        """
        if not isinstance(data, dict):
            raise DefinitionError(
                f"expected a mapping at the top level, got {type(data).__name__}", source
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise DefinitionError(
                f"{e.error_count()} validation error(s)", source, _format_errors(e)
            ) from e

    def to_document(self) -> dict[str, Any]:
        """Serialize back to the PascalCase document form."""
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")


def _format_errors(error: ValidationError) -> list[str]:
    details = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        message = item["msg"].removeprefix("Value error, ")
        details.append(f"{location}: {message}" if location else message)
    return details


for _model in (ParallelState, MapState, StateGraph, ItemProcessor, WorkflowDefinition):
    _model.model_rebuild()


__all__ = [
    "CatchRule",
    "ChoiceRule",
    "ChoiceState",
    "FailState",
    "ItemProcessor",
    "ItemReader",
    "JitterStrategy",
    "MapState",
    "ParallelState",
    "PassState",
    "RetryPolicy",
    "StateGraph",
    "StateNode",
    "SucceedState",
    "TERMINAL_TYPES",
    "TaskState",
    "WorkflowDefinition",
]
