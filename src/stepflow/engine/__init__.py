"""Workflow engine core components.

Key Components:

- WorkflowDefinition / StateGraph: Pydantic v2 definition model, validated at load time
- ExpressionEvaluator: Pure sandboxed evaluation of ``{{ ... }}`` templates
- VariableScope: Assign variables, forked per Parallel branch and Map item
- run_with_retry: Retry policies (first match wins, per-policy counters)
- StateExecutor: Runs one state, returns the Transition to follow
- Coordinator: Parallel branches and bounded-concurrency Map items
- WorkflowRunner: Drives a run to completion, returns ExecutionResult
- ExecutionQueue / ExecutionStore: Asynchronous executions with persisted records
- TaskInvocationClient: Boundary to external compute (LocalTaskClient, HttpTaskClient)
- WorkflowRegistry / loader: Definition documents from YAML/JSON files
"""

from .config import EngineConfig
from .coordinator import Coordinator
from .exceptions import (
    ClassifiedError,
    DefinitionError,
    ErrorClass,
    ExecutionTimeout,
    ExpressionError,
    StepflowError,
)
from .execution_context import ExecutionContext
from .execution_queue import ExecutionQueue, ExecutionRecord, ExecutionStatus
from .execution_result import ExecutionResult
from .execution_store import ExecutionStore
from .expressions import ExpressionEvaluator
from .items import DirectoryItemsSource, ItemsSource, StaticItemsSource
from .load_result import LoadResult
from .loader import load_definition_from_file, load_definition_from_yaml, parse_definition
from .registry import WorkflowRegistry
from .retry import run_with_retry
from .schema import StateGraph, WorkflowDefinition
from .scope import VariableNotFoundError, VariableScope
from .state_executor import StateExecutor, Transition
from .task_client import HttpTaskClient, LocalTaskClient, TaskInvocationClient
from .trace import ExecutionTrace, TraceEvent, TraceEventKind
from .workflow_runner import WorkflowRunner

__all__ = [
    "ClassifiedError",
    "Coordinator",
    "DefinitionError",
    "DirectoryItemsSource",
    "EngineConfig",
    "ErrorClass",
    "ExecutionContext",
    "ExecutionQueue",
    "ExecutionRecord",
    "ExecutionResult",
    "ExecutionStatus",
    "ExecutionStore",
    "ExecutionTimeout",
    "ExecutionTrace",
    "ExpressionError",
    "ExpressionEvaluator",
    "HttpTaskClient",
    "ItemsSource",
    "LoadResult",
    "LocalTaskClient",
    "StateExecutor",
    "StateGraph",
    "StaticItemsSource",
    "StepflowError",
    "TaskInvocationClient",
    "TraceEvent",
    "TraceEventKind",
    "Transition",
    "VariableNotFoundError",
    "VariableScope",
    "WorkflowDefinition",
    "WorkflowRegistry",
    "WorkflowRunner",
    "load_definition_from_file",
    "load_definition_from_yaml",
    "parse_definition",
    "run_with_retry",
]
