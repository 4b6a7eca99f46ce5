"""
Pure expression evaluation for state templates.

A template is any JSON value. A string whose whole content is a single
``{{ expr }}`` is an expression; every other string is a literal. Dicts and
lists are resolved member by member. There is no partial interpolation:
``"prefix-{{ x }}"`` is rejected at load time and is written as
``"{{ 'prefix-' ~ x }}"`` instead.

Expressions are Jinja2 expressions compiled in an immutable sandbox, so they
cannot perform I/O or mutate their inputs. The namespace exposes:

    states.input        current state input
    states.result       Task result, or the joined list of Parallel/Map
    states.errorOutput  {"Error": ..., "Cause": ...} inside Catch rules
    states.context      {"Execution": {"Id", "Input"}, "State": {"Name"}}
    <name>              every variable of the current scope

Missing fields evaluate to an undefined value that can be chained and tested
(``exists(x)``, ``x is defined``). It compares unequal to every value, and
fails on arithmetic, concatenation, ordering or a bare truth test. Undefined
members of objects built by an expression are dropped; an undefined list
element is an error.

Example:
    evaluator = ExpressionEvaluator()
    evaluator.evaluate(
        {"s3Key": "{{ 'dmq/' ~ states.input.jobId ~ '/request' }}"},
        input={"jobId": "abc"},
    )
    # {"s3Key": "dmq/abc/request"}
"""

from __future__ import annotations

import functools
import logging
import re
from collections.abc import Callable, Mapping
from typing import Any

from jinja2 import ChainableUndefined, TemplateSyntaxError, Undefined
from jinja2.exceptions import SecurityError, UndefinedError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from .exceptions import ExpressionError

logger = logging.getLogger(__name__)

_EXPRESSION_RE = re.compile(r"^\s*\{\{(?P<source>.*)\}\}\s*$", re.DOTALL)

RESERVED_NAMES = frozenset({"states"})

COMPILE_CACHE_SIZE = 1024

_UNSET: Any = object()


class MissingValue(ChainableUndefined):
    """Undefined value produced by projecting a field that does not exist.

    Attribute access keeps returning undefined and ``==`` is always false;
    everything else that would need a concrete value raises UndefinedError.
    """

    __slots__ = ()

    __iter__ = __str__ = __len__ = Undefined._fail_with_undefined_error
    __bool__ = __hash__ = __contains__ = Undefined._fail_with_undefined_error

    def __eq__(self, other: object) -> bool:
        return False

    def __ne__(self, other: object) -> bool:
        return True


class _DataEnvironment(ImmutableSandboxedEnvironment):
    """Sandbox where mapping keys shadow attribute names.

    ``states.input.items`` must select the ``items`` key of the input, never
    the ``dict.items`` method.
    """

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, Mapping):
            try:
                return obj[attribute]
            except KeyError:
                return self.undefined(obj=obj, name=attribute)
        return super().getattr(obj, attribute)

    def getitem(self, obj: Any, argument: Any) -> Any:
        if isinstance(obj, Mapping):
            try:
                return obj[argument]
            except (KeyError, TypeError):
                return self.undefined(obj=obj, name=argument)
        return super().getitem(obj, argument)


def expression_source(value: str) -> str | None:
    """Return the inner source of a whole-string expression, else None."""
    match = _EXPRESSION_RE.match(value)
    if match is None:
        return None
    return match.group("source").strip()


def is_expression(value: Any) -> bool:
    return isinstance(value, str) and expression_source(value) is not None


def is_missing(value: Any) -> bool:
    return isinstance(value, Undefined)


def _exists(value: Any) -> bool:
    return not isinstance(value, Undefined)


def _merge(*objects: Any) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for obj in objects:
        if isinstance(obj, Undefined):
            continue
        if not isinstance(obj, Mapping):
            raise TypeError(f"merge() expects objects, got {type(obj).__name__}")
        merged.update((k, v) for k, v in obj.items() if not isinstance(v, Undefined))
    return merged


def _concrete(value: Any, source: str) -> Any:
    """Strip undefined values nested in an evaluated result.

    Object members that are undefined are dropped; an undefined list element
    has no position to drop into and raises ExpressionError.
    """
    if isinstance(value, dict):
        return {
            key: _concrete(member, source)
            for key, member in value.items()
            if not isinstance(member, Undefined)
        }
    if isinstance(value, list | tuple):
        items = []
        for index, member in enumerate(value):
            if isinstance(member, Undefined):
                raise ExpressionError(source, f"list element {index} is an undefined value")
            items.append(_concrete(member, source))
        return items
    return value


def _string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise TypeError("number() does not accept booleans")
    if isinstance(value, int | float):
        return value
    text = str(value)
    try:
        return int(text)
    except ValueError:
        return float(text)


class ExpressionEvaluator:
    """
    Resolves templates against a state's input and scope.

    Compiled expressions are kept in a bounded LRU cache per evaluator.
    Instances hold no per-execution state, so one evaluator can be shared by
    concurrent branches.
    """

    def __init__(self) -> None:
        self.env = _DataEnvironment(undefined=MissingValue, autoescape=False)
        self.env.globals.update(
            exists=_exists,
            lookup=self._lookup,
            merge=_merge,
            string=_string,
            number=_number,
        )
        self._compile = functools.lru_cache(maxsize=COMPILE_CACHE_SIZE)(self._compile_source)

    def _lookup(self, table: Any, key: Any) -> Any:
        if isinstance(table, Undefined):
            return table
        if not isinstance(table, Mapping):
            raise TypeError(f"lookup() expects an object table, got {type(table).__name__}")
        if isinstance(key, Undefined):
            return key
        if key in table:
            return table[key]
        return self.env.undefined(obj=table, name=str(key))

    def compile(self, source: str) -> Callable[..., Any]:
        """Compile (and cache) an expression source.

        Raises:
            TemplateSyntaxError: If the source is not a valid expression
        """
        return self._compile(source)

    def _compile_source(self, source: str) -> Callable[..., Any]:
        return self.env.compile_expression(source, undefined_to_none=False)

    def evaluate(
        self,
        template: Any,
        input: Any,
        scope: Mapping[str, Any] | None = None,
        *,
        result: Any = _UNSET,
        error_output: Any = _UNSET,
        context: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Resolve a template.

        Args:
            template: JSON value, possibly containing whole-string expressions
            input: Value bound to ``states.input``
            scope: Scope variables, bound as top-level names
            result: Value bound to ``states.result`` (when given)
            error_output: Value bound to ``states.errorOutput`` (when given)
            context: Value bound to ``states.context``

        Returns:
            The resolved JSON value

        Raises:
            ExpressionError: On any evaluation failure
        """
        states: dict[str, Any] = {"input": input, "context": dict(context or {})}
        if result is not _UNSET:
            states["result"] = result
        if error_output is not _UNSET:
            states["errorOutput"] = error_output

        namespace: dict[str, Any] = dict(scope or {})
        namespace["states"] = states
        return self._resolve(template, namespace)

    def evaluate_condition(
        self, expression: str, input: Any, scope: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> bool:
        """Evaluate a Choice condition and apply its truth test."""
        value = self.evaluate(expression, input, scope, **kwargs)
        return bool(value)

    def _resolve(self, template: Any, namespace: dict[str, Any]) -> Any:
        if isinstance(template, str):
            source = expression_source(template)
            if source is None:
                return template
            value = self._run(source, namespace)
            if isinstance(value, Undefined):
                raise ExpressionError(source, "expression resolved to an undefined value")
            return _concrete(value, source)

        if isinstance(template, dict):
            resolved: dict[str, Any] = {}
            for key, member in template.items():
                if isinstance(member, str) and (source := expression_source(member)) is not None:
                    value = self._run(source, namespace)
                    # Undefined members are dropped from objects
                    if isinstance(value, Undefined):
                        continue
                    resolved[key] = _concrete(value, source)
                else:
                    resolved[key] = self._resolve(member, namespace)
            return resolved

        if isinstance(template, list):
            return [self._resolve(member, namespace) for member in template]

        return template

    def _run(self, source: str, namespace: dict[str, Any]) -> Any:
        try:
            return self.compile(source)(**namespace)
        except ExpressionError:
            raise
        except TemplateSyntaxError as e:
            raise ExpressionError(source, f"syntax error: {e.message}") from e
        except UndefinedError as e:
            raise ExpressionError(source, e.message or "undefined value") from e
        except SecurityError as e:
            raise ExpressionError(source, f"forbidden operation: {e}") from e
        except (TypeError, ValueError, ArithmeticError, LookupError, AttributeError) as e:
            raise ExpressionError(source, f"{type(e).__name__}: {e}") from e


_checker = ExpressionEvaluator()


def check_template(template: Any, where: str = "") -> list[str]:
    """
    Statically check a template, returning one message per problem.

    Detects strings that embed ``{{ }}`` without spanning the whole string
    and expressions with syntax errors. Used by load-time validation.
    """
    errors: list[str] = []
    prefix = f"{where}: " if where else ""

    if isinstance(template, str):
        source = expression_source(template)
        if source is None:
            if "{{" in template or "}}" in template:
                errors.append(
                    f"{prefix}expression must span the whole string, got {template!r} "
                    "(use '~' to concatenate)"
                )
            return errors
        if not source:
            errors.append(f"{prefix}empty expression")
            return errors
        try:
            _checker.compile(source)
        except TemplateSyntaxError as e:
            errors.append(f"{prefix}invalid expression {source!r}: {e.message}")
        return errors

    if isinstance(template, dict):
        for key, member in template.items():
            errors.extend(check_template(member, f"{where}.{key}" if where else str(key)))
    elif isinstance(template, list):
        for index, member in enumerate(template):
            errors.extend(check_template(member, f"{where}[{index}]"))

    return errors


__all__ = [
    "ExpressionEvaluator",
    "MissingValue",
    "RESERVED_NAMES",
    "check_template",
    "expression_source",
    "is_expression",
    "is_missing",
]
