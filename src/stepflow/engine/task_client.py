"""
Task invocation clients.

A Task state names a compute unit through ``Resource``; the engine calls it
through ``TaskInvocationClient.invoke(name, payload, timeout)``, which returns
the JSON result or raises ClassifiedError. Two transports are bundled:

- LocalTaskClient: named Python callables (async, or sync run in a thread)
- HttpTaskClient: POST JSON to ``<base_url>/<name>`` with httpx

Both are safe to call concurrently from parallel branches.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from typing import Any
from urllib.parse import quote

import httpx

from .exceptions import ClassifiedError, ErrorClass
from .secrets import SecretProvider

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Any], Any] | Callable[[Any], Awaitable[Any]]

FUNCTION_ERROR_HEADER = "X-Function-Error"


def _is_async_handler(handler: TaskHandler) -> bool:
    if inspect.iscoroutinefunction(handler):
        return True
    # callable objects with an ``async def __call__``
    return inspect.iscoroutinefunction(getattr(type(handler), "__call__", None))


async def _call_in_thread(handler: TaskHandler, arguments: Any) -> Any:
    result = await asyncio.to_thread(handler, arguments)
    if inspect.isawaitable(result):
        result = await result
    return result


class TaskInvocationClient(ABC):
    """Boundary to external compute units."""

    @abstractmethod
    async def invoke(self, name: str, payload: Any, timeout: float | None = None) -> Any:
        """
        Invoke a task and wait for its result.

        Args:
            name: Task resource name
            payload: JSON arguments
            timeout: Seconds to wait for the result (None for no limit)

        Returns:
            JSON result payload

        Raises:
            ClassifiedError: On any task failure, classified for Retry/Catch
        """

    async def aclose(self) -> None:
        """Release transport resources."""


class LocalTaskClient(TaskInvocationClient):
    """
    In-process task registry.

    Handlers receive a deep copy of the payload. Exceptions are classified:
    ClassifiedError passes through, ValueError/TypeError/KeyError become
    InvalidInput, timeouts become States.Timeout, anything else Unknown.

    Example:
        client = LocalTaskClient()

        @client.register("copy-photo")
        async def copy_photo(payload):
            ...
            return {"Payload": payload}
    """

    def __init__(self, handlers: Mapping[str, TaskHandler] | None = None):
        self._handlers: dict[str, TaskHandler] = {}
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    def register(self, name: str, handler: TaskHandler | None = None) -> Any:
        """
        Register a handler, directly or as a decorator.

        Raises:
            ValueError: If the name is already registered
        """

        def _add(fn: TaskHandler) -> TaskHandler:
            if name in self._handlers:
                raise ValueError(f"Task '{name}' is already registered")
            self._handlers[name] = fn
            return fn

        if handler is None:
            return _add
        _add(handler)
        return handler

    def has(self, name: str) -> bool:
        return name in self._handlers

    def list_names(self) -> list[str]:
        return sorted(self._handlers)

    async def invoke(self, name: str, payload: Any, timeout: float | None = None) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise ClassifiedError(
                ErrorClass.RESOURCE_NOT_FOUND,
                f"No task registered under '{name}'. Available: {self.list_names()}",
            )

        arguments = copy.deepcopy(payload)
        if _is_async_handler(handler):
            call = handler(arguments)
        else:
            call = _call_in_thread(handler, arguments)

        try:
            if timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=timeout)
        except ClassifiedError:
            raise
        except TimeoutError as e:
            raise ClassifiedError(
                ErrorClass.TIMEOUT, f"Task '{name}' timed out after {timeout:g}s"
            ) from e
        except (ValueError, TypeError, KeyError) as e:
            raise ClassifiedError(ErrorClass.INVALID_INPUT, f"{type(e).__name__}: {e}") from e
        except Exception as e:
            logger.debug(f"Task '{name}' raised {type(e).__name__}: {e}")
            raise ClassifiedError(ErrorClass.UNKNOWN, f"{type(e).__name__}: {e}") from e


class HttpTaskClient(TaskInvocationClient):
    """
    Invoke tasks over HTTP.

    Each task is a ``POST`` of the JSON payload to ``endpoints[name]`` or
    ``<base_url>/<name>``. Responses are classified:

        429                     ThrottlingError
        5xx, transport errors   TransientServiceError
        404                     ResourceNotFound
        other 4xx               InvalidInput
        client timeout          States.Timeout

    A 2xx response carrying the ``X-Function-Error`` header is a function
    error: its ``{"errorType", "errorMessage"}`` body becomes the error class
    and cause.

    Args:
        base_url: Base URL for tasks without an explicit endpoint
        endpoints: Optional per-task URL overrides
        secret_provider: Source of the bearer token
        auth_secret: Secret key holding the bearer token
        default_timeout: Timeout when the caller passes None
        client: Pre-built httpx.AsyncClient (tests, custom transports)
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        endpoints: Mapping[str, str] | None = None,
        secret_provider: SecretProvider | None = None,
        auth_secret: str | None = None,
        default_timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.endpoints = dict(endpoints or {})
        self.secret_provider = secret_provider
        self.auth_secret = auth_secret
        self.default_timeout = default_timeout
        self._client = client
        self._owns_client = client is None

    def url_for(self, name: str) -> str:
        if name in self.endpoints:
            return self.endpoints[name]
        if not self.base_url:
            raise ClassifiedError(
                ErrorClass.RESOURCE_NOT_FOUND, f"No endpoint configured for task '{name}'"
            )
        return f"{self.base_url}/{quote(name, safe='')}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_secret and self.secret_provider is not None:
            token = await self.secret_provider.get_secret(self.auth_secret)
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def invoke(self, name: str, payload: Any, timeout: float | None = None) -> Any:
        url = self.url_for(name)
        effective_timeout = timeout if timeout is not None else self.default_timeout
        headers = await self._headers()

        try:
            response = await self._get_client().post(
                url, json=payload, headers=headers, timeout=effective_timeout
            )
        except httpx.TimeoutException as e:
            raise ClassifiedError(
                ErrorClass.TIMEOUT, f"Task '{name}' timed out after {effective_timeout:g}s"
            ) from e
        except httpx.TransportError as e:
            raise ClassifiedError(
                ErrorClass.TRANSIENT, f"Network error invoking '{name}': {e}"
            ) from e

        return self._classify(name, response)

    def _classify(self, name: str, response: httpx.Response) -> Any:
        status = response.status_code
        if status >= 400:
            detail = f"Task '{name}' returned HTTP {status}: {response.text[:500]}"
            if status == 429:
                raise ClassifiedError(ErrorClass.THROTTLING, detail)
            if status >= 500:
                raise ClassifiedError(ErrorClass.TRANSIENT, detail)
            if status == 404:
                raise ClassifiedError(ErrorClass.RESOURCE_NOT_FOUND, detail)
            raise ClassifiedError(ErrorClass.INVALID_INPUT, detail)

        if not response.content:
            body: Any = None
        else:
            try:
                body = response.json()
            except json.JSONDecodeError as e:
                raise ClassifiedError(
                    ErrorClass.UNKNOWN, f"Task '{name}' returned a non-JSON response"
                ) from e

        if response.headers.get(FUNCTION_ERROR_HEADER):
            info = body if isinstance(body, dict) else {}
            raise ClassifiedError(
                str(info.get("errorType") or ErrorClass.UNKNOWN.value),
                str(info.get("errorMessage") or ""),
            )

        return body

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = [
    "FUNCTION_ERROR_HEADER",
    "HttpTaskClient",
    "LocalTaskClient",
    "TaskHandler",
    "TaskInvocationClient",
]
