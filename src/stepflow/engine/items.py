"""
Items sources for Map states.

A Map state with an ``ItemReader`` lists its items from a named source
instead of its input:

    Copy out:
      Type: Map
      ItemReader:
        Source: object-store
        Arguments:
          Prefix: "{{ 'renders/' ~ states.input.jobId ~ '/' }}"
      ItemProcessor: ...

Sources are finite and single-pass. The runner consumes them lazily and
fails with ResourceNotFound when the named source is not registered.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .exceptions import ClassifiedError, ErrorClass

logger = logging.getLogger(__name__)


@runtime_checkable
class ItemsSource(Protocol):
    """Lists the items a Map state iterates over."""

    def list(self, query: Any) -> AsyncIterator[Any]:
        """Yield items matching ``query`` (the evaluated ``ItemReader.Arguments``)."""
        ...


class DirectoryItemsSource:
    """
    Object store backed by a local directory.

    Keys are POSIX paths relative to ``root``. ``list({"Prefix": "a/"})``
    yields ``{"Key": "a/b.jpg", "Size": 1234}`` for every file whose key starts
    with the prefix, in key order.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _scan(self, prefix: str) -> list[tuple[str, int]]:
        if not self.root.is_dir():
            raise ClassifiedError(
                ErrorClass.RESOURCE_NOT_FOUND, f"Object store root not found: {self.root}"
            )
        entries = []
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                entries.append((key, path.stat().st_size))
        entries.sort()
        return entries

    async def list(self, query: Any) -> AsyncIterator[dict[str, Any]]:
        query = query or {}
        if not isinstance(query, dict):
            raise ClassifiedError(
                ErrorClass.INVALID_INPUT,
                f"ItemReader arguments must be an object, got {type(query).__name__}",
            )
        prefix = str(query.get("Prefix", ""))
        entries = await asyncio.to_thread(self._scan, prefix)
        logger.debug(f"Listed {len(entries)} object(s) under '{prefix}' in {self.root}")
        for key, size in entries:
            yield {"Key": key, "Size": size}


class StaticItemsSource:
    """Fixed item list, mostly useful in tests and embedding applications."""

    def __init__(self, items: list[Any]):
        self._items = list(items)

    async def list(self, query: Any) -> AsyncIterator[Any]:
        for item in self._items:
            yield item


__all__ = ["DirectoryItemsSource", "ItemsSource", "StaticItemsSource"]
