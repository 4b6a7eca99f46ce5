"""
Definition document loader.

Documents are YAML or JSON (JSON is parsed by the YAML loader as well).
``parse_definition`` raises DefinitionError and is what callers use for a
single inline document; the file and directory helpers return LoadResult so
that one broken file never hides the others.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from .exceptions import DefinitionError
from .load_result import LoadResult
from .schema import WorkflowDefinition

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


def parse_definition(content: str | dict[str, Any], source: str = "<string>") -> WorkflowDefinition:
    """
    Parse and validate one definition document.

    Args:
        content: YAML/JSON text, or an already parsed mapping
        source: Source identifier for error messages

    Raises:
        DefinitionError: On syntax or validation errors
    """
    if isinstance(content, str):
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise DefinitionError(f"invalid YAML/JSON syntax: {e}", source) from e
    else:
        data = content

    return WorkflowDefinition.from_dict(data, source=source)


def load_definition_from_yaml(
    content: str, source: str = "<string>"
) -> LoadResult[WorkflowDefinition]:
    """Validate a YAML/JSON document without raising."""
    try:
        return LoadResult.success(parse_definition(content, source), source=source)
    except DefinitionError as e:
        return LoadResult.from_error(e)


def load_definition_from_file(file_path: str | Path) -> LoadResult[WorkflowDefinition]:
    """
    Load and validate a definition file.

    Example:
        result = load_definition_from_file("templates/dmq-make.yaml")
        if result.is_success:
            registry.register(result.value)
        else:
            print(result.error)
    """
    path = Path(file_path)

    if not path.exists():
        return LoadResult.failure(f"Workflow file not found: {file_path}", source=str(path))
    if not path.is_file():
        return LoadResult.failure(f"Path is not a file: {file_path}", source=str(path))

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        return LoadResult.failure(f"Failed to read file '{file_path}': {e}", source=str(path))

    return load_definition_from_yaml(content, source=str(path))


def discover_definition_files(directory: str | Path) -> list[Path]:
    """Definition files below ``directory`` (recursive), in a stable order."""
    dir_path = Path(directory)
    return sorted(p for p in dir_path.rglob("*") if p.suffix in DEFINITION_SUFFIXES and p.is_file())


def discover_definitions(directory: str | Path) -> LoadResult[list[WorkflowDefinition]]:
    """
    Load every valid definition in a directory.

    Invalid files are logged and skipped.

    Returns:
        LoadResult.success(list) with the valid definitions, or
        LoadResult.failure if the directory does not exist
    """
    dir_path = Path(directory)

    if not dir_path.is_dir():
        return LoadResult.failure(f"Directory not found: {directory}", source=str(dir_path))

    definitions: list[WorkflowDefinition] = []
    errors: list[str] = []

    for path in discover_definition_files(dir_path):
        result = load_definition_from_file(path)
        if result.is_success and result.value is not None:
            definitions.append(result.value)
        else:
            errors.append(f"{path.name}: {result.error}")

    if errors:
        logger.warning(f"{len(errors)} definition(s) failed to load from {dir_path}:")
        for error in errors:
            logger.warning(f"  - {error}")

    return LoadResult.success(definitions, source=str(dir_path))


__all__ = [
    "DEFINITION_SUFFIXES",
    "discover_definition_files",
    "discover_definitions",
    "load_definition_from_file",
    "load_definition_from_yaml",
    "parse_definition",
]
