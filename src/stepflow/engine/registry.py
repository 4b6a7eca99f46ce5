"""
Registry of loaded workflow definitions.

Definitions are keyed by their ``Name``. Directories are loaded in priority
order so that user template paths can override the bundled templates.
"""

import logging
from pathlib import Path
from typing import Any, Literal

from .load_result import LoadResult
from .loader import discover_definition_files, load_definition_from_file
from .schema import WorkflowDefinition

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """
    Central registry of WorkflowDefinition instances.

    Example:
        registry = WorkflowRegistry()
        registry.load_from_directories(["templates/", "~/my-workflows"])
        definition = registry.get("dmq-make")
    """

    def __init__(self) -> None:
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._sources: dict[str, Path] = {}

    def register(self, workflow: WorkflowDefinition, source_dir: Path | None = None) -> None:
        """
        Register a definition.

        Raises:
            ValueError: If a definition with the same name already exists
        """
        if workflow.name in self._workflows:
            raise ValueError(
                f"Workflow '{workflow.name}' already registered. Use unregister() first."
            )
        self._workflows[workflow.name] = workflow
        if source_dir is not None:
            self._sources[workflow.name] = source_dir
        logger.info(f"Registered workflow: {workflow.name}")

    def unregister(self, name: str) -> None:
        if name not in self._workflows:
            raise KeyError(f"Workflow '{name}' not found in registry")
        del self._workflows[name]
        self._sources.pop(name, None)
        logger.info(f"Unregistered workflow: {name}")

    def get(self, name: str) -> WorkflowDefinition:
        """
        Get a definition by name.

        Raises:
            KeyError: If the workflow is not registered
        """
        if name not in self._workflows:
            available = sorted(self._workflows)
            raise KeyError(f"Workflow '{name}' not found. Available workflows: {available}")
        return self._workflows[name]

    def exists(self, name: str) -> bool:
        return name in self._workflows

    def list_all(self) -> list[WorkflowDefinition]:
        return list(self._workflows.values())

    def list_names(self, tags: list[str] | None = None) -> list[str]:
        """Sorted names, keeping only workflows that carry ALL given tags."""
        if not tags:
            return sorted(self._workflows)
        required = set(tags)
        return sorted(
            name for name, wf in self._workflows.items() if required.issubset(set(wf.tags))
        )

    def get_source(self, name: str) -> Path | None:
        return self._sources.get(name)

    def get_workflow_metadata(self, name: str, detailed: bool = False) -> dict[str, Any]:
        """
        Metadata for MCP tools.

        Default mode returns name, comment and tags. Detailed mode adds the
        version, start state, state names, task resources and deadline.
        """
        workflow = self.get(name)
        metadata: dict[str, Any] = {
            "name": workflow.name,
            "comment": workflow.comment,
            "tags": list(workflow.tags),
        }
        if detailed:
            metadata["version"] = workflow.version
            metadata["start_at"] = workflow.start_at
            metadata["states"] = list(workflow.states)
            metadata["resources"] = workflow.resources()
            metadata["timeout_seconds"] = workflow.timeout_seconds
            source = self._sources.get(name)
            if source is not None:
                metadata["source"] = str(source)
        return metadata

    def list_all_metadata(
        self, tags: list[str] | None = None, detailed: bool = False
    ) -> list[dict[str, Any]]:
        return [self.get_workflow_metadata(name, detailed) for name in self.list_names(tags)]

    def load_from_directory(self, directory: str | Path) -> LoadResult[int]:
        """Load one directory, skipping duplicates. Returns the number registered."""
        result = self.load_from_directories([directory], on_duplicate="skip")
        if not result.is_success or result.value is None:
            return LoadResult.failure(result.error or "load failed", source=str(directory))
        return LoadResult.success(sum(result.value.values()), source=str(directory))

    def load_from_directories(
        self,
        directories: list[str | Path],
        on_duplicate: Literal["skip", "overwrite", "error"] = "skip",
    ) -> LoadResult[dict[str, int]]:
        """
        Load definitions from several directories in priority order.

        Args:
            directories: Directory paths; later entries have higher priority
                when ``on_duplicate="overwrite"``
            on_duplicate: "skip" keeps the first definition, "overwrite" keeps
                the last, "error" fails the whole load

        Returns:
            LoadResult.success({directory: loaded_count}) or a failure on
            duplicate names under the "error" policy
        """
        if not directories:
            return LoadResult.failure("No directories provided")

        results: dict[str, int] = {}

        for dir_path in (Path(d).expanduser().resolve() for d in directories):
            if not dir_path.is_dir():
                logger.warning(f"Definition directory not found: {dir_path}")
                results[str(dir_path)] = 0
                continue

            files = discover_definition_files(dir_path)
            loaded = 0
            for path in files:
                load = load_definition_from_file(path)
                if not load.is_success or load.value is None:
                    logger.warning(f"Failed to load workflow from {path.name}: {load.error}")
                    continue

                workflow = load.value
                if workflow.name in self._workflows:
                    previous = self._sources.get(workflow.name, "unknown")
                    if on_duplicate == "skip":
                        logger.info(
                            f"Skipping duplicate workflow '{workflow.name}' from {dir_path} "
                            f"(keeping {previous})"
                        )
                        continue
                    if on_duplicate == "error":
                        message = (
                            f"Duplicate workflow '{workflow.name}' in {dir_path} "
                            f"(already loaded from {previous})"
                        )
                        logger.error(message)
                        return LoadResult.failure(message, source=str(dir_path))
                    logger.info(f"Overriding workflow '{workflow.name}' from {previous}")
                    self.unregister(workflow.name)

                self.register(workflow, source_dir=dir_path)
                loaded += 1

            results[str(dir_path)] = loaded
            logger.info(f"Loaded {loaded} workflows from {dir_path} ({len(files)} files found)")

        return LoadResult.success(results)

    def clear(self) -> None:
        self._workflows.clear()
        self._sources.clear()

    def __len__(self) -> int:
        return len(self._workflows)

    def __contains__(self, name: object) -> bool:
        return name in self._workflows


__all__ = ["WorkflowRegistry"]
