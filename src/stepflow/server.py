"""FastMCP server initialization for stepflow.

This module initializes the MCP server and manages shared resources via the
lifespan context. All tool implementations are in the tools module.
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .context import AppContext, AppContextType
from .engine import (
    DirectoryItemsSource,
    EngineConfig,
    ExecutionQueue,
    HttpTaskClient,
    ItemsSource,
    LocalTaskClient,
    TaskInvocationClient,
    WorkflowRegistry,
    WorkflowRunner,
)
from .engine.secrets import EnvVarSecretProvider, SecretProvider, SecretRedactor

logger = logging.getLogger(__name__)

OBJECT_STORE_SOURCE = "object-store"

# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


def get_queue_workers() -> int:
    """Worker count from STEPFLOW_QUEUE_WORKERS (default 3, 0 disables async mode)."""
    try:
        workers = int(os.getenv("STEPFLOW_QUEUE_WORKERS", "3"))
        return max(0, min(64, workers))
    except ValueError:
        return 3


def load_workflows(registry: WorkflowRegistry) -> None:
    """Load definitions from the built-in templates and STEPFLOW_TEMPLATE_PATHS.

    STEPFLOW_TEMPLATE_PATHS is a comma-separated list of directories (``~`` is
    expanded). Later directories override earlier ones by workflow name, so
    user templates replace built-in ones.

    Raises:
        RuntimeError: Built-in templates missing, or loading failed
    """
    built_in_templates = Path(__file__).parent / "templates"
    if not built_in_templates.is_dir():
        raise RuntimeError(
            f"Built-in templates directory not found: {built_in_templates}\n"
            "This indicates a broken installation. Please reinstall stepflow."
        )

    user_template_paths: list[Path] = []
    env_paths_str = os.getenv("STEPFLOW_TEMPLATE_PATHS", "")
    if env_paths_str.strip():
        for path_str in env_paths_str.split(","):
            path_str = path_str.strip()
            if not path_str:
                continue
            expanded_path = Path(path_str).expanduser()
            if not expanded_path.exists():
                logger.warning(f"Template path does not exist, skipping: {expanded_path}")
                continue
            if not expanded_path.is_dir():
                logger.warning(f"Template path is not a directory, skipping: {expanded_path}")
                continue
            user_template_paths.append(expanded_path)

        if not user_template_paths:
            logger.warning("STEPFLOW_TEMPLATE_PATHS provided but no valid directories found")

    directories: list[str | Path] = [built_in_templates, *user_template_paths]
    logger.info(f"Loading workflows from {len(directories)} directories")

    result = registry.load_from_directories(directories, on_duplicate="overwrite")
    if not result.is_success:
        error_msg = f"Failed to load workflows: {result.error}"
        logger.error(error_msg)
        raise RuntimeError(
            f"{error_msg}\n"
            "Server cannot start without workflows. Check that STEPFLOW_TEMPLATE_PATHS "
            "(if set) contains valid workflow definitions."
        )

    assert result.value is not None
    load_counts = result.value
    built_in_count = load_counts.get(str(built_in_templates.resolve()), 0)
    logger.info(f"  Built-in templates: {built_in_count} workflows")
    for user_path in user_template_paths:
        user_count = load_counts.get(str(user_path.resolve()), 0)
        logger.info(f"  User templates ({user_path}): {user_count} workflows")
    logger.info(f"Successfully loaded {sum(load_counts.values())} total workflows into registry")


def create_task_client(secret_provider: SecretProvider) -> TaskInvocationClient:
    """HTTP client when STEPFLOW_TASK_BASE_URL is set, otherwise an empty local client."""
    base_url = os.getenv("STEPFLOW_TASK_BASE_URL", "").strip()
    if not base_url:
        logger.warning(
            "STEPFLOW_TASK_BASE_URL not set: Task states fail with ResourceNotFound "
            "unless handlers are registered on the LocalTaskClient"
        )
        return LocalTaskClient()

    auth_secret = os.getenv("STEPFLOW_TASK_AUTH_SECRET") or None
    logger.info(f"Task endpoint: {base_url} (auth secret: {auth_secret or 'none'})")
    return HttpTaskClient(base_url, secret_provider=secret_provider, auth_secret=auth_secret)


def create_items_sources() -> dict[str, ItemsSource]:
    root = os.getenv("STEPFLOW_OBJECT_STORE_ROOT", "").strip()
    if not root:
        return {}
    logger.info(f"Items source '{OBJECT_STORE_SOURCE}': {root}")
    return {OBJECT_STORE_SOURCE: DirectoryItemsSource(Path(root).expanduser())}


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Create shared resources at startup and release them on shutdown.

    Environment Variables:
        STEPFLOW_QUEUE_WORKERS: Asynchronous execution workers (default 3, 0 disables)
        STEPFLOW_TASK_BASE_URL / STEPFLOW_TASK_AUTH_SECRET: HTTP task endpoint
        STEPFLOW_OBJECT_STORE_ROOT: Directory listed by the "object-store" items source
        STEPFLOW_SECRET_*: Secrets (task auth token, redaction)
        STEPFLOW_* engine settings, see EngineConfig.from_env
    """
    logger.info("Initializing MCP server resources...")

    secret_provider = EnvVarSecretProvider()
    secret_keys = await secret_provider.list_secret_keys()
    logger.info(f"Secret provider: {secret_provider.__class__.__name__}")
    logger.info(f"Available secrets: {len(secret_keys)}")
    if not secret_keys:
        logger.warning(
            "No secrets configured. Use STEPFLOW_SECRET_* environment variables to provide secrets."
        )
    else:
        logger.debug(f"Secret keys: {', '.join(sorted(secret_keys))}")

    secret_redactor = SecretRedactor(secret_provider)
    await secret_redactor.initialize()

    config = EngineConfig.from_env()
    task_client = create_task_client(secret_provider)
    runner = WorkflowRunner(
        task_client,
        items_sources=create_items_sources(),
        config=config,
        secret_redactor=secret_redactor,
    )

    registry = WorkflowRegistry()
    load_workflows(registry)

    num_workers = get_queue_workers()
    execution_queue = (
        ExecutionQueue(runner, registry, num_workers=num_workers) if num_workers else None
    )

    app_context = AppContext(
        registry=registry,
        runner=runner,
        task_client=task_client,
        config=config,
        secret_provider=secret_provider,
        secret_redactor=secret_redactor,
        execution_queue=execution_queue,
    )

    if execution_queue:
        await execution_queue.start()
        logger.info(f"Execution queue started with {num_workers} workers")
    else:
        logger.info("Execution queue disabled")

    try:
        yield app_context
    finally:
        logger.info("Shutting down MCP server...")
        if execution_queue:
            await execution_queue.stop(wait_for_completion=False)
            logger.info("Execution queue stopped")
        await task_client.aclose()


mcp = FastMCP("stepflow", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Run the MCP server over stdio (``python -m stepflow`` or ``stepflow``)."""
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv("STEPFLOW_LOG_LEVEL", "INFO").upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid STEPFLOW_LOG_LEVEL '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(valid_log_levels))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    # stdout carries the MCP protocol
    logging.basicConfig(
        level=getattr(logging, log_level_str),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info("Starting MCP server (press Ctrl+C to stop)...")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.exception(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "mcp",
    "main",
    "AppContext",
    "AppContextType",
    "load_workflows",
]
