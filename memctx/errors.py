"""
Error types and error logging for memctx.

Only NotFound and ValidationError abort a report. The other errors are
recoverable: the affected section degrades and the report still returns.

log_exception() records full stack traces for debugging while the CLI and
MCP server show clean one-line messages.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class MemctxError(Exception):
    """Base class for all memctx errors."""


class NotFound(MemctxError, LookupError):
    """A requested project, task or note does not exist."""

    def __init__(self, resource: str, id: Optional[Any] = None):
        self.resource = resource
        self.id = id
        if id is None:
            message = f"{resource} not found"
        else:
            message = f"{resource} not found: {id}"
        super().__init__(message)


class ValidationError(MemctxError, ValueError):
    """Malformed input, e.g. a missing topic or a non-positive id."""


class EmbeddingUnavailable(MemctxError):
    """The embedding model could not be loaded, timed out, or failed."""


class InstructionStoreUnavailable(MemctxError):
    """The instruction store failed and nothing was cached for the scope."""


class ReportTimeout(MemctxError, TimeoutError):
    """A report did not finish within the configured deadline."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting MEMCTX_STORE_PATH."""
    store = os.environ.get("MEMCTX_STORE_PATH")
    if store:
        return Path(store) / "memctx-errors.log"
    return Path.home() / ".memctx" / "memctx-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
