"""
Error types and error logging for vaultbox.

Every error carries a stable machine-readable ``code`` so callers can act on
the kind of failure without parsing messages. The CLI logs full stack traces
to a file while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class VaultboxError(Exception):
    """Base class for all vaultbox errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Structured form: ``{"code": ..., "message": ...}``."""
        return {"code": self.code, "message": str(self)}


class NotFound(VaultboxError, LookupError):
    """The primary entity of an operation doesn't exist."""

    kind = "Record"

    def __init__(self, id: int):
        super().__init__(f"{self.kind} not found: {id}")
        self.id = id


class VaultNotFound(NotFound):
    code = "VAULT_NOT_FOUND"
    kind = "Vault"


class EntryNotFound(NotFound):
    code = "ENTRY_NOT_FOUND"
    kind = "Entry"


class FieldNotFound(NotFound):
    code = "FIELD_NOT_FOUND"
    kind = "Field definition"


class ValidationFailed(VaultboxError, ValueError):
    """Input was rejected. ``errors`` lists individual problems, if several."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = list(errors) if errors else [message]

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["errors"] = list(self.errors)
        return d


class MalformedInput(VaultboxError, ValueError):
    """Input could not be parsed where strict parsing is required."""

    code = "MALFORMED_INPUT"


class PersistenceFailure(VaultboxError):
    """The storage layer failed. The original error is ``__cause__``."""

    code = "DATABASE_ERROR"

    def __init__(self, cause: Exception):
        super().__init__(f"Database error: {cause}")
        self.cause = cause


class InternalFailure(VaultboxError):
    """Unexpected failure that fits no other category."""

    code = "INTERNAL_ERROR"


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting --store and VAULTBOX_STORE_PATH."""
    store = store_path or os.environ.get("VAULTBOX_STORE_PATH")
    if store:
        return Path(store) / "vaultbox-errors.log"
    return Path.home() / ".vaultbox" / "vaultbox-errors.log"


def log_exception(
    exc: Exception,
    context: str = "",
    store_path: Optional[Path] = None,
) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory holding the log (default from environment)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
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
        pass  # Error log is best-effort
    return log_path
