"""
Bootstrap exceptions for replboot.

Every failure that aborts a role's setup derives from BootstrapError so the
command line can map it to a non-zero exit status.
"""

from typing import List, Optional, Sequence


class BootstrapError(Exception):
    """Base exception for all bootstrap errors."""
    pass


class ConfigError(BootstrapError):
    """Raised when the bootstrap configuration is missing or invalid."""
    pass


class WaitTimeout(BootstrapError):
    """Raised when a readiness predicate did not hold before the ceiling."""

    def __init__(self, description, timeout):
        self.description = description
        self.timeout = timeout
        self.message = f"Timed out after {timeout}s waiting for {description}"
        super().__init__(self.message)


class CommandError(BootstrapError):
    """Raised when an external command exits non-zero."""

    def __init__(self, cmd: Sequence[str], returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        self.message = f"Command '{self.cmd[0]}' failed with exit status {returncode}"
        super().__init__(self.message)

    def __str__(self):
        if self.stderr:
            return f"{self.message}: {self.stderr}"
        return self.message


class ChannelRestoreError(BootstrapError):
    """Raised after all secure channel restore steps ran and some failed."""

    def __init__(self, failures: List[str]):
        self.failures = failures
        self.message = "Secure channel restore incomplete: " + "; ".join(failures)
        super().__init__(self.message)


class RestoreTargetNotEmpty(BootstrapError):
    """Raised when a destructive restore would overwrite existing schemas."""

    def __init__(self, schemas: List[str]):
        self.schemas = schemas
        self.message = (
            "Refusing to restore over existing schemas: " + ", ".join(schemas)
        )
        super().__init__(self.message)


class StateTransitionError(BootstrapError):
    """Raised by an orchestrator when the transition into a state fails."""

    def __init__(self, state, cause: BaseException, cleanup_error: Optional[BaseException] = None):
        self.state = state
        self.cause = cause
        self.cleanup_error = cleanup_error
        self.message = f"{state.value} failed: {cause}"
        if cleanup_error is not None:
            self.message += f" (cleanup also failed: {cleanup_error})"
        super().__init__(self.message)
