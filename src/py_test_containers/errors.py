"""Error types for py-test-containers.

All errors inherit from TestContainersError for easy catching at framework level.
"""

from __future__ import annotations


class TestContainersError(Exception):
    """Base class for all py-test-containers errors."""

    __test__ = False  # keep pytest from collecting this as a test class


class EngineError(TestContainersError):
    """Raised when the container engine rejects a request or misbehaves."""

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message
        self.endpoint = endpoint
        self.status_code = status_code
        detail = message
        if endpoint is not None:
            detail += f" (endpoint: {endpoint}"
            if status_code is not None:
                detail += f", status: {status_code}"
            detail += ")"
        elif status_code is not None:
            detail += f" (status: {status_code})"
        super().__init__(detail)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class BackoffError(TestContainersError):
    """Raised when every attempt of a retried operation failed."""

    def __init__(
        self,
        total_duration: float,
        attempts: int,
        errors: list[Exception],
    ) -> None:
        self.total_duration = total_duration
        self.attempts = attempts
        self.errors = errors
        msg = f"Operation failed after {attempts} attempt(s) in {total_duration:.2f}s"
        if errors:
            msg += f"; last error: {type(errors[-1]).__name__}: {errors[-1]}"
        super().__init__(msg)

    @property
    def last_error(self) -> Exception | None:
        return self.errors[-1] if self.errors else None


class OperationTimeoutError(TestContainersError, TimeoutError):
    """Raised when a bounded operation exceeds its deadline."""

    def __init__(self, timeout_seconds: float, operation: str | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.operation = operation
        what = f"'{operation}'" if operation else "Task"
        super().__init__(f"{what} timed out after {timeout_seconds}s")


class LogProtocolError(TestContainersError):
    """Raised when the engine's multiplexed log stream is malformed."""

    pass


class EngineNotFoundError(TestContainersError):
    """Raised when no container engine endpoint is reachable."""

    def __init__(self, candidates: list[str] | None = None) -> None:
        self.candidates = candidates or []
        msg = "Unable to locate a reachable container engine"
        if self.candidates:
            msg += f". Tried: {', '.join(self.candidates)}"
        super().__init__(msg)


class ReaperError(TestContainersError):
    """Raised when the reaper sidecar cannot be used."""

    pass


class CleanupError(TestContainersError):
    """Raised after session cleanup finished with one or more failures."""

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = errors
        msg = f"Cleanup finished with {len(errors)} failure(s)"
        if errors:
            msg += f": {errors[0]}"
            if len(errors) > 1:
                msg += f" (and {len(errors) - 1} more)"
        super().__init__(msg)


class ConfigurationError(TestContainersError):
    """Error in configuration (invalid values, unreadable config file)."""

    pass
