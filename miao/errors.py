"""
Error taxonomy for miao.

Per-subscription failures (FetchError) are captured into partial results by
their callers. Engine lifecycle errors always reach the caller, and are raised
only after the engine process has been torn down.
"""


class MiaoError(Exception):
    """Base class for all miao errors."""


class FetchError(MiaoError):
    """A remote document could not be retrieved or parsed."""

    def __init__(self, url: str, message: str, cause: Exception = None):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.message = message
        self.cause = cause
        self.__cause__ = cause


class CompileError(MiaoError):
    """The engine's rule-set compiler failed; the previous artifact was restored."""

    def __init__(self, message: str, returncode: int | None = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class OperationInProgressError(MiaoError):
    """Another operation of the same kind is still running."""


class NotFoundError(MiaoError):
    """The requested resource does not exist."""


class ValidationError(MiaoError):
    """User-supplied input was rejected."""


class ConfigWriteError(MiaoError):
    """The generated configuration could not be written to disk."""


class EngineError(MiaoError):
    """Base class for engine process lifecycle failures."""


class AlreadyRunningError(EngineError):
    """start() was called while an engine process is live."""


class SpawnError(EngineError):
    """The engine binary could not be executed."""


class ProcessExitedEarlyError(EngineError):
    """The engine exited before the start grace window elapsed."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class ConnectivityError(EngineError):
    """The engine started but the connectivity probe through it failed."""
