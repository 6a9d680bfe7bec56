"""
Typed exceptions for cnbdagger.

Provides structured error handling with:
- DaggerError: Base exception for all harness errors
- ConfigError: Missing or invalid configuration
- SandboxError: Ephemeral directory allocation failures
- ExternalProcessError / PackagingError: Nonzero exits of invoked tools
- DescriptorError: Missing or malformed interchange descriptors
- InstanceError: Container readiness failures
- TeardownError: Best-effort cleanup failures
- ProbeError: HTTP checks against a running instance

All exceptions include structured attributes for programmatic handling.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class DaggerError(Exception):
    """Base exception for all cnbdagger errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or test reports."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(DaggerError):
    """Configuration error.

    Raised when:
    - CNB_BUILD_IMAGE / CNB_RUN_IMAGE are not set but a stage needs them
    - A DAGGER_* variable cannot be parsed
    - No container runtime can be detected
    """

    pass


class SandboxError(DaggerError):
    """Sandbox directory allocation error.

    Attributes:
        role: Directory role that failed (workspace, cache, ...)
        path: Path involved, if one was created
    """

    def __init__(
        self,
        message: str,
        *,
        role: Optional[str] = None,
        path: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if role:
            details["role"] = role
        if path:
            details["path"] = path

        self.role = role
        self.path = path

        super().__init__(message, code=code, details=details)


class ExternalProcessError(DaggerError):
    """An invoked program exited nonzero or could not be started.

    The captured output is part of the message so that a failing test run
    shows why the tool failed without re-running it by hand.

    Attributes:
        command: Full argv of the invocation
        exit_code: Process exit code (None if it never started)
        stdout: Captured stdout
        stderr: Captured stderr
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[Sequence[str]] = None,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if command:
            details["command"] = list(command)
        if exit_code is not None:
            details["exit_code"] = exit_code
        if stdout:
            details["stdout"] = stdout[-4000:]
        if stderr:
            details["stderr"] = stderr[-4000:]

        self.command = list(command or [])
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

        output = self.output
        if output:
            message = f"{message}\nStd out + error:\n{output}"

        super().__init__(message, code=code, details=details)

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stdout first."""
        parts = [p.rstrip("\n") for p in (self.stdout, self.stderr) if p]
        return "\n".join(parts)


class PackagingError(ExternalProcessError):
    """A packaging step (create-builder, fix-up, pack build) failed.

    Attributes:
        stage: Which packaging step failed
    """

    def __init__(self, message: str, *, stage: Optional[str] = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", None) or {}
        if stage:
            details["stage"] = stage
        self.stage = stage
        super().__init__(message, details=details, **kwargs)


class DescriptorError(DaggerError):
    """A required descriptor is missing or a descriptor fails to parse.

    Attributes:
        path: Descriptor file path
    """

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if path:
            details["path"] = path
        self.path = path
        super().__init__(message, code=code, details=details)


class InstanceError(DaggerError):
    """Running instance error.

    Attributes:
        label: Fixture/source label of the instance
        container_id: Runtime container id, if started
        state: Instance state when the error was raised
    """

    def __init__(
        self,
        message: str,
        *,
        label: Optional[str] = None,
        container_id: Optional[str] = None,
        state: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if label:
            details["label"] = label
        if container_id:
            details["container_id"] = container_id
        if state:
            details["state"] = state

        self.label = label
        self.container_id = container_id
        self.state = state

        super().__init__(message, code=code, details=details)


class UnhealthyInstanceError(InstanceError):
    """The runtime reported the container unhealthy before it became ready."""

    pass


class ReadinessTimeoutError(InstanceError):
    """The readiness deadline elapsed before the container became healthy.

    Attributes:
        timeout: Configured deadline in seconds
        polls: Number of health queries made
    """

    def __init__(
        self,
        message: str,
        *,
        timeout: Optional[float] = None,
        polls: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", None) or {}
        if timeout is not None:
            details["timeout"] = timeout
        if polls is not None:
            details["polls"] = polls
        self.timeout = timeout
        self.polls = polls
        super().__init__(message, details=details, **kwargs)


class TeardownError(DaggerError):
    """One or more cleanup steps failed.

    Every step of a teardown is attempted; the failures are collected here.

    Attributes:
        errors: (step, exception) pairs in the order they happened
    """

    def __init__(
        self,
        message: str,
        *,
        errors: Optional[List[tuple[str, BaseException]]] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.errors = list(errors or [])
        details = details or {}
        details["failures"] = [f"{step}: {exc}" for step, exc in self.errors]
        if self.errors:
            lines = "\n".join(f"  - {step}: {exc}" for step, exc in self.errors)
            message = f"{message}\n{lines}"
        super().__init__(message, code=code, details=details)


class ProbeError(DaggerError):
    """HTTP check against a running instance failed.

    Attributes:
        url: Requested URL
        status_code: HTTP status code if a response was received
    """

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if url:
            details["url"] = url
        if status_code is not None:
            details["status_code"] = status_code
        self.url = url
        self.status_code = status_code
        super().__init__(message, code=code, details=details)


__all__ = [
    "DaggerError",
    "ConfigError",
    "SandboxError",
    "ExternalProcessError",
    "PackagingError",
    "DescriptorError",
    "InstanceError",
    "UnhealthyInstanceError",
    "ReadinessTimeoutError",
    "TeardownError",
    "ProbeError",
]
