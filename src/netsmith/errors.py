"""Exception taxonomy shared by every netsmith subsystem."""
from typing import Optional


class NetsmithError(Exception):
    """Base class for all netsmith errors."""
    pass


class BackendUnavailable(NetsmithError):
    """No supported tool or canonical path was found for a subsystem."""

    def __init__(self, subsystem: str, detail: str = ""):
        self.subsystem = subsystem
        self.detail = detail
        message = f"No usable {subsystem} backend found"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ParseFailure(NetsmithError):
    """Native state is in a format the parser cannot read at all."""

    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f"Failed to parse {source}: {detail}")


class ValidationFailed(NetsmithError):
    """An intent is malformed (bad CIDR, inverted range, duplicate key...)."""

    def __init__(self, errors: list[str], warnings: Optional[list[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("Validation failed: " + "; ".join(self.errors))


class ApplyFailed(NetsmithError):
    """A backend command exited non-zero while applying an artifact."""

    def __init__(
        self,
        backend: str,
        message: str,
        stderr: str = "",
        artifact: str = "",
        live_applied: bool = False,
    ):
        self.backend = backend
        self.stderr = stderr
        self.artifact = artifact
        self.live_applied = live_applied
        text = f"[{backend}] {message}"
        if stderr:
            text += f"\n{stderr}"
        super().__init__(text)


class FeatureNotImplemented(NetsmithError, NotImplementedError):
    """A configuration surface exists but its behavior is not implemented."""

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"{feature} is not implemented")
