"""
Error hierarchy for the assistant kernel.

Handled classes (invalid arguments, not found, confirmation, upstream) are turned
into reply text and action markers by the executor and kernel. `StorageError` is
the only class allowed to fail a whole request.
"""

from __future__ import annotations


class BossError(ValueError):
    """Base class for all boss errors."""

    pass


class InvalidArguments(BossError):
    """A required tool or command argument is missing or malformed."""

    pass


class InvalidData(BossError):
    """Stored or produced data cannot be used (undecodable action, empty output, non-text record)."""

    pass


class NotFound(BossError):
    """A record, task, skill or tag reference cannot be resolved."""

    pass


class ConfirmationInvalid(BossError):
    """Confirmation token is unknown, expired, consumed, or belongs to another source."""

    def __init__(self, token: str, reason: str = "invalid"):
        super().__init__(f"Confirmation token {token!r} is {reason}")
        self.token = token
        self.reason = reason


class UpstreamError(BossError):
    """An external dependency (model provider, shell) failed."""

    pass


class ModelError(UpstreamError):
    """The model provider call failed, timed out, or returned nothing usable."""

    def __init__(self, message: str, *, provider: str = "", status: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class ShellCommandError(UpstreamError):
    """A shell command exited non-zero."""

    def __init__(self, returncode: int, output: str):
        super().__init__(f"Shell command failed with code {returncode}: {output.strip()}")
        self.returncode = returncode
        self.output = output


class StorageError(BossError):
    """Unexpected storage failure. Fails the whole request."""

    pass
