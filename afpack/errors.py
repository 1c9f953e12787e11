"""Error taxonomy and exit code mapping for CLI."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class AfpackError(Exception):
    """Base error for deterministic CLI exit codes.

    Every error can carry the managed path it concerns, the ledger state that
    path was left in, and whether re-running the same command is safe.
    """

    exit_code: int = 1
    retry_safe_default: Optional[bool] = None

    def __init__(
        self,
        message: str = "",
        *,
        path: Optional[Path] = None,
        state: Optional[str] = None,
        retry_safe: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.state = state
        self.retry_safe = self.retry_safe_default if retry_safe is None else retry_safe

    def with_context(
        self,
        *,
        path: Optional[Path] = None,
        state: Optional[str] = None,
        retry_safe: Optional[bool] = None,
    ) -> "AfpackError":
        if path is not None:
            self.path = path
        if state is not None:
            self.state = state
        if retry_safe is not None:
            self.retry_safe = retry_safe
        return self

    def describe(self) -> str:
        parts = [str(self) or self.__class__.__name__]
        if self.path is not None:
            parts.append(f"path: {self.path}")
        if self.state is not None:
            parts.append(f"state: {self.state}")
        if self.retry_safe is not None:
            parts.append("retry: safe" if self.retry_safe else "retry: NOT safe")
        return "\n  ".join(parts)


class RuntimeFailure(AfpackError):
    """Unexpected runtime failure."""

    exit_code = 1


class ValidationError(AfpackError):
    """Invalid user input or command usage."""

    exit_code = 2
    retry_safe_default = False


class InvalidState(ValidationError):
    """Command not valid from the path's current lifecycle state."""


class IOFailure(AfpackError):
    """Filesystem or I/O failure."""

    exit_code = 3


class Busy(AfpackError):
    """Another operation holds the lock for this path."""

    exit_code = 4
    retry_safe_default = True


class InsufficientSpace(AfpackError):
    """Not enough free space for the image or the restored directory."""

    exit_code = 5
    retry_safe_default = True


class VerificationFailed(AfpackError):
    """Fingerprint mismatch between two copies of a tree."""

    exit_code = 6
    retry_safe_default = False


class Unsupported(AfpackError):
    """Platform lacks a required capability."""

    exit_code = 7
    retry_safe_default = False


class MountConflict(AfpackError):
    """Mount point is occupied by something else."""

    exit_code = 8
    retry_safe_default = False


class CorruptLedger(AfpackError):
    """Ledger store or entry is unreadable or inconsistent."""

    exit_code = 9
    retry_safe_default = False


class LedgerConflict(CorruptLedger):
    """Entry version in the ledger moved underneath the writer."""


class PartialMigration(AfpackError):
    """Operation stopped part way; re-running the command resumes it."""

    exit_code = 10
    retry_safe_default = True


class OperationCancelled(PartialMigration):
    """Operation stopped at a checkpoint after a cancellation request."""


class CompressionFailure(AfpackError):
    """Some files could not be (de)compressed; the rest are left as-is."""

    exit_code = 11
    retry_safe_default = True


class DeviceBusy(AfpackError):
    """Image could not be detached because the volume is in use."""

    exit_code = 12
    retry_safe_default = True


class PathNotManaged(AfpackError):
    """No ledger entry exists for the path."""

    exit_code = 13
    retry_safe_default = False


class CorruptImage(AfpackError):
    """Disk image could not be attached because it is damaged."""

    exit_code = 14
    retry_safe_default = False


INTEGRITY_ERRORS = (VerificationFailed, CorruptLedger, CorruptImage)


def exit_code_for_exception(exc: BaseException) -> int:
    """Resolve a deterministic exit code for an exception."""
    if isinstance(exc, AfpackError):
        return exc.exit_code
    if isinstance(exc, OSError):
        return IOFailure.exit_code
    return RuntimeFailure.exit_code
