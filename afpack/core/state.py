"""Managed path state records and transitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class ManagedState(str, Enum):
    """Managed path lifecycle states."""

    UNPACKED = "UNPACKED"
    PACKING = "PACKING"
    PACKED = "PACKED"
    COMPRESSING = "COMPRESSING"
    DECOMPRESSING = "DECOMPRESSING"
    UNPACKING = "UNPACKING"
    FAILED = "FAILED"


class OperationKind(str, Enum):
    """State-changing operations driven by the orchestrator."""

    PACK = "pack"
    UNPACK = "unpack"
    COMPRESS = "compress"
    DECOMPRESS = "decompress"


PACK_STEPS = (
    "check_space",
    "create_image",
    "attach_staging",
    "copy",
    "verify",
    "detach_staging",
    "finalize_image",
    "trash_original",
    "attach_logical",
    "confirm",
    "purge_trash",
)

UNPACK_STEPS = (
    "check_space",
    "copy_out",
    "verify",
    "detach_logical",
    "swap_in",
    "delete_image",
)

COMPRESS_STEPS = ("fingerprint", "compress", "verify")
DECOMPRESS_STEPS = ("fingerprint", "decompress", "verify")

_STEPS = {
    OperationKind.PACK: PACK_STEPS,
    OperationKind.UNPACK: UNPACK_STEPS,
    OperationKind.COMPRESS: COMPRESS_STEPS,
    OperationKind.DECOMPRESS: DECOMPRESS_STEPS,
}

_IN_FLIGHT = {
    OperationKind.PACK: ManagedState.PACKING,
    OperationKind.UNPACK: ManagedState.UNPACKING,
    OperationKind.COMPRESS: ManagedState.COMPRESSING,
    OperationKind.DECOMPRESS: ManagedState.DECOMPRESSING,
}

# Steps after which an operation can only be rolled forward.
COMMIT_STEPS = {
    OperationKind.PACK: "purge_trash",
    OperationKind.UNPACK: "delete_image",
}

TRANSITIONAL_STATES = frozenset(_IN_FLIGHT.values())


def steps_for(kind: OperationKind) -> tuple[str, ...]:
    return _STEPS[kind]


def in_flight_state(kind: OperationKind) -> ManagedState:
    return _IN_FLIGHT[kind]


def is_past_commit(kind: OperationKind, step: Optional[str]) -> bool:
    commit = COMMIT_STEPS.get(kind)
    if commit is None or step is None:
        return False
    steps = steps_for(kind)
    return steps.index(step) >= steps.index(commit)


@dataclass(frozen=True)
class PendingOperation:
    """In-flight operation and the step it is about to perform."""

    kind: OperationKind
    step: str
    started_at: str


@dataclass(frozen=True)
class Failure:
    """Why the last operation stopped and where a retry picks up."""

    reason: str
    error_type: str
    resume_step: Optional[str]
    retryable: bool


@dataclass(frozen=True)
class ManagedPath:
    """Persisted managed path snapshot keyed by logical_path."""

    logical_path: Path
    state: ManagedState
    backing_image_path: Optional[Path] = None
    compressed: bool = False
    content_fingerprint: Optional[str] = None
    size_bytes: int = 0
    file_count: int = 0
    pending_operation: Optional[PendingOperation] = None
    failure: Optional[Failure] = None
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def resume_step(self) -> Optional[str]:
        if self.failure is not None:
            return self.failure.resume_step
        if self.pending_operation is not None:
            return self.pending_operation.step
        return None

    @property
    def in_transition(self) -> bool:
        return self.state in TRANSITIONAL_STATES


@dataclass(frozen=True)
class OperationRecord:
    """Append-only journal entry written around each side-effecting step.

    ``phase`` is one of ``begin``, ``done``, ``failed`` or ``checkpoint``.
    """

    logical_path: Path
    kind: OperationKind
    step: str
    phase: str
    detail: dict[str, Any] = field(default_factory=dict)
    op_id: Optional[int] = None
    created_at: Optional[str] = None
