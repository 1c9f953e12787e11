"""Application settings and size parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import math
import os
from pathlib import Path
import re
from typing import Optional

from afpack.errors import ValidationError


_DEFAULT_MAX_SIZE = "10G"
_DEFAULT_COMPRESSION = "lzfse"
_ALLOWED_COMPRESSION = {"lzfse", "lzvn", "zlib"}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)(i?b)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}

MIB = 1024**2


def default_state_dir() -> Path:
    base = os.getenv("XDG_STATE_HOME")
    root = Path(base) if base else Path.home() / ".local" / "state"
    return root / "afpack"


def default_config_path() -> Path:
    return Path.home() / ".config" / "afpack" / "settings.json"


@dataclass(frozen=True)
class Settings:
    state_dir: Path = field(default_factory=default_state_dir)
    max_size: str = _DEFAULT_MAX_SIZE
    compression: str = _DEFAULT_COMPRESSION
    image_suffix: str = ".asif"
    image_format: str = "ASIF"
    filesystem: str = "APFS"
    # Sparse image overhead on top of the tree's allocated size.
    image_overhead_ratio: float = 0.05
    headroom_ratio: float = 0.25
    min_headroom_bytes: int = 256 * MIB
    copy_batch_size: int = 500
    mount_lock_timeout: float = 300.0

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / "ledger.db"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def max_size_bytes(self) -> int:
        return parse_size(self.max_size)

    def required_bytes(self, tree_bytes: int) -> int:
        """Free space an image holding ``tree_bytes`` needs on its volume."""
        return int(math.ceil(tree_bytes * (1 + self.image_overhead_ratio)))

    def image_size_for(self, tree_bytes: int) -> int:
        """Virtual size of a new sparse image for a tree of ``tree_bytes``."""
        headroom = max(int(tree_bytes * self.headroom_ratio), self.min_headroom_bytes)
        needed = self.required_bytes(tree_bytes) + headroom
        return max(needed, self.max_size_bytes)


def parse_size(value: str | int) -> int:
    """Parse ``10G`` / ``512MB`` / ``1024`` style sizes into bytes (binary units)."""
    if isinstance(value, int):
        if value < 0:
            raise ValidationError(f"Invalid size: {value}")
        return value
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ValidationError(f"Invalid size: {value}")
    number, unit, _ = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.lower()])


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. ``1.2 GB``."""
    value = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            break
        value /= 1024
    if unit == "B":
        return f"{int(value)} B"
    return f"{value:.1f} {unit}"


def load_settings(path: Optional[Path]) -> Settings:
    """Load settings from JSON config file, with environment variable overrides.

    Priority order:
    1. Environment variables (AFPACK_STATE_DIR, AFPACK_MAX_SIZE, AFPACK_COMPRESSION)
    2. JSON config file
    3. Defaults

    Args:
        path: Path to JSON config file, or None to use defaults only

    Returns:
        Settings object with resolved values
    """
    json_settings = {}
    if path and path.exists():
        try:
            json_settings = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid settings file {path}: {exc}") from exc

    state_dir = os.getenv("AFPACK_STATE_DIR") or json_settings.get("state_dir")
    max_size = os.getenv("AFPACK_MAX_SIZE") or json_settings.get("max_size", _DEFAULT_MAX_SIZE)
    compression = os.getenv("AFPACK_COMPRESSION") or json_settings.get(
        "compression", _DEFAULT_COMPRESSION
    )
    resolve_compression(compression)
    parse_size(max_size)

    defaults = Settings()
    return Settings(
        state_dir=Path(state_dir).expanduser() if state_dir else defaults.state_dir,
        max_size=max_size,
        compression=compression,
        headroom_ratio=float(json_settings.get("headroom_ratio", defaults.headroom_ratio)),
        min_headroom_bytes=parse_size(
            json_settings.get("min_headroom", defaults.min_headroom_bytes)
        ),
        copy_batch_size=int(json_settings.get("copy_batch_size", defaults.copy_batch_size)),
        mount_lock_timeout=float(
            json_settings.get("mount_lock_timeout", defaults.mount_lock_timeout)
        ),
    )


def resolve_compression(algorithm: str) -> str:
    algorithm = algorithm.lower()
    if algorithm not in _ALLOWED_COMPRESSION:
        raise ValidationError(
            f"Unsupported compression algorithm: {algorithm} "
            f"(expected one of {', '.join(sorted(_ALLOWED_COMPRESSION))})"
        )
    return algorithm
