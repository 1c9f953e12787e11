"""Transparent APFS/HFS+ compression through afsctool."""

from __future__ import annotations

import logging
import os
from pathlib import Path
import shutil
import stat
import subprocess
from typing import Callable, Optional

from afpack.errors import CompressionFailure, Unsupported
from afpack.settings import resolve_compression

logger = logging.getLogger(__name__)

_COMPRESSORS = {"lzfse": "LZFSE", "lzvn": "LZVN", "zlib": "ZLIB"}
_UF_COMPRESSED = getattr(stat, "UF_COMPRESSED", 0x20)


class AfscCompressionBackend:
    """Per-file compression; reads stay byte-identical."""

    def __init__(
        self,
        algorithm: str = "lzfse",
        *,
        tool: str = "afsctool",
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
    ) -> None:
        self.algorithm = resolve_compression(algorithm)
        self.tool = tool
        self._run = runner or subprocess.run
        self._tool_path: Optional[str] = None

    def _resolve_tool(self) -> str:
        if self._tool_path is None:
            found = shutil.which(self.tool)
            if not found:
                raise Unsupported(f"{self.tool} not found on PATH")
            self._tool_path = found
        return self._tool_path

    def _invoke(self, args: list[str], path: Path) -> None:
        cmd = [self._resolve_tool(), *args, str(path)]
        logger.debug("Executing: %s", " ".join(cmd))
        result = self._run(cmd, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            raise CompressionFailure(f"{self.tool} failed on {path}: {message}")

    def compress(self, path: Path) -> None:
        self._invoke(["-c", "-T", _COMPRESSORS[self.algorithm]], path)

    def decompress(self, path: Path) -> None:
        self._invoke(["-d"], path)

    def is_compressed(self, path: Path) -> bool:
        flags = getattr(os.lstat(path), "st_flags", 0)
        return bool(flags & _UF_COMPRESSED)
