"""Host capability probe."""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class MacPlatformProbe:
    """Detects image creation support by asking diskutil, not by OS version."""

    def __init__(
        self,
        *,
        platform: str = sys.platform,
        runner: Optional[Callable[..., subprocess.CompletedProcess]] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self._platform = platform
        self._run = runner or subprocess.run
        self._which = which
        self._creation: Optional[bool] = None

    def supports_image_creation(self) -> bool:
        if self._creation is None:
            self._creation = self._probe_creation()
        return self._creation

    def _probe_creation(self) -> bool:
        if self._platform != "darwin" or not self._which("diskutil"):
            return False
        try:
            result = self._run(
                ["diskutil", "image", "create", "blank", "--help"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            logger.debug("diskutil probe failed: %s", exc)
            return False
        output = f"{result.stdout or ''}{result.stderr or ''}".lower()
        supported = "asif" in output
        logger.debug("diskutil image creation supported: %s", supported)
        return supported

    def supports_compressed_read(self) -> bool:
        return self._platform == "darwin"
