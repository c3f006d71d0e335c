"""Upgrading several lidars with one firmware package."""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Iterable

from lidarkit.firmware import Firmware, FirmwareError
from lidarkit.upgrader import LidarUpgrader, UpgradeProgress

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, UpgradeProgress], None]


class UpgradeManager:
    """Holds the firmware to install and runs one upgrader per lidar."""

    def __init__(self, commands: Any) -> None:
        self._commands = commands
        self._firmware: Firmware | None = None
        self._callback: ProgressCallback | None = None

    @property
    def firmware(self) -> Firmware | None:
        return self._firmware

    def set_firmware_path(self, firmware_path: str | os.PathLike[str]) -> None:
        """Load the firmware package; raises FirmwareError if it cannot be used."""
        try:
            self._firmware = Firmware.from_file(firmware_path)
        except FirmwareError:
            log.error("cannot open firmware file %s", os.fspath(firmware_path))
            raise

    def set_progress_callback(self, callback: ProgressCallback | None) -> None:
        """Set the function told of progress as ``callback(handle, progress)``."""
        self._callback = callback

    def upgrade(self, handles: Iterable[int]) -> dict[int, bool]:
        """Upgrade every lidar in ``handles`` and wait; map each handle to its success."""
        firmware = self._firmware
        if firmware is None:
            raise FirmwareError("no firmware loaded")
        callback = self._callback

        def observer(handle: int, progress: UpgradeProgress) -> None:
            if callback is not None:
                callback(handle, progress)

        upgraders = []
        for handle in handles:
            upgrader = LidarUpgrader(firmware, handle, self._commands)
            upgrader.add_progress_observer(observer)
            upgraders.append(upgrader)

        for upgrader in upgraders:
            upgrader.start()

        results: dict[int, bool] = {}
        for upgrader in upgraders:
            upgrader.wait(None)
            results[upgrader.handle] = upgrader.is_complete()

        self.close_firmware()
        return results

    def close_firmware(self) -> None:
        """Forget the loaded firmware package."""
        self._firmware = None