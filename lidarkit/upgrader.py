"""State machine that drives a firmware upgrade of one lidar."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from lidarkit.firmware import (
    ENL_FILE_VERSION_V3,
    GENERAL_TRY_COUNT_LIMIT,
    GET_PROCESS_TRY_COUNT_LIMIT,
    Firmware,
    RequestUpgradeReturnCode,
)

log = logging.getLogger(__name__)

STATUS_SUCCESS = 0
ERASE_FIRMWARE = 0x34
XFER_CHUNK_LENGTH = 1024

ResponseCallback = Callable[[int, Any], None]


class UpgradeState(enum.IntEnum):
    """States of the upgrade state machine."""

    IDLE = 0
    REQUEST = 1
    XFER_FIRMWARE = 2
    COMPLETE_XFER_FIRMWARE = 3
    GET_UPGRADE_PROGRESS = 4
    COMPLETE = 5
    TIMEOUT = 6
    ERR = 7
    UNDEF = 8


class UpgradeEvent(enum.IntEnum):
    """Events fed to the upgrade state machine."""

    REQUEST_UPGRADE = 0
    XFER_FIRMWARE = 1
    COMPLETE_XFER_FIRMWARE = 2
    GET_UPGRADE_PROGRESS = 3
    COMPLETE = 4
    REINIT = 5
    TIMEOUT = 6
    ERR = 7
    UNDEF = 8


@dataclass(frozen=True)
class UpgradeProgress:
    """What an observer is told after each event: the event and a percentage."""

    event: UpgradeEvent
    progress: int


class _UpgradeCommands(Protocol):
    """Sends upgrade commands to a lidar; replies arrive as ``callback(status, response)``."""

    def start_upgrade(self, handle: int, request: dict[str, Any], callback: ResponseCallback) -> Any: ...

    def xfer_firmware(self, handle: int, request: dict[str, Any], callback: ResponseCallback) -> Any: ...

    def complete_xfer_firmware(
        self, handle: int, request: dict[str, Any], callback: ResponseCallback
    ) -> Any: ...

    def get_upgrade_progress(self, handle: int, callback: ResponseCallback) -> Any: ...

    def request_reboot(self, handle: int, callback: ResponseCallback) -> Any: ...


class LidarUpgrader:
    """Upgrades one lidar with a loaded firmware package.

    Responses from the lidar are fed back through the ``on_*_response`` methods,
    which the command layer calls as ``callback(status, response)``.
    """

    erase_retry_delay = 1.0
    xfer_delay = 0.005

    def __init__(self, firmware: Firmware, handle: int, commands: _UpgradeCommands) -> None:
        self._firmware = firmware
        self._handle = handle
        self._commands = commands
        self._read_offset = 0
        self._read_length = XFER_CHUNK_LENGTH
        self._state = UpgradeState.IDLE
        self._upgrade_error = 0
        self._progress = 0
        self._try_count = 0
        self._observer: Callable[[int, UpgradeProgress], None] | None = None
        self._lock = threading.RLock()
        self._done = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def handle(self) -> int:
        return self._handle

    @property
    def state(self) -> UpgradeState:
        return self._state

    def add_progress_observer(self, observer: Callable[[int, UpgradeProgress], None]) -> None:
        """Set the function told of every event as ``observer(handle, progress)``."""
        self._observer = observer

    def start(self) -> None:
        """Begin the upgrade on a background thread."""
        self._done.clear()
        self._thread = threading.Thread(
            target=self.fsm_event,
            args=(UpgradeEvent.REQUEST_UPGRADE, 10),
            name=f"lidar-upgrade-{self._handle}",
            daemon=True,
        )
        self._thread.start()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the upgrade finishes or fails; False if ``timeout`` ran out."""
        finished = self._done.wait(timeout)
        if finished:
            if self.is_error():
                log.error("lidar %d upgrade failed, try again please", self._handle)
            elif self.is_complete():
                log.info("lidar %d upgraded successfully", self._handle)
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join()
                self._thread = None
        return finished

    def fsm_event(self, event: UpgradeEvent, progress: int) -> None:
        """Feed ``event`` to the state machine and run the action it selects."""
        event = UpgradeEvent(event)
        with self._lock:
            old_state = self._state
            if event in (UpgradeEvent.TIMEOUT, UpgradeEvent.ERR):
                self._state = UpgradeState(event.value)
            log.debug("lidar %d state %s event %s", self._handle, self._state.name, event.name)
            handler = None
            entry = _TRANSITIONS.get((self._state, event))
            if entry is not None:
                handler, self._state = entry
                log.debug("lidar %d new state %s", self._handle, self._state.name)
            new_state = self._state

        if handler is not None:
            try:
                handler(self)
            except ValueError as exc:
                log.error("lidar %d: %s", self._handle, exc)

        if self._observer is not None:
            self._observer(self._handle, UpgradeProgress(event, progress))

        if new_state in (UpgradeState.TIMEOUT, UpgradeState.ERR) or (
            new_state == UpgradeState.IDLE and old_state != UpgradeState.IDLE
        ):
            self._done.set()

    def start_upgrade(self) -> Any:
        """Ask the lidar to prepare for a new firmware image."""
        self._read_offset = 0
        self._upgrade_error = 0
        self._progress = 0
        header = self._firmware.header
        request: dict[str, Any] = {
            "firmware_type": header.firmware_type,
            "firmware_length": header.firmware_length,
            "encrypt_type": header.encrypt_type,
            "dev_type": header.device_type,
        }
        if self._firmware.package_version == ENL_FILE_VERSION_V3:
            request["firmware_version"] = header.firmware_version
            request["firmware_buildtime"] = header.modify_time
            request["hw_whitelist"] = bytes(header.hw_whitelist)
        log.info("start upgrade of lidar %d, device type %d", self._handle, header.device_type)
        return self._commands.start_upgrade(self._handle, request, self.on_start_upgrade_response)

    def xfer_firmware(self) -> Any:
        """Send the next chunk of the firmware image."""
        firmware_length = self._firmware.header.firmware_length
        if self._read_offset >= firmware_length:
            raise ValueError(
                f"read offset {self._read_offset} is beyond firmware length {firmware_length}"
            )
        read_length = min(self._read_length, firmware_length - self._read_offset)
        chunk = self._firmware.data[self._read_offset : self._read_offset + read_length]
        request = {
            "offset": self._read_offset,
            "length": read_length,
            "encrypt_type": self._firmware.header.encrypt_type,
            "data": bytes(chunk),
        }
        if self.xfer_delay:
            time.sleep(self.xfer_delay)
        log.debug("lidar %d xfer firmware offset %d", self._handle, self._read_offset)
        return self._commands.xfer_firmware(self._handle, request, self.on_xfer_firmware_response)

    def complete_xfer_firmware(self) -> Any:
        """Tell the lidar the whole image was sent, with its checksum."""
        header = self._firmware.header
        request = {
            "checksum_type": header.checksum_type,
            "checksum_length": header.checksum_length,
            "checksum": bytes(header.checksum[: header.checksum_length]),
        }
        return self._commands.complete_xfer_firmware(
            self._handle, request, self.on_complete_xfer_response
        )

    def get_upgrade_progress(self) -> Any:
        """Ask the lidar how far it got with flashing."""
        return self._commands.get_upgrade_progress(self._handle, self.on_progress_response)

    def upgrade_complete(self) -> Any:
        """Ask the lidar to reboot into the new firmware."""
        return self._commands.request_reboot(self._handle, self.on_reboot_response)

    def _retry(self, limit: int, event: UpgradeEvent, progress: int, what: str) -> None:
        self._try_count += 1
        if self._try_count < limit:
            self.fsm_event(event, progress)
        else:
            self._try_count = 0
            self.fsm_event(UpgradeEvent.ERR, 100)
            log.error("lidar %d: %s exceeded the retry limit", self._handle, what)

    def on_start_upgrade_response(self, status: int, response: Any) -> None:
        if status != STATUS_SUCCESS:
            log.warning("lidar %d start upgrade timed out, try %d", self._handle, self._try_count)
            self._retry(GENERAL_TRY_COUNT_LIMIT, UpgradeEvent.REQUEST_UPGRADE, 10, "start upgrade")
            return
        self._try_count = 0
        ret_code = response.ret_code
        if ret_code == RequestUpgradeReturnCode.SYSTEM_IS_NOT_READY:
            log.info("lidar %d is busy, requesting upgrade again", self._handle)
            self.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
        elif ret_code == ERASE_FIRMWARE:
            if self.erase_retry_delay:
                time.sleep(self.erase_retry_delay)
            log.info("lidar %d is erasing its firmware", self._handle)
            self.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
        elif ret_code:
            log.error("lidar %d start upgrade failed, ret_code %d", self._handle, ret_code)
            self.fsm_event(UpgradeEvent.ERR, 100)
        else:
            log.info("lidar %d ready, transferring firmware", self._handle)
            self.fsm_event(UpgradeEvent.XFER_FIRMWARE, 20)

    def on_xfer_firmware_response(self, status: int, response: Any) -> None:
        if status != STATUS_SUCCESS:
            log.warning("lidar %d xfer firmware timed out, try %d", self._handle, self._try_count)
            self._retry(GENERAL_TRY_COUNT_LIMIT, UpgradeEvent.XFER_FIRMWARE, 20, "xfer firmware")
            return
        self._try_count = 0
        if response.ret_code:
            log.error("lidar %d xfer firmware failed, ret_code %d", self._handle, response.ret_code)
            self.fsm_event(UpgradeEvent.ERR, 100)
            return
        self._read_offset += self._read_length
        if self._read_offset < self._firmware.header.firmware_length:
            self.fsm_event(UpgradeEvent.XFER_FIRMWARE, 20)
        else:
            log.info("lidar %d firmware sent, last offset %d", self._handle, self._read_offset)
            self.fsm_event(UpgradeEvent.COMPLETE_XFER_FIRMWARE, 40)

    def on_complete_xfer_response(self, status: int, response: Any) -> None:
        if status != STATUS_SUCCESS:
            log.warning("lidar %d complete xfer timed out, try %d", self._handle, self._try_count)
            self._retry(
                GENERAL_TRY_COUNT_LIMIT, UpgradeEvent.COMPLETE_XFER_FIRMWARE, 50, "complete xfer"
            )
            return
        self._try_count = 0
        if response.ret_code:
            log.error("lidar %d complete xfer failed, ret_code %d", self._handle, response.ret_code)
            self.fsm_event(UpgradeEvent.ERR, 100)
        else:
            log.info("lidar %d complete xfer succeeded", self._handle)
            self.fsm_event(UpgradeEvent.GET_UPGRADE_PROGRESS, 50)

    def on_progress_response(self, status: int, response: Any) -> None:
        if status != STATUS_SUCCESS:
            self._retry(
                GET_PROCESS_TRY_COUNT_LIMIT,
                UpgradeEvent.GET_UPGRADE_PROGRESS,
                self._progress // 2 + 50,
                "get progress",
            )
            return
        self._try_count = 0
        if response.ret_code:
            log.error("lidar %d get progress failed, ret_code %d", self._handle, response.ret_code)
            self.fsm_event(UpgradeEvent.ERR, 100)
            return
        log.info("lidar %d upgrade progress %d", self._handle, response.progress)
        if response.progress < 100:
            self.fsm_event(UpgradeEvent.GET_UPGRADE_PROGRESS, response.progress // 2 + 50)
        else:
            self.fsm_event(UpgradeEvent.COMPLETE, 100)

    def on_reboot_response(self, status: int, response: Any) -> None:
        if status != STATUS_SUCCESS:
            log.warning("lidar %d reboot timed out, try %d", self._handle, self._try_count)
            self._try_count += 1
            if self._try_count < GENERAL_TRY_COUNT_LIMIT:
                self.fsm_event(UpgradeEvent.COMPLETE, 100)
            else:
                self._try_count = 0
                self.fsm_event(UpgradeEvent.REINIT, 100)
                log.error("lidar %d reboot exceeded the retry limit", self._handle)
            return
        self._try_count = 0
        if response.ret_code:
            log.error("lidar %d reboot failed, ret_code %d", self._handle, response.ret_code)
            self.fsm_event(UpgradeEvent.ERR, 100)
        else:
            log.info("lidar %d upgrade complete", self._handle)
            self.fsm_event(UpgradeEvent.REINIT, 100)

    def is_complete(self) -> bool:
        return self._state == UpgradeState.IDLE

    def is_error(self) -> bool:
        return self._state in (UpgradeState.TIMEOUT, UpgradeState.ERR)


_S = UpgradeState
_E = UpgradeEvent

_TRANSITIONS: dict[
    tuple[UpgradeState, UpgradeEvent],
    tuple[Callable[[LidarUpgrader], Any] | None, UpgradeState],
] = {
    (_S.IDLE, _E.REQUEST_UPGRADE): (LidarUpgrader.start_upgrade, _S.REQUEST),
    (_S.REQUEST, _E.REQUEST_UPGRADE): (LidarUpgrader.start_upgrade, _S.REQUEST),
    (_S.REQUEST, _E.XFER_FIRMWARE): (LidarUpgrader.xfer_firmware, _S.XFER_FIRMWARE),
    (_S.XFER_FIRMWARE, _E.XFER_FIRMWARE): (LidarUpgrader.xfer_firmware, _S.XFER_FIRMWARE),
    (_S.XFER_FIRMWARE, _E.COMPLETE_XFER_FIRMWARE): (
        LidarUpgrader.complete_xfer_firmware,
        _S.COMPLETE_XFER_FIRMWARE,
    ),
    (_S.COMPLETE_XFER_FIRMWARE, _E.COMPLETE_XFER_FIRMWARE): (
        LidarUpgrader.complete_xfer_firmware,
        _S.COMPLETE_XFER_FIRMWARE,
    ),
    (_S.COMPLETE_XFER_FIRMWARE, _E.GET_UPGRADE_PROGRESS): (
        LidarUpgrader.get_upgrade_progress,
        _S.GET_UPGRADE_PROGRESS,
    ),
    (_S.GET_UPGRADE_PROGRESS, _E.GET_UPGRADE_PROGRESS): (
        LidarUpgrader.get_upgrade_progress,
        _S.GET_UPGRADE_PROGRESS,
    ),
    (_S.GET_UPGRADE_PROGRESS, _E.COMPLETE): (LidarUpgrader.upgrade_complete, _S.COMPLETE),
    (_S.COMPLETE, _E.COMPLETE): (LidarUpgrader.upgrade_complete, _S.COMPLETE),
    (_S.COMPLETE, _E.REINIT): (None, _S.IDLE),
}