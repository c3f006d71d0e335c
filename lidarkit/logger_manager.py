"""Management of lidar log collection: devices, per-lidar writers and cache limits."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from lidarkit.config import LoggerCfg
from lidarkit.file_manager import (
    collect_file_names,
    dir_total_size,
    directory_exists,
    make_directory,
    unhide_files,
)
from lidarkit.logger_handler import Flag, LoggerHandler, LogPushRequest

log = logging.getLogger(__name__)

STATUS_SUCCESS = 0

REALTIME_LOG = 0
EXCEPTION_LOG = 1

MAX_EXCEPTION_LOG_CACHE_SIZE_MB = 200
EXCEPTION_LOG_CACHE_RATIO = 1
REALTIME_LOG_CACHE_RATIO = 3
MAX_LOG_CACHE_SIZE_MB = 1_000_000_000

_MIB = 1024 * 1024

_FLAG_ACK = 1 << 0
_FLAG_CREATE = 1 << 1
_FLAG_STOP = 1 << 2

LoggerCallback = Callable[[int, Any], None]


class _LoggerCommands(Protocol):
    """Sends log-related commands to a lidar."""

    def enable_logger(
        self, handle: int, log_type: int, enable: bool, callback: LoggerCallback | None
    ) -> Any: ...

    def ack_log_push(self, handle: int, response: dict[str, int]) -> Any: ...


@dataclass
class DeviceInfo:
    """What the log store needs to know about a detected lidar."""

    sn: str
    dev_type: int = 0
    lidar_ip: str = ""
    cmd_port: int = 0


def split_cache_sizes(cache_size_mb: int) -> tuple[int, int]:
    """Split a total cache size in MB into (realtime, exception) limits in bytes.

    The exception log never gets more than 200 MB; otherwise the space is
    shared 3:1 between realtime and exception logs.
    """
    total_ratio = EXCEPTION_LOG_CACHE_RATIO + REALTIME_LOG_CACHE_RATIO
    threshold = MAX_EXCEPTION_LOG_CACHE_SIZE_MB * total_ratio // EXCEPTION_LOG_CACHE_RATIO
    if cache_size_mb > threshold:
        exception = MAX_EXCEPTION_LOG_CACHE_SIZE_MB * _MIB
        realtime = (cache_size_mb - MAX_EXCEPTION_LOG_CACHE_SIZE_MB) * _MIB
    else:
        realtime = (cache_size_mb * REALTIME_LOG_CACHE_RATIO // total_ratio) * _MIB
        exception = (cache_size_mb * EXCEPTION_LOG_CACHE_RATIO // total_ratio) * _MIB
    return realtime, exception


class LoggerManager:
    """Routes log pushes from lidars to per-lidar writers and bounds disk usage."""

    cycle_delete_interval = 600.0

    def __init__(self, commands: _LoggerCommands) -> None:
        self._commands = commands
        self._enabled = False
        self._cycle_enabled = False
        self._root = "./"
        self._max_realtime = 150 * _MIB
        self._max_exception = 50 * _MIB
        self._cycle_thread: threading.Thread | None = None
        self._cond = threading.Condition()
        self._wake = False
        self._devices: dict[int, DeviceInfo] = {}
        self._handlers: dict[int, LoggerHandler] = {}
        self._destroyed = False

    @property
    def log_root_path(self) -> str:
        return self._root

    @property
    def cache_limits(self) -> tuple[int, int]:
        """Current (realtime, exception) cache limits in bytes."""
        return self._max_realtime, self._max_exception

    def init(self, cfg: LoggerCfg | None) -> None:
        """Enable logging as ``cfg`` asks; raises OSError if the log directory cannot be made."""
        if cfg is None or not cfg.lidar_log_enable:
            self._enabled = False
            return
        if cfg.lidar_log_cache_size == 0 or cfg.lidar_log_cache_size > MAX_LOG_CACHE_SIZE_MB:
            self._enabled = False
            return

        self._enabled = True
        self._max_realtime, self._max_exception = split_cache_sizes(cfg.lidar_log_cache_size)

        root = os.path.join(cfg.lidar_log_path, "lidar_log")
        if not directory_exists(root):
            try:
                make_directory(root)
            except OSError:
                log.error("cannot create directory %s", root)
                raise
        self._root = root

        try:
            unhide_files(cfg.lidar_log_path)
        except (OSError, ValueError) as exc:
            log.error("changing hidden files to normal files failed: %s", exc)

        self._cycle_enabled = True
        self._cycle_thread = threading.Thread(
            target=self._cycle_delete_loop, name="lidar-log-cycle-delete", daemon=True
        )
        self._cycle_thread.start()

    def log_enable(self) -> bool:
        """Whether log collection is enabled."""
        return self._enabled

    def add_device(self, handle: int, info: DeviceInfo) -> None:
        """Remember a lidar; a handle already known keeps its first description."""
        self._devices.setdefault(handle, info)

    def remove_device(self, handle: int) -> None:
        self._devices.pop(handle, None)

    def start_logger(self, handle: int, log_type: int, callback: LoggerCallback | None) -> Any:
        """Ask a lidar to start pushing logs of ``log_type``."""
        if not self._enabled:
            log.info("logger disabled")
            return STATUS_SUCCESS
        log.info("start logger, handle %d, log type %d", handle, log_type)
        return self._commands.enable_logger(handle, log_type, True, callback)

    def stop_logger(self, handle: int, log_type: int, callback: LoggerCallback | None) -> Any:
        """Ask a lidar to stop pushing logs of ``log_type``."""
        log.info("stop logger, handle %d, log type %d", handle, log_type)
        return self._commands.enable_logger(handle, log_type, False, callback)

    def handle_push(self, handle: int, request: LogPushRequest) -> None:
        """Process one log chunk pushed by a lidar."""
        if not self._enabled:
            return
        flag = request.flag
        if flag & _FLAG_ACK:
            self._commands.ack_log_push(
                handle,
                {
                    "ret_code": 0,
                    "log_type": request.log_type,
                    "file_index": request.file_index,
                    "trans_index": request.trans_index,
                },
            )
        if flag & _FLAG_CREATE:
            self._on_create(handle, request)
        elif flag & _FLAG_STOP:
            self._on_stopped(handle, request)
        else:
            self._on_transfer(handle, request)

    def _on_create(self, handle: int, request: LogPushRequest) -> None:
        handler = self._handlers.get(handle)
        if handler is None:
            device = self._devices.get(handle)
            if device is None:
                log.error("log type %d: unknown lidar %d", request.log_type, handle)
                return
            handler = LoggerHandler(self._root, device.sn)
            handler.start()
            self._handlers[handle] = handler
        handler.store_log_bag(request, Flag.CREATE_FILE)

    def _on_stopped(self, handle: int, request: LogPushRequest) -> None:
        handler = self._handlers.get(handle)
        if handler is None:
            log.info("log type %d stopped, but no file was created", request.log_type)
            return
        handler.store_log_bag(request, Flag.END_FILE)
        with self._cond:
            self._wake = True
            self._cond.notify()

    def _on_transfer(self, handle: int, request: LogPushRequest) -> None:
        handler = self._handlers.get(handle)
        if handler is None:
            log.error("log type %d: file was not created", request.log_type)
            return
        handler.store_log_bag(request, Flag.TRANSFER_DATA)

    def _trim(self, path: str, limit: int) -> list[str]:
        removed: list[str] = []
        if not directory_exists(path) or dir_total_size(path) <= limit:
            return removed
        try:
            files = collect_file_names(path)
        except OSError:
            log.error("cannot get file names in directory %s", path)
            return removed
        for _, name in files:
            if dir_total_size(path) <= limit:
                break
            target = os.path.join(path, name)
            try:
                os.remove(target)
                removed.append(target)
            except OSError as exc:
                log.warning("cannot remove %s: %s", target, exc)
        return removed

    def cycle_delete_once(self) -> list[str]:
        """Delete the oldest log files until each log type fits its cache; return removed paths."""
        realtime_path = os.path.join(self._root, f"type_{REALTIME_LOG}")
        exception_path = os.path.join(self._root, f"type_{EXCEPTION_LOG}")
        removed = self._trim(realtime_path, self._max_realtime)
        removed.extend(self._trim(exception_path, self._max_exception))
        return removed

    def _cycle_delete_loop(self) -> None:
        while self._cycle_enabled:
            with self._cond:
                self._cond.wait_for(lambda: self._wake, timeout=self.cycle_delete_interval)
                try:
                    self.cycle_delete_once()
                except OSError as exc:
                    log.error("cycle delete failed: %s", exc)
                self._wake = False

    def _stop_all_loggers(self) -> None:
        if not self._enabled:
            return
        for handle in list(self._devices):
            self.stop_logger(handle, REALTIME_LOG, None)

    def destroy(self) -> None:
        """Stop every writer and background thread and make finished files visible."""
        if self._destroyed:
            return
        self._cycle_enabled = False
        with self._cond:
            self._wake = True
            self._cond.notify()
        if self._cycle_thread is not None:
            self._cycle_thread.join()
            self._cycle_thread = None

        for handler in self._handlers.values():
            handler.stop()
        self._handlers.clear()

        self._stop_all_loggers()
        if self._enabled:
            try:
                unhide_files(self._root)
            except (OSError, ValueError) as exc:
                log.error("changing hidden files to normal files failed: %s", exc)
        self._enabled = False
        self._destroyed = True