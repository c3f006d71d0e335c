"""Writing of log files pushed by a lidar into the on-host log store."""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import BinaryIO

from lidarkit.file_manager import directory_exists, make_directory, unhide_file

log = logging.getLogger(__name__)

_WRITE_INTERVAL = 0.1


class Flag(enum.IntEnum):
    """What a queued log chunk asks the handler to do."""

    CREATE_FILE = 0
    TRANSFER_DATA = 1
    END_FILE = 2


@dataclass
class LogPushRequest:
    """One log chunk as pushed by a lidar."""

    log_type: int
    file_index: int
    trans_index: int
    data: bytes = b""
    flag: int = 0

    @property
    def data_length(self) -> int:
        return len(self.data)


@dataclass
class WriteBuffer:
    """A log chunk waiting to be written to disk."""

    log_type: int
    flag: Flag
    file_index: int = 0
    trans_index: int = 0
    data: bytes = b""


@dataclass
class CurrentFileInfo:
    """State of the file currently being written for one log type."""

    flag: int = 0
    file_index: int = 0
    trans_index: int = 0
    fp: BinaryIO | None = None
    file_name: str = ""


def current_format_time() -> str:
    """Local time formatted the way log file names carry it."""
    return time.strftime("%Y-%m-%d_%H-%M-%S", time.localtime())


class LoggerHandler:
    """Queues log chunks of one lidar and writes them to per-type files.

    Files are written under a hidden name (leading dot) and renamed to their
    visible name once complete.
    """

    def __init__(self, log_root_path: str | os.PathLike[str], serial_num: str) -> None:
        self._root = os.fspath(log_root_path)
        self._serial = serial_num
        self._branch_paths: dict[int, str] = {}
        self._current: defaultdict[int, CurrentFileInfo] = defaultdict(CurrentFileInfo)
        self._queue: deque[WriteBuffer] = deque()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> LoggerHandler:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def start(self) -> None:
        """Start the background thread that flushes the queue to disk."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="lidar-logger", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background thread and close every open file."""
        if self._thread is not None:
            self._stop_event.set()
            self._thread.join()
            self._thread = None
        for info in self._current.values():
            if info.fp is not None:
                info.fp.close()
                info.fp = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.write()
            self._stop_event.wait(_WRITE_INTERVAL)

    def store_log_bag(self, req: LogPushRequest, flag: Flag) -> None:
        """Queue a pushed chunk with the action ``flag``."""
        log.info("transfer data length: %d", req.data_length)
        buffer = WriteBuffer(
            log_type=req.log_type,
            flag=Flag(flag),
            file_index=req.file_index,
            trans_index=req.trans_index,
            data=bytes(req.data),
        )
        with self._lock:
            self._queue.append(buffer)

    def create_file(self, write_buff: WriteBuffer) -> None:
        """Start a new hidden file, finishing any file still open for that type."""
        log_type = write_buff.log_type
        branch = os.path.join(self._root, f"type_{log_type}")
        self._branch_paths[log_type] = branch
        if not directory_exists(branch):
            try:
                make_directory(branch)
            except OSError:
                log.error("cannot create directory %s", branch)
                return

        info = self._current[log_type]
        if info.fp is not None:
            if info.trans_index + 1 != write_buff.trans_index:
                log.warning("end command of log file %d was lost", info.file_index)
            info.fp.close()
            info.fp = None
            unhide_file(branch, info.file_name)

        file_name = (
            f".{current_format_time()}_{self._serial}_{log_type}_{write_buff.file_index}.dat"
        )
        path = os.path.join(branch, file_name)
        log.info("file path: %s", path)
        try:
            info.fp = open(path, "ab")
            info.fp.write(write_buff.data)
            info.fp.flush()
        except OSError as exc:
            log.error("cannot write log file %s: %s", path, exc)
            if info.fp is not None:
                info.fp.close()
            info.fp = None
        info.flag = write_buff.flag
        info.file_index = write_buff.file_index
        info.trans_index = write_buff.trans_index
        info.file_name = file_name
        log.info("created file index %d", write_buff.file_index)

    def write_file(self, write_buff: WriteBuffer) -> None:
        """Append a chunk to the open file of its log type."""
        log_type = write_buff.log_type
        info = self._current[log_type]
        if info.file_index != write_buff.file_index:
            log.warning(
                "log type %d: file index mismatch, last %d, current %d",
                log_type,
                info.file_index,
                write_buff.file_index,
            )
            return
        if info.trans_index + 1 != write_buff.trans_index and write_buff.trans_index != 1:
            log.warning(
                "log type %d: trans index gap, last %d, current %d",
                log_type,
                info.trans_index,
                write_buff.trans_index,
            )
        if info.fp is not None:
            info.fp.write(write_buff.data)
            info.fp.flush()
        else:
            log.error(
                "no start-of-file command was received from the lidar, trans index %d",
                write_buff.trans_index,
            )
        info.flag = write_buff.flag
        info.trans_index = write_buff.trans_index

    def stop_file(self, write_buff: WriteBuffer) -> None:
        """Close the open file of the chunk's log type and make it visible."""
        log_type = write_buff.log_type
        info = self._current[log_type]
        if info.flag == Flag.END_FILE and info.trans_index + 1 != write_buff.trans_index:
            log.error("repeated end-of-file commands with discontinuous trans index")
        if info.fp is not None:
            info.fp.close()
            info.fp = None
            unhide_file(self._branch_paths[log_type], info.file_name)
        info.flag = write_buff.flag
        info.trans_index = write_buff.trans_index

    def write(self) -> None:
        """Process every queued chunk, dropping stale ones."""
        with self._lock:
            pending = list(self._queue)
            self._queue.clear()

        for buff in pending:
            info = self._current[buff.log_type]
            if buff.trans_index < info.trans_index and buff.flag != Flag.CREATE_FILE:
                log.debug("dropping stale chunk, trans index %d", buff.trans_index)
                continue
            if buff.flag == Flag.CREATE_FILE:
                self.create_file(buff)
            elif buff.flag == Flag.END_FILE:
                self.stop_file(buff)
            elif buff.flag == Flag.TRANSFER_DATA:
                self.write_file(buff)