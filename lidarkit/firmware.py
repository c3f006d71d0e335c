"""Firmware package files: header layout, checksum and loading."""

from __future__ import annotations

import enum
import logging
import os
import struct
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

MD5_SIGNATURE_LENGTH = 16
ENL_FILE_VERSION_V2 = 0x02000000
ENL_FILE_VERSION_V3 = 0x03000000

GENERAL_TRY_COUNT_LIMIT = 10
GET_PROCESS_TRY_COUNT_LIMIT = 30
GET_PROGRESS_TRY_COUNT_LIMIT = 10

_HEADER_STRUCT = struct.Struct("<IIIBBB2sBH128s128sQH")
HEADER_SIZE = _HEADER_STRUCT.size
TAIL_SIZE = MD5_SIGNATURE_LENGTH
MIN_FILE_SIZE = HEADER_SIZE + TAIL_SIZE + 1


class FirmwareType(enum.IntEnum):
    MULTI_APP = 0
    APP = 1
    LOADER = 2
    UNKNOWN = 3


class FirmwareDeviceType(enum.IntEnum):
    HUB = 0
    LIDAR_MID40 = 1
    LIDAR_TELE = 2
    LIDAR_HORIZON = 3
    LIDAR_HUB_V2 = 4
    LIDAR_MID_LITE = 5
    LIDAR_MID70 = 6
    LIDAR_AVIA = 7
    LIDAR_XXX1 = 8
    LIDAR_XXX2 = 9
    LIDAR_HAP = 10
    UNKNOWN = 11


class RequestUpgradeReturnCode(enum.IntEnum):
    EVERYTHING_IS_OK = 0
    FIRMWARE_OUT_OF_LENGTH = 1
    SYSTEM_IS_NOT_READY = 2
    FIRMWARE_TYPE_MISMATCH = 3
    UPGRADE_STATE_MISMATCH = 4


class FirmwareError(ValueError):
    """Raised when a firmware package cannot be read or is malformed."""


def _make_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0x8408 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _make_table()


def crc16_mcrf4xx(data: bytes, crc: int = 0xFFFF) -> int:
    """CRC-16/MCRF4XX of ``data``, continuing from ``crc``."""
    crc &= 0xFFFF
    for byte in data:
        crc = (crc >> 8) ^ _CRC_TABLE[(crc ^ byte) & 0xFF]
    return crc


@dataclass
class FirmwareHeader:
    """Fixed-size header at the start of a firmware package."""

    file_version: int = 0
    firmware_version: int = 0
    firmware_length: int = 0
    firmware_type: int = 0
    device_type: int = 0
    encrypt_type: int = 0
    rsvd: bytes = bytes(2)
    checksum_type: int = 0
    checksum_length: int = 0
    checksum: bytes = field(default=bytes(128))
    hw_whitelist: bytes = field(default=bytes(128))
    modify_time: int = 0
    header_checksum: int = 0

    @classmethod
    def unpack(cls, data: bytes) -> FirmwareHeader:
        """Decode a header from exactly HEADER_SIZE bytes."""
        if len(data) != HEADER_SIZE:
            raise FirmwareError(f"header must be {HEADER_SIZE} bytes, got {len(data)}")
        return cls(*_HEADER_STRUCT.unpack(bytes(data)))

    def pack(self) -> bytes:
        """Encode the header as it is laid out in the package."""
        try:
            return _HEADER_STRUCT.pack(
                self.file_version,
                self.firmware_version,
                self.firmware_length,
                self.firmware_type,
                self.device_type,
                self.encrypt_type,
                bytes(self.rsvd),
                self.checksum_type,
                self.checksum_length,
                bytes(self.checksum),
                bytes(self.hw_whitelist),
                self.modify_time,
                self.header_checksum,
            )
        except struct.error as exc:
            raise FirmwareError(f"header field out of range: {exc}") from exc


@dataclass
class Firmware:
    """A loaded firmware package: header, image and trailing signature."""

    header: FirmwareHeader
    data: bytes
    tail: bytes
    file_size: int

    @property
    def package_version(self) -> int:
        return self.header.file_version

    @classmethod
    def from_bytes(cls, data: bytes) -> Firmware:
        """Parse a package, verifying the header checksum."""
        raw = bytes(data)
        size = len(raw)
        if size < MIN_FILE_SIZE:
            raise FirmwareError("firmware file size is too small")
        header = FirmwareHeader.unpack(raw[:HEADER_SIZE])
        log.info("firmware is for device type %d", header.device_type)
        crc = crc16_mcrf4xx(raw[: HEADER_SIZE - 2])
        if crc != header.header_checksum:
            raise FirmwareError(
                f"header checksum error: computed {crc:04x}, stored {header.header_checksum:04x}"
            )
        end = HEADER_SIZE + header.firmware_length
        body = raw[HEADER_SIZE:end]
        tail = raw[end : end + TAIL_SIZE]
        if len(body) < header.firmware_length or len(tail) < TAIL_SIZE:
            log.warning("firmware data truncated, read %d bytes", size - HEADER_SIZE)
        else:
            log.info("all firmware data read, image size %d", header.firmware_length)
        return cls(header=header, data=body, tail=tail, file_size=size)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> Firmware:
        """Load a package from disk."""
        try:
            with open(path, "rb") as fh:
                raw = fh.read()
        except OSError as exc:
            raise FirmwareError(f"cannot open firmware file {os.fspath(path)!r}: {exc}") from exc
        return cls.from_bytes(raw)