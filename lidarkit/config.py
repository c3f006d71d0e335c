"""Parsing of the JSON configuration that describes lidars, host network and logging."""

from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

log = logging.getLogger(__name__)

_UINT32_MAX = 0xFFFFFFFF


class ConfigError(ValueError):
    """Raised when a configuration document is missing data or holds the wrong types."""


class DeviceType(enum.IntEnum):
    """Lidar families that may appear as top-level sections of the configuration."""

    MID360 = 9
    HAP = 10


@dataclass
class LidarNetInfo:
    """Ports on the lidar side, plus the lidar address when it is known up front."""

    lidar_ipaddr: str = ""
    cmd_data_port: int = 0
    push_msg_port: int = 0
    point_data_port: int = 0
    imu_data_port: int = 0
    log_data_port: int = 0


@dataclass
class HostNetInfo:
    """Addresses and ports on the host side."""

    host_ip: str = ""
    multicast_ip: str = ""
    cmd_data_port: int = 0
    push_msg_port: int = 0
    point_data_port: int = 0
    imu_data_port: int = 0
    log_data_port: int = 0


@dataclass
class LidarCfg:
    """Complete network configuration for one lidar, or one family of lidars."""

    device_type: DeviceType
    lidar_net_info: LidarNetInfo = field(default_factory=LidarNetInfo)
    host_net_info: HostNetInfo = field(default_factory=HostNetInfo)


@dataclass
class LoggerCfg:
    """Settings of the on-host lidar log store."""

    lidar_log_enable: bool = False
    lidar_log_cache_size: int = 0
    lidar_log_path: str = "./"


@dataclass
class FrameworkCfg:
    """Whether this instance acts as the master or a slave."""

    master_sdk: bool = True


@dataclass
class ParsedConfig:
    """Everything read from a configuration document."""

    lidars: list[LidarCfg] = field(default_factory=list)
    custom_lidars: list[LidarCfg] = field(default_factory=list)
    logger: LoggerCfg = field(default_factory=LoggerCfg)
    framework: FrameworkCfg = field(default_factory=FrameworkCfg)


_PORT_NAMES = (
    "cmd_data_port",
    "push_msg_port",
    "point_data_port",
    "imu_data_port",
    "log_data_port",
)


def _is_uint(value: Any) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and 0 <= value <= _UINT32_MAX
    )


def _require_object(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{what} is not an object")
    return value


def _read_ports(obj: Mapping[str, Any], what: str) -> dict[str, int]:
    ports = {}
    for name in _PORT_NAMES:
        value = obj.get(name)
        if not _is_uint(value):
            raise ConfigError(f"{what}: has no {name} member or {name} is not uint")
        # Ports are 16-bit on the wire.
        ports[name] = value & 0xFFFF
    return ports


def _parse_lidar_net_info(section: Mapping[str, Any], lidar_ipaddr: str) -> LidarNetInfo:
    obj = section.get("lidar_net_info")
    if not isinstance(obj, dict):
        raise ConfigError("lidar_net_info is missing or is not an object")
    return LidarNetInfo(lidar_ipaddr=lidar_ipaddr, **_read_ports(obj, "lidar_net_info"))


def _parse_host_net_info(obj: Any) -> HostNetInfo:
    obj = _require_object(obj, "host_net_info entry")
    if "host_ip" not in obj and "cmd_data_ip" not in obj:
        raise ConfigError("host_net_info has neither host_ip nor cmd_data_ip")
    if "host_ip" in obj and not isinstance(obj["host_ip"], str):
        raise ConfigError("host_ip is not a string")
    if "cmd_data_ip" in obj and not isinstance(obj["cmd_data_ip"], str):
        raise ConfigError("cmd_data_ip is not a string")

    host_ip = obj.get("host_ip", obj.get("cmd_data_ip", ""))

    multicast_ip = obj.get("multicast_ip", "")
    if not isinstance(multicast_ip, str):
        raise ConfigError("multicast_ip is not a string")

    return HostNetInfo(
        host_ip=host_ip,
        multicast_ip=multicast_ip,
        **_read_ports(obj, "host_net_info"),
    )


def _parse_typed_cfg(
    section: Mapping[str, Any],
    host_obj: Any,
    device_type: DeviceType,
    lidar_ipaddr: str = "",
) -> LidarCfg:
    return LidarCfg(
        device_type=device_type,
        lidar_net_info=_parse_lidar_net_info(section, lidar_ipaddr),
        host_net_info=_parse_host_net_info(host_obj),
    )


def _parse_section(section: Mapping[str, Any], device_type: DeviceType, result: ParsedConfig) -> None:
    host = section.get("host_net_info")
    if isinstance(host, list):
        for entry in host:
            entry = _require_object(entry, "host_net_info entry")
            lidar_ips = entry.get("lidar_ip")
            if not isinstance(lidar_ips, list):
                result.lidars.append(_parse_typed_cfg(section, entry, device_type))
                continue
            for ip in lidar_ips:
                if not isinstance(ip, str):
                    raise ConfigError("lidar_ip entry is not a string")
                result.custom_lidars.append(_parse_typed_cfg(section, entry, device_type, ip))
    elif isinstance(host, dict):
        result.lidars.append(_parse_typed_cfg(section, host, device_type))
    else:
        raise ConfigError(
            f"{device_type.name}: host_net_info is missing or is neither an object nor an array"
        )


def _parse_framework(doc: Mapping[str, Any]) -> FrameworkCfg:
    if "master_sdk" not in doc:
        log.info("master/slave mode defaults to master")
        return FrameworkCfg(master_sdk=True)
    value = doc["master_sdk"]
    if not isinstance(value, bool):
        raise ConfigError("master_sdk is not a boolean")
    return FrameworkCfg(master_sdk=value)


def _parse_logger(doc: Mapping[str, Any]) -> LoggerCfg:
    path = doc.get("lidar_log_path")
    if "lidar_log_enable" not in doc:
        cfg = LoggerCfg(lidar_log_enable=False, lidar_log_cache_size=0, lidar_log_path="./")
        if isinstance(path, str):
            cfg.lidar_log_path = path
        log.info("lidar logger disabled")
        return cfg

    enable = doc["lidar_log_enable"]
    if not isinstance(enable, bool):
        raise ConfigError("lidar_log_enable is not a boolean")
    cache_size = doc.get("lidar_log_cache_size_MB")
    if not _is_uint(cache_size):
        raise ConfigError("lidar_log_cache_size_MB is missing or is not uint")
    if not isinstance(path, str):
        raise ConfigError("lidar_log_path is missing or is not a string")
    cfg = LoggerCfg(lidar_log_enable=enable, lidar_log_cache_size=cache_size, lidar_log_path=path)
    log.info(
        "lidar log cfg: enable=%s cache_size_MB=%d path=%s",
        cfg.lidar_log_enable,
        cfg.lidar_log_cache_size,
        cfg.lidar_log_path,
    )
    return cfg


def parse_config(doc: Any) -> ParsedConfig:
    """Build a ParsedConfig from an already decoded JSON document."""
    doc = _require_object(doc, "configuration document")
    result = ParsedConfig(framework=_parse_framework(doc), logger=_parse_logger(doc))
    for device_type in (DeviceType.HAP, DeviceType.MID360):
        section = doc.get(device_type.name)
        if isinstance(section, dict):
            _parse_section(section, device_type, result)
    return result


def _reject_constant(name: str) -> Any:
    raise ConfigError(f"invalid JSON constant {name}")


def parse_config_file(path: str | os.PathLike[str]) -> ParsedConfig:
    """Read and parse the JSON configuration file at ``path``."""
    try:
        with open(path, "rb") as fh:
            raw = fh.read()
    except OSError as exc:
        raise ConfigError(f"cannot open config file {os.fspath(path)!r}: {exc}") from exc
    try:
        doc = json.loads(raw, parse_constant=_reject_constant)
    except (ValueError, UnicodeDecodeError) as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(f"config file is not valid JSON: {exc}") from exc
    return parse_config(doc)