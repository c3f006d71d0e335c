"""Consistency checks on parsed lidar configurations."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from lidarkit.config import DeviceType, LidarCfg, LidarNetInfo

log = logging.getLogger(__name__)

MID360_CMD_PORT = 56100
MID360_PUSH_MSG_PORT = 56200
MID360_POINT_CLOUD_PORT = 56300
MID360_IMU_DATA_PORT = 56400
MID360_LOG_PORT = 56500

# Mid-360 lidars only ever talk on these fixed ports.
_MID360_PORTS = {
    "cmd_data_port": MID360_CMD_PORT,
    "push_msg_port": MID360_PUSH_MSG_PORT,
    "point_data_port": MID360_POINT_CLOUD_PORT,
    "imu_data_port": MID360_IMU_DATA_PORT,
    "log_data_port": MID360_LOG_PORT,
}

_MULTICAST_LOW = 0xE0000000
_MULTICAST_HIGH = 0xEFFFFFFF


class ParamsError(ValueError):
    """Raised when a set of lidar configurations is inconsistent."""


def ip_to_bytes(ip: str) -> bytes:
    """Convert a dotted IPv4 address to its four bytes, most significant first."""
    parts = ip.split(".")
    if len(parts) != 4:
        raise ParamsError(f"invalid IPv4 address: {ip!r}")
    octets = []
    for part in parts:
        if not part.isdigit() or not part.isascii():
            raise ParamsError(f"invalid IPv4 address: {ip!r}")
        value = int(part)
        if value > 255:
            raise ParamsError(f"invalid IPv4 address: {ip!r}")
        octets.append(value)
    return bytes(octets)


def _check_lidar_ips(lidars: Sequence[LidarCfg], custom_lidars: Sequence[LidarCfg]) -> None:
    seen: set[str] = set()
    for cfg in lidars:
        ip = cfg.lidar_net_info.lidar_ipaddr
        if not ip:
            continue
        if ip in seen:
            raise ParamsError(f"lidar ip conflict: {ip}")
        seen.add(ip)

    for cfg in custom_lidars:
        ip = cfg.lidar_net_info.lidar_ipaddr
        if not ip:
            raise ParamsError("custom lidar ip address is empty")
        if ip in seen:
            raise ParamsError(f"lidar ip conflict: {ip}")
        seen.add(ip)


def _fix_ports(device_type: int, net_info: LidarNetInfo) -> None:
    if device_type != DeviceType.MID360:
        return
    for name, required in _MID360_PORTS.items():
        if getattr(net_info, name) != required:
            log.error("Mid360 lidar %s must be %d", name, required)
            setattr(net_info, name, required)


def _check_multicast(cfg: LidarCfg, label: str) -> None:
    multicast_ip = cfg.host_net_info.multicast_ip
    if not multicast_ip:
        log.info("%s: point cloud and IMU data unicast is enabled", label)
        return
    value = int.from_bytes(ip_to_bytes(multicast_ip), "big")
    if value <= _MULTICAST_LOW or value > _MULTICAST_HIGH:
        raise ParamsError(f"lidar multicast ip error: {multicast_ip}")
    log.info("%s: point cloud and IMU data multicast ip %s", label, multicast_ip)


def check_params(
    lidars: Iterable[LidarCfg] | None,
    custom_lidars: Iterable[LidarCfg] | None,
) -> None:
    """Validate the configurations, forcing Mid-360 ports to their fixed values.

    Raises ParamsError when the configurations cannot be used.
    """
    if lidars is None and custom_lidars is None:
        raise ParamsError("no lidar configuration given")
    lidars = list(lidars or [])
    custom_lidars = list(custom_lidars or [])
    if not lidars and not custom_lidars:
        raise ParamsError("all lidar configurations are empty")

    _check_lidar_ips(lidars, custom_lidars)

    for cfg in (*lidars, *custom_lidars):
        _fix_ports(cfg.device_type, cfg.lidar_net_info)

    for cfg in lidars:
        _check_multicast(cfg, f"device type {int(cfg.device_type)}")
    for cfg in custom_lidars:
        _check_multicast(cfg, f"lidar ip {cfg.lidar_net_info.lidar_ipaddr}")