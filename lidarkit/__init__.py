"""Host-side lidar tools: configuration parsing, parameter checks, device log capture and firmware upgrade."""

__version__ = "0.1.0"