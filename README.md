# lidarkit

Host-side building blocks for working with networked lidar devices. The
package has no third-party dependencies.

## What is in it

- `lidarkit.config`
  - `parse_config_file(path)` reads a JSON configuration file.
  - `parse_config(doc)` does the same for an already decoded document.
  - Both return a `ParsedConfig`, which holds:
    - `lidars` and `custom_lidars`, lists of `LidarCfg`, each with a
      `DeviceType`, a `LidarNetInfo` and a `HostNetInfo`;
    - `logger`, a `LoggerCfg`;
    - `framework`, a `FrameworkCfg`.
  - Top-level `HAP` and `MID360` sections are read.
  - A `host_net_info` object gives one entry in `lidars`.
  - A `host_net_info` array gives one entry per element. An element that has a `lidar_ip` array gives one entry in `custom_lidars` for each listed address.
  - Missing members or members of the wrong type raise `ConfigError`. So does an unreadable or invalid file.

- `lidarkit.params_check`
  - `check_params(lidars, custom_lidars)` raises `ParamsError` in these cases:
    - both lists are missing or empty;
    - a lidar IP address appears twice;
    - a custom lidar has no IP address;
    - a multicast address is outside the multicast range.
  - It also resets Mid-360 lidar ports to their fixed values, in place.
  - `ip_to_bytes(ip)` converts a dotted IPv4 address to four bytes.

- `lidarkit.firmware`
  - `Firmware.from_file(path)` and `Firmware.from_bytes(data)` parse a firmware package into a `FirmwareHeader`, the image `data` and the trailing signature `tail`.
  - They verify the CRC-16/MCRF4XX header checksum. `crc16_mcrf4xx(data, crc)` computes that checksum.
  - `FirmwareHeader.unpack` and `FirmwareHeader.pack` convert the header layout.
  - Problems raise `FirmwareError`.

- `lidarkit.upgrader`
  - `LidarUpgrader(firmware, handle, commands)` runs the upgrade state machine for one device through these steps:
    1. request upgrade;
    2. transfer the image in 1024-byte chunks;
    3. complete the transfer;
    4. poll progress;
    5. reboot.
  - `start()` runs it on a background thread, and `wait(timeout)` blocks until it finishes or fails.
  - `is_complete()` and `is_error()` report the outcome.
  - Observers added with `add_progress_observer` are called as `observer(handle, UpgradeProgress)` after every event.

- `lidarkit.upgrade_manager`
  - `UpgradeManager(commands)` loads a package with `set_firmware_path`.
  - `upgrade(handles)` upgrades every handle, waits for all of them and returns `{handle: succeeded}`. The loaded firmware is then forgotten.

- `lidarkit.logger_handler`
  - `LoggerHandler(log_root_path, serial_num)` queues log chunks pushed by one device (`LogPushRequest`).
  - It writes them under `type_<log_type>/` as hidden `.<time>_<serial>_<type>_<index>.dat` files. Each file is renamed to its visible name when it is finished.

- `lidarkit.logger_manager`
  - `LoggerManager(commands)` is enabled by `init(LoggerCfg)`. It stores logs under `<lidar_log_path>/lidar_log/`.
  - It routes `handle_push(handle, request)` to one `LoggerHandler` per device registered with `add_device(handle, DeviceInfo)`.
  - It keeps the `type_0` (realtime) and `type_1` (exception) directories under their size limits.
    - `split_cache_sizes` shares the configured space 3:1 between the two directories, with at most 200 MB for exception logs.
    - Oldest files are deleted first, every ten minutes and whenever a file ends.
    - `cycle_delete_once()` runs one such pass.
  - `destroy()` stops all writers and makes finished files visible.

- `lidarkit.file_manager` holds the directory helpers used by the log store:
  - `dir_total_size`
  - `collect_file_names`
  - `unhide_file` and `unhide_files`
  - `delete_hidden_files`
  - `make_directory`
  - `directory_exists`

## Example

```python
from lidarkit.config import parse_config_file, ConfigError
from lidarkit.params_check import check_params, ParamsError

try:
    parsed = parse_config_file("lidar_config.json")
    check_params(parsed.lidars, parsed.custom_lidars)
except (ConfigError, ParamsError) as exc:
    print(f"bad configuration: {exc}")
```

```python
from lidarkit.firmware import Firmware, FirmwareError

try:
    firmware = Firmware.from_file("firmware.bin")
except FirmwareError as exc:
    print(f"cannot use firmware: {exc}")
else:
    print(firmware.header.device_type, firmware.header.firmware_length)
```

## The `commands` object

The upgrader and the log manager send nothing themselves. They call methods
on the `commands` object you pass in. Replies are delivered by calling the
given callback as `callback(status, response)`:

- `status` is `0` on success.
- `response` has a `ret_code` attribute.
- Progress replies also have a `progress` attribute.

For upgrades, `commands` must provide these methods:

- `start_upgrade(handle, request, callback)`
- `xfer_firmware(handle, request, callback)`
- `complete_xfer_firmware(handle, request, callback)`
- `get_upgrade_progress(handle, callback)`
- `request_reboot(handle, callback)`

In each case `request` is a dict of the request fields.

For log capture, `commands` must provide these methods:

- `enable_logger(handle, log_type, enable, callback)`
- `ack_log_push(handle, response)`

## What it does not do

There is no network transport, and no device discovery or command
protocol encoding. There is no point cloud or IMU data handling and no
command-line tool.

The package covers configuration, validation, log storage and the upgrade
state machine only. Talking to the devices is up to the `commands` object
you supply.

## Running the tests

```
pip install -e .[test]
pytest
```