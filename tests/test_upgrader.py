from collections import deque
from types import SimpleNamespace

import pytest

from lidarkit.firmware import (
    ENL_FILE_VERSION_V2,
    ENL_FILE_VERSION_V3,
    GENERAL_TRY_COUNT_LIMIT,
    GET_PROCESS_TRY_COUNT_LIMIT,
    TAIL_SIZE,
    Firmware,
    FirmwareHeader,
    crc16_mcrf4xx,
)
from lidarkit.upgrader import (
    ERASE_FIRMWARE,
    LidarUpgrader,
    UpgradeEvent,
    UpgradeProgress,
    UpgradeState,
)


def make_firmware(image, file_version=ENL_FILE_VERSION_V2, checksum=bytes(128), checksum_length=0):
    header = FirmwareHeader(
        file_version=file_version,
        firmware_version=0x01020304,
        firmware_length=len(image),
        firmware_type=1,
        device_type=10,
        encrypt_type=2,
        checksum_type=1,
        checksum_length=checksum_length,
        checksum=checksum,
        hw_whitelist=bytes(range(128)),
        modify_time=1234567,
    )
    header.header_checksum = crc16_mcrf4xx(header.pack()[:-2])
    raw = header.pack() + image + bytes(TAIL_SIZE) + b"\x00"
    return Firmware.from_bytes(raw)


def ok(progress=100):
    return 0, SimpleNamespace(ret_code=0, progress=progress)


def fail():
    return 1, None


class FakeCommands:
    def __init__(self, sync=False):
        self.sync = sync
        self.calls = []
        self.pending = deque()
        self.responders = {}

    def _send(self, name, handle, request, callback):
        self.calls.append((name, handle, request))
        count = sum(1 for call in self.calls if call[0] == name)
        responder = self.responders.get(name, lambda n: ok())
        status, response = responder(count)
        if self.sync:
            callback(status, response)
        else:
            self.pending.append((callback, status, response))
        return 0

    def run(self):
        while self.pending:
            callback, status, response = self.pending.popleft()
            callback(status, response)

    def names(self, name):
        return [call for call in self.calls if call[0] == name]

    def start_upgrade(self, handle, request, callback):
        return self._send("start", handle, request, callback)

    def xfer_firmware(self, handle, request, callback):
        return self._send("xfer", handle, request, callback)

    def complete_xfer_firmware(self, handle, request, callback):
        return self._send("complete", handle, request, callback)

    def get_upgrade_progress(self, handle, callback):
        return self._send("progress", handle, None, callback)

    def request_reboot(self, handle, callback):
        return self._send("reboot", handle, None, callback)


def make_upgrader(firmware, commands, handle=7):
    upgrader = LidarUpgrader(firmware, handle, commands)
    upgrader.xfer_delay = 0
    upgrader.erase_retry_delay = 0
    return upgrader


def test_full_upgrade_sequence():
    image = bytes(i % 251 for i in range(2500))
    commands = FakeCommands()
    commands.responders["progress"] = lambda n: ok(40) if n == 1 else ok(100)
    upgrader = make_upgrader(make_firmware(image), commands)
    seen = []
    upgrader.add_progress_observer(lambda handle, p: seen.append((handle, p)))

    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()

    assert upgrader.is_complete()
    assert not upgrader.is_error()
    xfers = commands.names("xfer")
    assert [c[2]["offset"] for c in xfers] == [0, 1024, 2048]
    assert [c[2]["length"] for c in xfers] == [1024, 1024, 2500 - 2048]
    assert b"".join(c[2]["data"] for c in xfers) == image
    assert all(c[2]["encrypt_type"] == 2 for c in xfers)
    assert [p.event for _, p in seen] == [
        UpgradeEvent.REQUEST_UPGRADE,
        UpgradeEvent.XFER_FIRMWARE,
        UpgradeEvent.XFER_FIRMWARE,
        UpgradeEvent.XFER_FIRMWARE,
        UpgradeEvent.COMPLETE_XFER_FIRMWARE,
        UpgradeEvent.GET_UPGRADE_PROGRESS,
        UpgradeEvent.GET_UPGRADE_PROGRESS,
        UpgradeEvent.COMPLETE,
        UpgradeEvent.REINIT,
    ]
    assert seen[0] == (7, UpgradeProgress(UpgradeEvent.REQUEST_UPGRADE, 10))
    assert seen[-1][1].progress == 100
    assert len(commands.names("reboot")) == 1


def test_v2_start_request_fields():
    commands = FakeCommands()
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    request = commands.calls[0][2]
    assert commands.calls[0][1] == 7
    assert request == {
        "firmware_type": 1,
        "firmware_length": 10,
        "encrypt_type": 2,
        "dev_type": 10,
    }
    assert upgrader.state == UpgradeState.REQUEST


def test_v3_start_request_carries_version_and_whitelist():
    commands = FakeCommands()
    upgrader = make_upgrader(make_firmware(bytes(10), file_version=ENL_FILE_VERSION_V3), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    request = commands.calls[0][2]
    assert request["firmware_version"] == 0x01020304
    assert request["firmware_buildtime"] == 1234567
    assert request["hw_whitelist"] == bytes(range(128))


def test_complete_xfer_sends_truncated_checksum():
    checksum = bytes(range(1, 129))
    commands = FakeCommands()
    firmware = make_firmware(bytes(5), checksum=checksum, checksum_length=16)
    upgrader = make_upgrader(firmware, commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    request = commands.names("complete")[0][2]
    assert request["checksum_length"] == 16
    assert request["checksum"] == checksum[:16]
    assert request["checksum_type"] == 1


def test_start_timeout_gives_up_after_limit():
    commands = FakeCommands()
    commands.responders["start"] = lambda n: fail()
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    assert upgrader.is_error()
    assert upgrader.state == UpgradeState.ERR
    assert len(commands.names("start")) == GENERAL_TRY_COUNT_LIMIT
    assert commands.names("xfer") == []


def test_start_not_ready_is_retried():
    commands = FakeCommands()
    commands.responders["start"] = lambda n: (
        (0, SimpleNamespace(ret_code=2)) if n == 1 else ok()
    )
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    assert len(commands.names("start")) == 2
    assert upgrader.is_complete()


def test_start_erase_firmware_is_retried():
    commands = FakeCommands()
    commands.responders["start"] = lambda n: (
        (0, SimpleNamespace(ret_code=ERASE_FIRMWARE)) if n < 3 else ok()
    )
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    assert len(commands.names("start")) == 3
    assert upgrader.is_complete()


def test_start_other_ret_code_is_error():
    commands = FakeCommands()
    commands.responders["start"] = lambda n: (0, SimpleNamespace(ret_code=3))
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    assert upgrader.is_error()
    assert len(commands.names("start")) == 1


def test_xfer_ret_code_is_error():
    commands = FakeCommands()
    commands.responders["xfer"] = lambda n: (0, SimpleNamespace(ret_code=1))
    seen = []
    upgrader = make_upgrader(make_firmware(bytes(3000)), commands)
    upgrader.add_progress_observer(lambda handle, p: seen.append(p))
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    assert upgrader.is_error()
    assert len(commands.names("xfer")) == 1
    assert seen[-1] == UpgradeProgress(UpgradeEvent.ERR, 100)


def test_xfer_timeout_retries_same_offset():
    commands = FakeCommands()
    commands.responders["xfer"] = lambda n: fail() if n == 1 else ok()
    upgrader = make_upgrader(make_firmware(bytes(100)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    offsets = [c[2]["offset"] for c in commands.names("xfer")]
    assert offsets == [0, 0]
    assert upgrader.is_complete()


def test_complete_xfer_timeout_gives_up():
    commands = FakeCommands()
    commands.responders["complete"] = lambda n: fail()
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    assert upgrader.is_error()
    assert len(commands.names("complete")) == GENERAL_TRY_COUNT_LIMIT


def test_progress_timeout_uses_longer_limit():
    commands = FakeCommands()
    commands.responders["progress"] = lambda n: fail()
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    assert upgrader.is_error()
    assert len(commands.names("progress")) == GET_PROCESS_TRY_COUNT_LIMIT


def test_reboot_timeout_still_finishes():
    commands = FakeCommands()
    commands.responders["reboot"] = lambda n: fail()
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    commands.run()
    assert upgrader.is_complete()
    assert not upgrader.is_error()
    assert len(commands.names("reboot")) == GENERAL_TRY_COUNT_LIMIT


def test_error_event_moves_to_error_state():
    commands = FakeCommands()
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.REQUEST_UPGRADE, 10)
    upgrader.fsm_event(UpgradeEvent.ERR, 100)
    assert upgrader.state == UpgradeState.ERR
    assert upgrader.is_error()
    assert upgrader.wait(0)


def test_unknown_transition_keeps_state():
    commands = FakeCommands()
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.fsm_event(UpgradeEvent.COMPLETE, 100)
    assert upgrader.state == UpgradeState.IDLE
    assert commands.calls == []


def test_xfer_beyond_length_raises():
    commands = FakeCommands()
    upgrader = make_upgrader(make_firmware(b""), commands)
    with pytest.raises(ValueError):
        upgrader.xfer_firmware()
    assert commands.names("xfer") == []


def test_start_and_wait_in_background():
    commands = FakeCommands(sync=True)
    upgrader = make_upgrader(make_firmware(bytes(2048)), commands)
    upgrader.start()
    assert upgrader.wait(5)
    assert upgrader.is_complete()
    assert [c[2]["offset"] for c in commands.names("xfer")] == [0, 1024]


def test_wait_times_out_without_replies():
    commands = FakeCommands()
    upgrader = make_upgrader(make_firmware(bytes(10)), commands)
    upgrader.start()
    assert upgrader.wait(0.2) is False
    assert upgrader.state == UpgradeState.REQUEST