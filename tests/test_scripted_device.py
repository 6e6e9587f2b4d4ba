import asyncio
from pathlib import Path

import pytest

from locator.device.positioning import (
    DevicePosition,
    PermissionState,
    PositionError,
    PositionErrorCode,
    PositionOptions,
)
from locator.device.scripted import ScriptedDevice, load_track


def test_load_track_fixture():
    device = load_track(Path("tests/fixtures/tracks/batna_clinic.yaml"))

    async def _run():
        assert await device.query_permission() is PermissionState.GRANTED
        with pytest.raises(PositionError) as excinfo:
            await device.get_current_position(PositionOptions())
        assert excinfo.value.code is PositionErrorCode.TIMEOUT
        position = await device.get_current_position(PositionOptions())
        assert position.accuracy_m == 8
        with pytest.raises(PositionError) as excinfo:
            await device.get_current_position(PositionOptions())
        assert excinfo.value.code is PositionErrorCode.POSITION_UNAVAILABLE

    asyncio.run(_run())
    assert len(device.position_requests) == 3


def test_track_rejects_unknown_steps(tmp_path):
    path = tmp_path / "track.yaml"
    path.write_text("fixes:\n  - error: meteor\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unknown position error"):
        load_track(path)
    path.write_text("fixes:\n  - latitude: 35.5\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid position"):
        load_track(path)


def test_denied_device_refuses_everything():
    async def _run():
        errors = []
        device = ScriptedDevice(permission=PermissionState.DENIED, watch_steps=[DevicePosition(35.56, 6.175, 8)])
        with pytest.raises(PositionError):
            await device.get_current_position(PositionOptions())
        device.watch_position(lambda position: None, errors.append, PositionOptions())
        await asyncio.sleep(0.01)
        assert [error.code for error in errors] == [PositionErrorCode.PERMISSION_DENIED]

    asyncio.run(_run())


def test_track_must_be_a_mapping(tmp_path):
    path = tmp_path / "track.yaml"
    path.write_text("- latitude: 1\n", encoding="utf-8")
    with pytest.raises(ValueError, match="must be a mapping"):
        load_track(path)
