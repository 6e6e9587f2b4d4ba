"""Location permission acquisition."""
from __future__ import annotations

import asyncio

import structlog

from locator.device.positioning import (
    DevicePositioning,
    PermissionState,
    PositionError,
    PositionErrorCode,
    PositionOptions,
)

LOGGER = structlog.get_logger(__name__)

PROBE_OPTIONS = PositionOptions(enable_high_accuracy=False, timeout=5.0, maximum_age=300.0)


async def ensure_permission(
    device: DevicePositioning,
    probe_options: PositionOptions = PROBE_OPTIONS,
) -> bool:
    """Return whether location access is available, prompting at most once.

    A known "denied" state answers False without prompting and "granted"
    answers True. Otherwise one cheap fix is requested purely to surface the
    OS/browser dialog: only an explicit permission error counts as a refusal,
    a timeout or missing fix just means the device had nothing to report yet.
    """
    state = await device.query_permission()
    LOGGER.debug("permission_state", state=state.value if state else None)
    if state is PermissionState.DENIED:
        return False
    if state is PermissionState.GRANTED:
        return True

    try:
        await asyncio.wait_for(
            device.get_current_position(probe_options),
            timeout=probe_options.timeout,
        )
    except PositionError as exc:
        if exc.code == PositionErrorCode.PERMISSION_DENIED:
            LOGGER.info("permission_refused")
            return False
        LOGGER.info("permission_probe_inconclusive", reason=exc.code.name.lower())
    except asyncio.TimeoutError:
        LOGGER.info("permission_probe_inconclusive", reason="timeout")
    return True
