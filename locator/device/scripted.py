"""Device implementation that replays a recorded or hand-written track."""
from __future__ import annotations

import asyncio
import itertools
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, Union

import yaml

from locator.device.positioning import (
    DevicePosition,
    ErrorCallback,
    PermissionState,
    PositionCallback,
    PositionError,
    PositionErrorCode,
    PositionOptions,
)

HANG = "hang"

Step = Union[DevicePosition, PositionError, str]

_ERROR_CODES = {
    "permission_denied": PositionErrorCode.PERMISSION_DENIED,
    "denied": PositionErrorCode.PERMISSION_DENIED,
    "position_unavailable": PositionErrorCode.POSITION_UNAVAILABLE,
    "unavailable": PositionErrorCode.POSITION_UNAVAILABLE,
    "timeout": PositionErrorCode.TIMEOUT,
}


class ScriptedDevice:
    """Answers position requests from a fixed queue of steps.

    One-shot requests consume ``fixes`` in order: a DevicePosition is
    returned, a PositionError is raised and ``HANG`` blocks until the caller's
    timeout cancels the request. An exhausted queue reports position
    unavailable. Watches deliver ``watch_steps`` every ``watch_interval_s``.
    Every call is recorded so tests can assert on what was asked.
    """

    def __init__(
        self,
        *,
        permission: Optional[PermissionState] = None,
        fixes: Iterable[Step] = (),
        watch_steps: Iterable[Step] = (),
        watch_interval_s: float = 0.0,
    ) -> None:
        self.permission = permission
        self._fixes: Deque[Step] = deque(fixes)
        self._watch_steps: List[Step] = list(watch_steps)
        self._watch_interval_s = watch_interval_s
        self._watch_ids = itertools.count(1)
        self._timers: Dict[int, List[asyncio.TimerHandle]] = {}
        self.permission_queries = 0
        self.position_requests: List[PositionOptions] = []
        self.watch_requests: List[PositionOptions] = []
        self.cleared_watches: List[int] = []

    @property
    def active_watches(self) -> List[int]:
        return list(self._timers)

    @property
    def device_calls(self) -> int:
        return len(self.position_requests) + len(self.watch_requests)

    async def query_permission(self) -> Optional[PermissionState]:
        self.permission_queries += 1
        return self.permission

    async def get_current_position(self, options: PositionOptions) -> DevicePosition:
        self.position_requests.append(options)
        if self.permission is PermissionState.DENIED:
            raise PositionError(PositionErrorCode.PERMISSION_DENIED)
        if not self._fixes:
            raise PositionError(PositionErrorCode.POSITION_UNAVAILABLE, "track exhausted")
        step = self._fixes.popleft()
        if step == HANG:
            await asyncio.Event().wait()
        if isinstance(step, PositionError):
            raise step
        return step

    def watch_position(
        self,
        on_position: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        self.watch_requests.append(options)
        watch_id = next(self._watch_ids)
        loop = asyncio.get_running_loop()
        steps: List[Step] = list(self._watch_steps)
        if self.permission is PermissionState.DENIED:
            steps = [PositionError(PositionErrorCode.PERMISSION_DENIED)]

        def deliver(step: Step) -> None:
            if isinstance(step, PositionError):
                on_error(step)
            elif isinstance(step, DevicePosition):
                on_position(step)

        self._timers[watch_id] = [
            loop.call_later(self._watch_interval_s * (idx + 1), deliver, step)
            for idx, step in enumerate(steps)
        ]
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        for timer in self._timers.pop(watch_id, []):
            timer.cancel()
        self.cleared_watches.append(watch_id)


def _parse_step(raw: object) -> Step:
    if raw == HANG:
        return HANG
    if isinstance(raw, dict):
        if "error" in raw:
            name = str(raw["error"]).strip().lower()
            if name not in _ERROR_CODES:
                raise ValueError(f"Unknown position error in track: {raw['error']!r}")
            return PositionError(_ERROR_CODES[name], str(raw.get("message", "")))
        try:
            return DevicePosition(
                latitude=float(raw["latitude"]),
                longitude=float(raw["longitude"]),
                accuracy_m=float(raw.get("accuracy_m", raw.get("accuracy", 0.0))),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid position in track: {raw!r}") from exc
    raise ValueError(f"Unsupported track step: {raw!r}")


def load_track(path: Path) -> ScriptedDevice:
    """Build a ScriptedDevice from a YAML track file."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Track {path} must be a mapping, got {type(data).__name__}")
    permission = data.get("permission")
    return ScriptedDevice(
        permission=PermissionState(permission) if permission else None,
        fixes=[_parse_step(item) for item in data.get("fixes", [])],
        watch_steps=[_parse_step(item) for item in data.get("watch", [])],
        watch_interval_s=float(data.get("watch_interval_s", 1.0)),
    )
