"""Tracing helpers for strategy and lookup stages."""
from __future__ import annotations

import contextlib
import time
import uuid
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bound_contextvars


def _logger():
    return structlog.get_logger("locator.trace")


@contextlib.contextmanager
def trace_context(*, operation: str, request_id: Optional[str] = None) -> Iterator[str]:
    """Bind request_id and operation for the block, restoring any previous values on exit."""
    request_id = request_id or uuid.uuid4().hex[:12]
    with bound_contextvars(request_id=request_id, operation=operation):
        _logger().debug("trace_context", request_id=request_id, operation=operation)
        yield request_id


@contextlib.contextmanager
def span(*, name: str, strategy: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, strategy=strategy, elapsed_ms=elapsed_ms)


def log_retry(attempt: int, *, service: str, reason: str) -> None:
    _logger().warning("ip_lookup_retry", attempt=attempt, service=service, reason=reason)


def log_strategy_result(*, strategy: str, latitude: float, longitude: float, accuracy_m: float) -> None:
    _logger().info(
        "strategy_result",
        strategy=strategy,
        latitude=round(latitude, 6),
        longitude=round(longitude, 6),
        accuracy_m=round(accuracy_m, 1),
    )


def log_strategy_failed(*, strategy: str, reason: str) -> None:
    _logger().warning("strategy_failed", strategy=strategy, reason=reason)
