"""
Correlation table for outstanding request/response pairs.

Every registered request is settled exactly once: by its response, by its
timeout, or by ``reject_all`` when the owning connection goes away.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from .errors import ConnectionClosedError, CorrelationTimeoutError
from .metrics import MetricsCollector

RequestId = Union[int, str]


@dataclass
class PendingCall:
    request_id: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    operation: str
    timeout: float


def _consume_exception(future: asyncio.Future) -> None:
    # Abandoned futures must not log "exception was never retrieved".
    if not future.cancelled():
        future.exception()


class CorrelationTable:
    def __init__(
        self,
        name: str,
        default_timeout: float = 10.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.name = name
        self.default_timeout = default_timeout
        self.metrics = metrics
        self._pending: Dict[str, PendingCall] = {}

    @staticmethod
    def next_id() -> str:
        return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"

    def register(
        self,
        request_id: RequestId,
        timeout: Optional[float] = None,
        operation: str = "request",
    ) -> asyncio.Future:
        """Track a request and return the future its response will settle."""
        key = str(request_id)
        if key in self._pending:
            raise ValueError(f"Request id already pending: {key}")

        loop = asyncio.get_running_loop()
        timeout = self.default_timeout if timeout is None else timeout
        future = loop.create_future()
        future.add_done_callback(_consume_exception)
        future.add_done_callback(lambda f: self._on_future_done(key, f))
        timer = loop.call_later(timeout, self._expire, key)
        self._pending[key] = PendingCall(key, future, timer, operation, timeout)
        return future

    def settle(self, request_id: RequestId, result: Any = None, error: Optional[BaseException] = None) -> bool:
        """
        Settle a pending request with a result or an error.

        Unknown ids (late responses, duplicates, responses after teardown) are
        counted and ignored; returns whether anything was settled.
        """
        key = str(request_id)
        pending = self._pending.pop(key, None)
        if pending is None:
            logger.debug(f"[{self.name}] unmatched response id={key}")
            if self.metrics:
                self.metrics.record_unmatched_response()
            return False

        pending.timer.cancel()
        if pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def reject_all(self, reason: str = "Connection closed") -> int:
        """Fail every outstanding request; returns how many were rejected."""
        pending_calls = list(self._pending.values())
        self._pending.clear()
        for pending in pending_calls:
            pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(ConnectionClosedError(reason))
        if pending_calls:
            logger.info(f"[{self.name}] rejected {len(pending_calls)} pending request(s): {reason}")
        return len(pending_calls)

    def pending_ids(self) -> List[str]:
        return list(self._pending.keys())

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: RequestId) -> bool:
        return str(request_id) in self._pending

    def _expire(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        logger.warning(f"[{self.name}] {pending.operation} timed out: id={key}")
        if self.metrics:
            self.metrics.record_correlation_timeout()
        if not pending.future.done():
            pending.future.set_exception(
                CorrelationTimeoutError(pending.operation, key, pending.timeout)
            )

    def _on_future_done(self, key: str, future: asyncio.Future) -> None:
        # Caller gave up (task cancelled): drop the entry and its timer.
        if not future.cancelled():
            return
        pending = self._pending.get(key)
        if pending is not None and pending.future is future:
            pending.timer.cancel()
            del self._pending[key]
