"""Correlates outgoing JSON-RPC requests with their asynchronous responses."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .exceptions import ConnectionClosedError, JSONRPCErrorResponse, ProtocolError, RequestTimeoutError
from .messages import make_request

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = 30.0

ResultValidator = Callable[[Any], Any]


@dataclass
class PendingRequest:
    """An issued request awaiting exactly one outcome."""

    id: int
    method: str
    future: asyncio.Future[Any]
    validator: ResultValidator | None = None
    deadline: float | None = None
    timer: asyncio.TimerHandle | None = None


class RequestCorrelator:
    """Owns the request id sequence and the registry of in-flight requests.

    Each pending request ends exactly once: resolved by a matching response,
    failed by its deadline, or failed by :meth:`cancel_all`. Whatever happens
    later for that id is ignored.
    """

    def __init__(self, timeout: float | None = DEFAULT_REQUEST_TIMEOUT_S) -> None:
        self.timeout = timeout
        self._next_id = 0
        self._pending: dict[int, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def issue(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        validator: ResultValidator | None = None,
    ) -> tuple[dict[str, Any], asyncio.Future[Any]]:
        """Allocate the next id and register a pending request.

        Returns:
            The outbound JSON-RPC request and a future for its result.
        """
        loop = asyncio.get_running_loop()
        request_id = self._next_id
        self._next_id += 1

        pending = PendingRequest(
            id=request_id,
            method=method,
            future=loop.create_future(),
            validator=validator,
        )
        if self.timeout is not None:
            pending.deadline = loop.time() + self.timeout
            pending.timer = loop.call_later(self.timeout, self._expire, request_id)
        self._pending[request_id] = pending

        return make_request(method, params, request_id), pending.future

    def resolve(self, request_id: Any, message: dict[str, Any]) -> bool:
        """Complete the request matching ``request_id`` from a response message.

        Unknown ids (late, duplicate, or foreign responses) are ignored.

        Returns:
            True if a pending request was completed.
        """
        pending = self._pending.pop(request_id, None) if isinstance(request_id, int | str) else None
        if pending is None and isinstance(request_id, str) and request_id.isdigit():
            # Some servers echo numeric ids back as strings.
            pending = self._pending.pop(int(request_id), None)
        if pending is None:
            logger.debug("Ignoring response for unknown request id %r", request_id)
            return False

        self._cancel_timer(pending)
        future = pending.future
        if future.done():
            return False

        if "error" in message:
            future.set_exception(JSONRPCErrorResponse(message["error"], request_id=pending.id))
        elif "result" in message:
            result = message["result"]
            if pending.validator is not None:
                try:
                    result = pending.validator(result)
                except (ValidationError, TypeError, ValueError) as exc:
                    logger.error("Response validation error for request %s (%s): %s", pending.id, pending.method, exc)
                    future.set_exception(
                        ProtocolError(f"Invalid result for {pending.method} (request {pending.id}): {exc}"),
                    )
                    return True
            future.set_result(result)
        else:
            future.set_exception(ProtocolError(f"Response to request {pending.id} has neither result nor error"))
        return True

    def reject(self, request_id: int, exc: BaseException) -> bool:
        """Fail one pending request locally, e.g. when its POST failed."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        self._cancel_timer(pending)
        if not pending.future.done():
            pending.future.set_exception(exc)
        return True

    def discard(self, request_id: int) -> None:
        """Forget a request whose caller stopped waiting for it."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        self._cancel_timer(pending)
        pending.future.cancel()

    def cancel_all(self, reason: str = "Connection closed") -> int:
        """Fail every outstanding request immediately.

        Returns:
            The number of requests that were cancelled.
        """
        pending_requests = list(self._pending.values())
        self._pending.clear()
        for pending in pending_requests:
            self._cancel_timer(pending)
            if not pending.future.done():
                pending.future.set_exception(ConnectionClosedError(f"{reason} (request {pending.id}: {pending.method})"))
        if pending_requests:
            logger.debug("Cancelled %d pending requests", len(pending_requests))
        return len(pending_requests)

    def _expire(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning("Request %s (%s) timed out after %ss", request_id, pending.method, self.timeout)
        if not pending.future.done():
            pending.future.set_exception(
                RequestTimeoutError(f"Request timed out: {pending.method} (id {request_id}) after {self.timeout}s"),
            )

    @staticmethod
    def _cancel_timer(pending: PendingRequest) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
