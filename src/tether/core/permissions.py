"""Permission arbitration for tool invocations awaiting a human decision.

The arbiter keeps a table of permission requests plus one resolution future
per request that has a waiter. Resolution is a single pending -> approved or
pending -> denied transition; later attempts are rejected so that racing
decisions (a human click versus the timeout) resolve exactly once.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any

from tether.schemas.messages import PermissionRequest, PermissionStatus
from tether.utils.errors import PermissionAbandonedError, PermissionNotFoundError
from tether.utils.telemetry import get_logger

PERMISSION_DENIED_REASON = "Permission denied by user"
PERMISSION_TIMEOUT_REASON = "Permission request timed out"
CONVERSATION_ENDED_REASON = "Conversation ended"

DEFAULT_PERMISSION_TIMEOUT = 60 * 60.0


@dataclass
class PermissionDecision:
    """Outcome of waiting on a permission request."""

    request: PermissionRequest
    timed_out: bool = False
    waited_seconds: float = 0.0

    @property
    def approved(self) -> bool:
        return self.request.status == "approved"


class PermissionArbiter:
    """In-memory bookkeeping of tool permission requests and their waiters."""

    def __init__(self) -> None:
        # Insertion-ordered: listing order is filing order
        self._requests: dict[str, PermissionRequest] = {}
        # None as a result means the owning run ended before a decision
        self._waiters: dict[str, asyncio.Future[PermissionRequest | None]] = {}
        self.logger = get_logger("tether.permissions")

    def add_permission_request(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None,
        streaming_id: str | None,
    ) -> PermissionRequest:
        """File a new pending permission request.

        Args:
            tool_name: Tool the engine wants to run
            tool_input: Input the engine proposed
            streaming_id: Run handle the tool call belongs to

        Returns:
            Snapshot of the created request
        """
        request = PermissionRequest(
            id=str(uuid.uuid4()),
            streaming_id=streaming_id,
            tool_name=tool_name,
            tool_input=dict(tool_input or {}),
        )
        self._requests[request.id] = request

        self.logger.info(
            "Permission request filed",
            request_id=request.id,
            streaming_id=streaming_id,
            tool_name=tool_name,
        )
        return request.model_copy(deep=True)

    def get_permission_request(self, request_id: str) -> PermissionRequest | None:
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request is not None else None

    def get_permission_requests(
        self,
        streaming_id: str | None = None,
        status: PermissionStatus | None = None,
    ) -> list[PermissionRequest]:
        """List requests in filing order, optionally filtered.

        Args:
            streaming_id: Only requests of this run
            status: Only requests in this state

        Returns:
            Snapshots of the matching requests
        """
        return [
            request.model_copy(deep=True)
            for request in self._requests.values()
            if (streaming_id is None or request.streaming_id == streaming_id)
            and (status is None or request.status == status)
        ]

    def update_permission_status(
        self,
        request_id: str,
        status: PermissionStatus,
        modified_input: dict[str, Any] | None = None,
        deny_reason: str | None = None,
    ) -> bool:
        """Resolve a pending request.

        Args:
            request_id: Request to resolve
            status: "approved" or "denied"
            modified_input: Replacement tool input (approvals only)
            deny_reason: Reason shown to the engine (denials only)

        Returns:
            True if the request was pending and is now resolved, False if it
            does not exist or was already resolved

        Raises:
            ValueError: If status is not a terminal state
        """
        if status not in ("approved", "denied"):
            raise ValueError(f"Cannot transition permission request to {status!r}")

        request = self._requests.get(request_id)
        if request is None or request.status != "pending":
            self.logger.debug(
                "Ignoring permission update",
                request_id=request_id,
                status=status,
                known=request is not None,
            )
            return False

        request.status = status
        if status == "approved":
            request.modified_input = modified_input
        else:
            request.deny_reason = deny_reason

        waiter = self._waiters.pop(request_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(request.model_copy(deep=True))

        self.logger.info(
            "Permission request resolved",
            request_id=request_id,
            streaming_id=request.streaming_id,
            tool_name=request.tool_name,
            status=status,
        )
        return True

    async def wait_for_decision(
        self, request_id: str, timeout: float = DEFAULT_PERMISSION_TIMEOUT
    ) -> PermissionDecision:
        """Block until a request is resolved or the deadline passes.

        A request that is already resolved returns immediately. Exceeding the
        deadline denies the request with ``PERMISSION_TIMEOUT_REASON``.

        Args:
            request_id: Request to wait on
            timeout: Deadline in seconds

        Returns:
            The resolved request, flagged when the denial came from the timeout

        Raises:
            PermissionNotFoundError: If the request does not exist
            PermissionAbandonedError: If the owning run ended while waiting
        """
        request = self._requests.get(request_id)
        if request is None:
            raise PermissionNotFoundError(request_id)
        if request.status != "pending":
            return PermissionDecision(request=request.model_copy(deep=True))

        waiter = self._waiters.get(request_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[request_id] = waiter

        started = time.perf_counter()
        try:
            resolved = await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except TimeoutError:
            if self.update_permission_status(
                request_id, "denied", deny_reason=PERMISSION_TIMEOUT_REASON
            ):
                self.logger.warning(
                    "Permission request timed out",
                    request_id=request_id,
                    streaming_id=request.streaming_id,
                    timeout_seconds=timeout,
                )
                return PermissionDecision(
                    request=request.model_copy(deep=True),
                    timed_out=True,
                    waited_seconds=time.perf_counter() - started,
                )
            # Resolved or abandoned in the same tick as the deadline
            if not waiter.done():
                raise
            resolved = waiter.result()

        if resolved is None:
            raise PermissionAbandonedError(request_id, CONVERSATION_ENDED_REASON)
        return PermissionDecision(
            request=resolved, waited_seconds=time.perf_counter() - started
        )

    def abandon_run(self, streaming_id: str) -> int:
        """Drop every request of a run, rejecting waiters still pending.

        Args:
            streaming_id: Run that ended

        Returns:
            Number of requests that were still pending
        """
        request_ids = [
            request_id
            for request_id, request in self._requests.items()
            if request.streaming_id == streaming_id
        ]

        abandoned = 0
        for request_id in request_ids:
            request = self._requests.pop(request_id)
            if request.status == "pending":
                abandoned += 1
            waiter = self._waiters.pop(request_id, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(None)

        if request_ids:
            self.logger.info(
                "Permission requests released",
                streaming_id=streaming_id,
                released=len(request_ids),
                abandoned=abandoned,
            )
        return abandoned

    @property
    def pending_count(self) -> int:
        return sum(1 for r in self._requests.values() if r.status == "pending")
