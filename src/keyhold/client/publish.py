"""
Fan-out publishing of signed events

A signed event is sent to every endpoint concurrently. Each endpoint
acknowledges, rejects or times out on its own; the publish call
finishes when all have resolved or the overall timeout passes, and
reports per-endpoint results. By default one acknowledgement is enough
for the publish to count as a success.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional
import asyncio
import logging

from pydantic import BaseModel, Field

from ..core.errors import AllEndpointsFailed, PublishErrorCode, QuorumNotMet
from ..core.events import SignedEvent

logger = logging.getLogger("keyhold.publish")

DEFAULT_ENDPOINT_TIMEOUT = 10.0
DEFAULT_OVERALL_TIMEOUT = 30.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_RETRY_DELAY = 1.0


class RelayResponse(BaseModel):
    """Answer from one endpoint"""

    accepted: bool
    message: str = ""

    @classmethod
    def ack(cls, message: str = "") -> 'RelayResponse':
        return cls(accepted=True, message=message)

    @classmethod
    def reject(cls, message: str) -> 'RelayResponse':
        return cls(accepted=False, message=message)


class Transport(ABC):
    """Delivers one event to one endpoint"""

    @abstractmethod
    async def send(self, endpoint: str, event: SignedEvent) -> RelayResponse:
        """Send event; may raise on network failure or never return"""


class FailureReason(str, Enum):
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    ERROR = "error"


class EndpointFailure(BaseModel):
    """Why an endpoint did not acknowledge"""

    reason: FailureReason
    message: str = ""


class PublishOutcome(BaseModel):
    """Per-endpoint results of one publish call"""

    event_id: str
    succeeded: FrozenSet[str] = Field(default_factory=frozenset)
    failed: Dict[str, EndpointFailure] = Field(default_factory=dict)
    required_acks: int = 1
    attempts: int = 1

    @property
    def success(self) -> bool:
        return len(self.succeeded) >= self.required_acks

    @property
    def fully_succeeded(self) -> bool:
        return bool(self.succeeded) and not self.failed

    @property
    def partially_succeeded(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    @property
    def error(self) -> Optional[PublishErrorCode]:
        if not self.succeeded:
            return PublishErrorCode.ALL_ENDPOINTS_FAILED
        if not self.success:
            return PublishErrorCode.QUORUM_NOT_MET
        return None

    def raise_for_status(self) -> 'PublishOutcome':
        """Raise AllEndpointsFailed or QuorumNotMet when the publish failed"""
        if not self.succeeded:
            raise AllEndpointsFailed(self.event_id, dict(self.failed))
        if not self.success:
            raise QuorumNotMet(self.event_id, len(self.succeeded), self.required_acks)
        return self

    def merge(self, other: 'PublishOutcome') -> 'PublishOutcome':
        """Combine with a retry; later acknowledgements clear earlier failures"""
        succeeded = self.succeeded | other.succeeded
        failed = {**self.failed, **other.failed}
        for endpoint in succeeded:
            failed.pop(endpoint, None)
        return PublishOutcome(
            event_id=self.event_id,
            succeeded=succeeded,
            failed=failed,
            required_acks=self.required_acks,
            attempts=self.attempts + other.attempts,
        )


ResultCallback = Callable[[str, Optional[EndpointFailure]], None]


class PublishCoordinator:
    """
    Sends a signed event to a set of endpoints concurrently

    Holds no state between calls.
    """

    def __init__(
        self,
        transport: Transport,
        per_endpoint_timeout: float = DEFAULT_ENDPOINT_TIMEOUT,
        overall_timeout: float = DEFAULT_OVERALL_TIMEOUT,
        required_acks: int = 1,
        retries: int = 0,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        retry_delay: float = DEFAULT_RETRY_DELAY
    ):
        if required_acks < 1:
            raise ValueError("required_acks must be at least 1")
        if retries < 0:
            raise ValueError("retries must not be negative")
        if backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1")
        self.transport = transport
        self.per_endpoint_timeout = per_endpoint_timeout
        self.overall_timeout = overall_timeout
        self.required_acks = required_acks
        self.retries = retries
        self.backoff_factor = backoff_factor
        self.retry_delay = retry_delay

    async def _send_one(self, endpoint: str, event: SignedEvent,
                        timeout: float) -> Optional[EndpointFailure]:
        """Send to one endpoint; None means acknowledged"""
        try:
            response = await asyncio.wait_for(self.transport.send(endpoint, event), timeout)
        except asyncio.TimeoutError:
            return EndpointFailure(reason=FailureReason.TIMEOUT, message=f"No response within {timeout:g}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Error sending %s... to %s: %s", event.id[:8], endpoint, e)
            return EndpointFailure(reason=FailureReason.ERROR, message=str(e) or type(e).__name__)

        if response.accepted:
            return None
        return EndpointFailure(reason=FailureReason.REJECTED, message=response.message)

    async def _attempt(
        self,
        event: SignedEvent,
        targets: List[str],
        per_endpoint_timeout: float,
        overall_timeout: float,
        on_result: Optional[ResultCallback]
    ) -> PublishOutcome:
        """One concurrent round of sends to targets"""
        succeeded = set()
        failed: Dict[str, EndpointFailure] = {}

        def record(endpoint: str, failure: Optional[EndpointFailure]) -> None:
            # First result per endpoint wins
            if endpoint in succeeded or endpoint in failed:
                return
            if failure is None:
                succeeded.add(endpoint)
            else:
                failed[endpoint] = failure
            if on_result is not None:
                on_result(endpoint, failure)

        tasks: Dict[asyncio.Task, str] = {}
        for endpoint in targets:
            task = asyncio.ensure_future(self._send_one(endpoint, event, per_endpoint_timeout))
            tasks[task] = endpoint
            task.add_done_callback(
                lambda t, endpoint=endpoint: None if t.cancelled() else record(endpoint, t.result())
            )

        try:
            if tasks:
                await asyncio.wait(tasks.keys(), timeout=overall_timeout)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        # Done callbacks run on a later loop iteration; read finished tasks directly
        for task, endpoint in tasks.items():
            if task.done() and not task.cancelled():
                record(endpoint, task.result())
            else:
                record(endpoint, EndpointFailure(
                    reason=FailureReason.TIMEOUT,
                    message=f"Still outstanding after {overall_timeout:g}s"
                ))

        return PublishOutcome(
            event_id=event.id,
            succeeded=frozenset(succeeded),
            failed=dict(failed),
            required_acks=self.required_acks,
        )

    async def publish(
        self,
        event: SignedEvent,
        endpoints: Iterable[str],
        per_endpoint_timeout: Optional[float] = None,
        overall_timeout: Optional[float] = None,
        on_result: Optional[ResultCallback] = None,
        retries: Optional[int] = None
    ) -> PublishOutcome:
        """
        Publish event to every endpoint

        ``on_result(endpoint, failure)`` fires as each endpoint resolves
        (failure is None for an acknowledgement), so acknowledgements are
        kept by the caller even if this call is cancelled. A retried
        endpoint reports again on each attempt.

        While fewer than ``required_acks`` endpoints have acknowledged,
        the same event is resent up to ``retries`` more times to the
        endpoints that failed. Attempt ``n`` waits
        ``retry_delay * backoff_factor ** (n - 1)`` first and multiplies
        both timeouts by ``backoff_factor ** n``.
        """
        if per_endpoint_timeout is None:
            per_endpoint_timeout = self.per_endpoint_timeout
        if overall_timeout is None:
            overall_timeout = self.overall_timeout
        if retries is None:
            retries = self.retries
        targets = list(dict.fromkeys(endpoints))

        logger.info("Publishing event %s... to %d endpoint(s)", event.id[:8], len(targets))
        outcome = await self._attempt(event, targets, per_endpoint_timeout, overall_timeout, on_result)

        attempt = 0
        while not outcome.success and attempt < retries:
            remaining = [endpoint for endpoint in targets if endpoint in outcome.failed]
            if not remaining:
                break
            attempt += 1
            delay = self.retry_delay * self.backoff_factor ** (attempt - 1)
            scale = self.backoff_factor ** attempt
            logger.info("Retry %d/%d for %s... to %d endpoint(s) in %gs",
                        attempt, retries, event.id[:8], len(remaining), delay)
            await asyncio.sleep(delay)
            retry = await self._attempt(event, remaining, per_endpoint_timeout * scale,
                                        overall_timeout * scale, on_result)
            outcome = outcome.merge(retry)

        if outcome.success:
            logger.info("Event %s... acknowledged by %d/%d endpoint(s) after %d attempt(s)",
                        event.id[:8], len(outcome.succeeded), len(targets), outcome.attempts)
        else:
            logger.warning("Event %s... acknowledged by %d/%d endpoint(s) after %d attempt(s)",
                           event.id[:8], len(outcome.succeeded), len(targets), outcome.attempts)
        return outcome


__all__ = [
    'RelayResponse',
    'Transport',
    'FailureReason',
    'EndpointFailure',
    'PublishOutcome',
    'PublishCoordinator',
]
