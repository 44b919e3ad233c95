"""
Delivery of final decisions back to the host.

Synchronous decisions are handed to the host as soon as they are aggregated.
Results of async handlers arrive after the triggering action has proceeded;
they wait in a queue and ride along with the next delivery (or are pulled
with ``drain_pending``). The sink never raises: a host that has gone away is
logged and the delivery dropped.
"""

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, List, Optional

from .events import EventEnvelope
from .models import DeferredDelivery, FailureKind, FinalDecision, HandlerResult

logger = logging.getLogger(__name__)

HostCallback = Callable[[FinalDecision], Any]


class DeliverySink:
    """Routes decisions to the host and holds async results for a later turn."""

    def __init__(self, host_callback: Optional[HostCallback] = None):
        self._host_callback = host_callback
        self._pending: Deque[DeferredDelivery] = deque()
        self._lock = threading.Lock()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def enqueue(self, envelope: EventEnvelope, result: HandlerResult) -> None:
        """Queue an async handler's contribution for the next delivery."""
        fragment = result.fragment
        item = DeferredDelivery(
            event_id=envelope.event_id,
            kind=envelope.kind.value,
            handler_id=result.handler_id,
            additional_context=fragment.additional_context if fragment else None,
            system_message=fragment.system_message if fragment else None,
            diagnostic=result.diagnostic,
        )
        if not (item.additional_context or item.system_message or item.diagnostic):
            logger.debug(f"Async hook {result.handler_id} finished with nothing to deliver")
            return

        with self._lock:
            if self._closed:
                self.dropped += 1
                logger.warning(
                    f"{FailureKind.DELIVERY_FAILURE.value}: host closed, dropping "
                    f"async result of hook {result.handler_id} ({envelope.kind.value})"
                )
                return
            self._pending.append(item)

    def _take_pending(self, exclude_event_id: Optional[str] = None) -> List[DeferredDelivery]:
        with self._lock:
            taken: List[DeferredDelivery] = []
            kept: Deque[DeferredDelivery] = deque()
            while self._pending:
                item = self._pending.popleft()
                if exclude_event_id is not None and item.event_id == exclude_event_id:
                    kept.append(item)
                else:
                    taken.append(item)
            self._pending = kept
            return taken

    def drain_pending(self) -> List[DeferredDelivery]:
        """Hand every queued async result to the caller."""
        return self._take_pending()

    def deliver(self, decision: FinalDecision) -> FinalDecision:
        """
        Attach queued async results from earlier occurrences and hand the
        decision to the host callback.
        """
        with self._lock:
            closed = self._closed
            if closed:
                self.dropped += 1
        if closed:
            logger.warning(
                f"{FailureKind.DELIVERY_FAILURE.value}: host closed, "
                f"decision for {decision.kind} not delivered"
            )
            return decision

        decision.deferred.extend(self._take_pending(exclude_event_id=decision.event_id))

        if self._host_callback is not None:
            try:
                self._host_callback(decision)
            except Exception as e:
                with self._lock:
                    self.dropped += 1
                logger.error(
                    f"{FailureKind.DELIVERY_FAILURE.value}: host callback failed "
                    f"for {decision.kind}: {e}",
                    exc_info=True,
                )
        return decision

    def close(self) -> None:
        """Mark the host as torn down; later deliveries are dropped."""
        with self._lock:
            self._closed = True
            if self._pending:
                logger.info(f"Discarding {len(self._pending)} undelivered async hook result(s)")
            self.dropped += len(self._pending)
            self._pending.clear()
