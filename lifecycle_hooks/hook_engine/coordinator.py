"""
Execution coordination: fan out the handlers of one occurrence and join them.

Every matched handler is an independent asyncio task. Blocking handlers are
awaited together; async handlers (and every handler of kinds the host does not
wait for) are launched fire-and-forget and their results go to the delivery
sink's queue.
"""

import asyncio
import functools
import logging
import threading
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from .delivery import DeliverySink
from .events import EventEnvelope
from .models import FailureKind, HandlerResult, HandlerSpec, HandlerType
from .registry import HandlerIndex

logger = logging.getLogger(__name__)

Invoker = Callable[[HandlerSpec, EventEnvelope], Awaitable[HandlerResult]]
InvocationKey = Tuple[str, ...]


class DedupIndex:
    """
    In-flight invocation keys, guarded by one mutex.

    Keys include the occurrence id, so only same-occurrence duplicates are
    skipped; separate firings always run.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._inflight: Set[InvocationKey] = set()

    def claim(self, key: InvocationKey) -> bool:
        with self._lock:
            if key in self._inflight:
                return False
            self._inflight.add(key)
            return True

    def release(self, key: InvocationKey) -> None:
        with self._lock:
            self._inflight.discard(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._inflight)


_DEDUP_INDEX = DedupIndex()


def get_dedup_index() -> DedupIndex:
    return _DEDUP_INDEX


def _invocation_key(handler: HandlerSpec, envelope: EventEnvelope) -> InvocationKey:
    return (envelope.event_id, envelope.kind.value) + handler.dedup_key


def _crash_result(handler: HandlerSpec, error: BaseException) -> HandlerResult:
    return HandlerResult(
        handler_id=handler.id,
        handler_type=handler.type,
        target=handler.target,
        failure=FailureKind.NON_BLOCKING_ERROR,
        error=f"Hook execution failed: {error!r}",
    )


class ExecutionCoordinator:
    """Runs the resolved handlers of one occurrence according to its kind's policy."""

    def __init__(
        self,
        index: HandlerIndex,
        sink: DeliverySink,
        invoker: Invoker,
        dedup: Optional[DedupIndex] = None,
    ):
        self._index = index
        self._sink = sink
        self._invoke = invoker
        self._dedup = dedup if dedup is not None else get_dedup_index()
        self._background: Set[asyncio.Task] = set()

    @property
    def background_count(self) -> int:
        return len(self._background)

    @staticmethod
    def _is_async(handler: HandlerSpec, envelope: EventEnvelope) -> bool:
        return (
            handler.run_async
            and handler.type is HandlerType.COMMAND
            and envelope.policy.supports_async
        )

    async def run(
        self, handlers: List[HandlerSpec], envelope: EventEnvelope
    ) -> List[HandlerResult]:
        """
        Run handlers for one occurrence.

        Returns:
            Results of the awaited handlers, in the order the handlers were given
            (empty when the kind's policy does not wait)
        """
        awaited: List[HandlerSpec] = []
        for handler in handlers:
            if self._is_async(handler, envelope) or not envelope.policy.awaits_handlers:
                self._spawn_background(handler, envelope)
            else:
                awaited.append(handler)

        started: List[Tuple[HandlerSpec, asyncio.Task]] = []
        for handler in awaited:
            key = self._claim(handler, envelope)
            if key is None:
                continue
            task = self._start(handler, envelope, key, self._invoke(handler, envelope))
            started.append((handler, task))

        if not started:
            return []

        outcomes = await asyncio.gather(
            *(task for _, task in started), return_exceptions=True
        )

        results: List[HandlerResult] = []
        for (handler, _), outcome in zip(started, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Hook '{handler.target}' crashed: {outcome!r}")
                results.append(_crash_result(handler, outcome))
            else:
                results.append(outcome)
        return results

    def _claim(self, handler: HandlerSpec, envelope: EventEnvelope) -> Optional[InvocationKey]:
        """Reserve one invocation; None when it must not start."""
        if handler.once and not self._index.claim_once(envelope.kind, handler):
            logger.debug(f"One-shot hook already in flight or consumed: {handler.target}")
            return None
        key = _invocation_key(handler, envelope)
        if not self._dedup.claim(key):
            logger.debug(f"Duplicate invocation skipped: {handler.target}")
            if handler.once:
                self._index.release_once(handler)
            return None
        return key

    def _start(
        self,
        handler: HandlerSpec,
        envelope: EventEnvelope,
        key: InvocationKey,
        coro: Awaitable[HandlerResult],
    ) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(functools.partial(self._settle, handler, envelope, key))
        return task

    def _settle(
        self,
        handler: HandlerSpec,
        envelope: EventEnvelope,
        key: InvocationKey,
        task: asyncio.Task,
    ) -> None:
        # Runs even when the task was cancelled before its first step.
        self._dedup.release(key)
        if not handler.once:
            return
        succeeded = (
            not task.cancelled()
            and task.exception() is None
            and task.result().success
        )
        if succeeded:
            self._index.consume(envelope.kind, handler)
        else:
            self._index.release_once(handler)

    def _spawn_background(self, handler: HandlerSpec, envelope: EventEnvelope) -> None:
        key = self._claim(handler, envelope)
        if key is None:
            return
        task = self._start(handler, envelope, key, self._run_background(handler, envelope))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_background(
        self, handler: HandlerSpec, envelope: EventEnvelope
    ) -> HandlerResult:
        try:
            result = await self._invoke(handler, envelope)
        except Exception as e:
            logger.error(f"Async hook '{handler.target}' crashed: {e!r}")
            result = _crash_result(handler, e)
        self._sink.enqueue(envelope, result)
        return result

    async def wait_for_background(self) -> None:
        """Wait until every fire-and-forget invocation has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cancel_background(self) -> None:
        """Cancel in-flight fire-and-forget invocations (their subprocesses are killed)."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
