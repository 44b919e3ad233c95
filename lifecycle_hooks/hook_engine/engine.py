"""
HookEngine: the host-facing entry point for dispatching lifecycle events.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Union

from .aggregator import aggregate_results
from .coordinator import ExecutionCoordinator
from .delivery import DeliverySink, HostCallback
from .evaluator import VerdictEvaluator
from .events import EventEnvelope, EventKind, build_envelope
from .executor import format_execution_summary, invoke_handler
from .models import DeferredDelivery, FinalDecision, HandlerResult, HandlerSpec, Scope
from .registry import HandlerIndex, build_registry_from_config, get_registry_stats
from .validator import (
    format_validation_report,
    get_config_suggestions,
    validate_hooks_config,
)

logger = logging.getLogger(__name__)


class HookEngine:
    """
    Main hook engine for dispatching lifecycle events to handlers.

    Ties the dispatch pipeline together:
    - Loads and validates configuration per registration scope
    - Resolves the handlers whose matcher selects an occurrence
    - Runs them concurrently with timeout and crash isolation
    - Aggregates their fragments into one FinalDecision
    - Delivers the decision (and queued async results) to the host
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        strict_validation: bool = True,
        env_vars: Optional[Dict[str, str]] = None,
        *,
        scope: Union[Scope, str] = Scope.PROJECT,
        evaluator: Optional[VerdictEvaluator] = None,
        fail_closed_on_timeout: Optional[bool] = None,
        on_decision: Optional[HostCallback] = None,
        disabled: Optional[bool] = None,
    ):
        from lifecycle_hooks.config import get_fail_closed_on_timeout, get_hooks_disabled

        self.env_vars = env_vars or {}
        self.strict_validation = strict_validation
        self.evaluator = evaluator or VerdictEvaluator()
        self.fail_closed_on_timeout = (
            get_fail_closed_on_timeout()
            if fail_closed_on_timeout is None
            else fail_closed_on_timeout
        )
        self.disabled = get_hooks_disabled() if disabled is None else disabled

        self._index = HandlerIndex()
        self.sink = DeliverySink(on_decision)
        self.coordinator = ExecutionCoordinator(self._index, self.sink, self._invoke)

        if config:
            self.load_config(config, scope=scope)

    def load_config(
        self,
        config: Dict[str, Any],
        scope: Union[Scope, str] = Scope.PROJECT,
        owner: Optional[str] = None,
        root: Optional[str] = None,
    ) -> None:
        is_valid, errors = validate_hooks_config(config)

        if not is_valid:
            error_msg = format_validation_report(
                is_valid, errors, get_config_suggestions(config, errors)
            )
            if self.strict_validation:
                raise ValueError(f"Invalid hook configuration:\n{error_msg}")
            else:
                logger.warning(f"Hook configuration has errors:\n{error_msg}")

        before = self._index.count_hooks()
        build_registry_from_config(config, self._index, scope=scope, owner=owner, root=root)
        logger.info(
            f"Loaded {Scope(scope).value} hook configuration"
            f"{f' for {owner}' if owner else ''}: "
            f"{self._index.count_hooks() - before} hook(s), "
            f"{self._index.count_hooks()} total"
        )

    def reload_config(
        self, config: Dict[str, Any], scope: Union[Scope, str] = Scope.PROJECT
    ) -> None:
        """Replace one scope's handlers (starts a new lifetime for its one-shot hooks)."""
        self._index.drop_scope(scope)
        self.load_config(config, scope=scope)

    def load_scopes(self, scoped_configs: Dict[Union[Scope, str], Dict[str, Any]]) -> None:
        for scope, config in scoped_configs.items():
            if config:
                self.load_config(config, scope=scope)

    def register_component(
        self, owner: str, config: Dict[str, Any], root: Optional[str] = None
    ) -> None:
        """Register a component's hooks; they live until unregister_component()."""
        self.load_config(config, scope=Scope.COMPONENT, owner=owner, root=root)

    def unregister_component(self, owner: str) -> int:
        removed = self._index.drop_scope(Scope.COMPONENT, owner)
        logger.info(f"Unregistered {removed} hook(s) owned by {owner}")
        return removed

    async def _invoke(self, handler: HandlerSpec, envelope: EventEnvelope) -> HandlerResult:
        return await invoke_handler(
            handler,
            envelope,
            evaluator=self.evaluator,
            env_vars=self.env_vars,
            fail_closed=self.fail_closed_on_timeout,
        )

    def resolve(
        self, event_type: Union[EventKind, str], match_value: Optional[str] = None
    ) -> List[HandlerSpec]:
        if self.disabled:
            return []
        return self._index.resolve(event_type, match_value)

    async def dispatch(
        self, envelope: EventEnvelope, force_stop: bool = False
    ) -> FinalDecision:
        """
        Dispatch one occurrence and return its single FinalDecision.

        Args:
            envelope: The occurrence, built with build_envelope()
            force_stop: Host-level override forcing continue=false
        """
        start_time = time.perf_counter()
        handlers = self.resolve(envelope.kind, envelope.match_field)
        audit_tier = envelope.policy.is_audit_tier(envelope.match_field)

        if handlers:
            logger.debug(
                f"Dispatching {envelope.kind.value}: {len(handlers)} matching hook(s)"
                f" for '{envelope.match_field}'"
            )

        results = await self.coordinator.run(handlers, envelope)
        decision = aggregate_results(
            envelope.kind,
            results,
            audit_tier=audit_tier,
            force_stop=force_stop,
            event_id=envelope.event_id,
        )

        if audit_tier and any(r.blocking for r in results):
            logger.info(
                f"Ignoring blocking verdict for audit-only {envelope.kind.value} "
                f"({envelope.match_field})"
            )
        for diagnostic in decision.diagnostics:
            logger.warning(f"{envelope.kind.value} hook failed: {diagnostic}")

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(
            f"{envelope.kind.value} decision: {decision.verdict.value} "
            f"({len(results)} result(s), {duration_ms:.2f}ms)"
        )
        if results and logger.isEnabledFor(logging.DEBUG):
            logger.debug(format_execution_summary(results))
        return self.sink.deliver(decision)

    async def process_event(
        self,
        event_type: Union[EventKind, str],
        payload: Optional[Dict[str, Any]] = None,
        force_stop: bool = False,
        **envelope_kwargs: Any,
    ) -> FinalDecision:
        """Build the envelope for an occurrence and dispatch it."""
        envelope = build_envelope(event_type, payload, **envelope_kwargs)
        return await self.dispatch(envelope, force_stop=force_stop)

    def drain_pending(self) -> List[DeferredDelivery]:
        return self.sink.drain_pending()

    async def wait_for_background(self) -> None:
        await self.coordinator.wait_for_background()

    async def shutdown(self) -> None:
        """Cancel in-flight async hooks and stop delivering to the host."""
        await self.coordinator.cancel_background()
        self.sink.close()

    def get_stats(self) -> Dict[str, Any]:
        return get_registry_stats(self._index)

    def get_hooks_for_event(self, event_type: Union[EventKind, str]) -> List[HandlerSpec]:
        return self._index.get_handlers(event_type)

    def count_hooks(self, event_type: Optional[Union[EventKind, str]] = None) -> int:
        return self._index.count_hooks(event_type)

    def add_hook(self, event_type: Union[EventKind, str], hook: HandlerSpec) -> None:
        self._index.add_handler(event_type, hook)

    def remove_hook(self, event_type: Union[EventKind, str], hook_id: str) -> bool:
        return self._index.remove_handler(event_type, hook_id)

    def set_env_vars(self, env_vars: Dict[str, str]) -> None:
        self.env_vars = env_vars

    def update_env_vars(self, env_vars: Dict[str, str]) -> None:
        self.env_vars.update(env_vars)

    @property
    def index(self) -> HandlerIndex:
        return self._index


def validate_config_file(config: Dict[str, Any]) -> str:
    is_valid, errors = validate_hooks_config(config)
    suggestions = get_config_suggestions(config, errors) if not is_valid else []
    return format_validation_report(is_valid, errors, suggestions)
