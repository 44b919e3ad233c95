"""
Registry management for hooks.

The HandlerIndex is the matcher resolver: handlers partitioned by event kind,
then by registration scope, each partition an ordered list. Matcher patterns
are compiled once at registration (see matcher.compile_matcher) so resolution
never recompiles per event.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from .events import EventKind, get_policy
from .matcher import matches
from .models import HandlerSpec, HandlerType, Scope

logger = logging.getLogger(__name__)

ScopeKey = Tuple[Scope, str]

class HandlerIndex:
    """
    Versioned, scope-partitioned index of registered handlers.

    All reads and writes go through one lock; ``version`` increases on every
    mutation so callers can detect registration changes.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._partitions: Dict[EventKind, Dict[ScopeKey, List[HandlerSpec]]] = {}
        self._scope_seq: Dict[ScopeKey, int] = {}
        self._next_seq = 0
        self._claimed: Set[int] = set()
        self.version = 0

    def _ordered_scopes(self, partition: Dict[ScopeKey, List[HandlerSpec]]) -> List[ScopeKey]:
        return sorted(
            partition, key=lambda key: (key[0].priority, self._scope_seq.get(key, 0))
        )

    def add_handler(self, event_type: Union[EventKind, str], handler: HandlerSpec) -> None:
        kind = EventKind.parse(event_type)
        policy = get_policy(kind)
        if handler.run_async and not policy.supports_async:
            logger.warning(
                f"{kind.value} does not support async handlers; "
                f"'{handler.target}' will run synchronously"
            )
            handler.run_async = False

        with self._lock:
            key = handler.scope_key
            if key not in self._scope_seq:
                self._scope_seq[key] = self._next_seq
                self._next_seq += 1
            partition = self._partitions.setdefault(kind, {})
            partition.setdefault(key, []).append(handler)
            self.version += 1

    def remove_handler(self, event_type: Union[EventKind, str], handler_id: str) -> bool:
        kind = EventKind.parse(event_type)
        with self._lock:
            for handlers in self._partitions.get(kind, {}).values():
                for i, handler in enumerate(handlers):
                    if handler.id == handler_id:
                        handlers.pop(i)
                        self.version += 1
                        return True
        return False

    def _is_registered(self, kind: EventKind, handler: HandlerSpec) -> bool:
        handlers = self._partitions.get(kind, {}).get(handler.scope_key, [])
        return any(registered is handler for registered in handlers)

    def claim_once(self, event_type: Union[EventKind, str], handler: HandlerSpec) -> bool:
        """
        Mark a one-shot handler as in flight.

        Returns False when another occurrence already holds the claim or the
        handler has been consumed or deregistered. A claim ends with consume()
        on success or release_once() otherwise.
        """
        kind = EventKind.parse(event_type)
        with self._lock:
            if id(handler) in self._claimed or not self._is_registered(kind, handler):
                return False
            self._claimed.add(id(handler))
            return True

    def release_once(self, handler: HandlerSpec) -> None:
        with self._lock:
            self._claimed.discard(id(handler))

    def consume(self, event_type: Union[EventKind, str], handler: HandlerSpec) -> bool:
        """Permanently drop a one-shot handler after its successful completion."""
        kind = EventKind.parse(event_type)
        with self._lock:
            self._claimed.discard(id(handler))
            handlers = self._partitions.get(kind, {}).get(handler.scope_key, [])
            for i, registered in enumerate(handlers):
                if registered is handler:
                    handlers.pop(i)
                    self.version += 1
                    logger.debug(f"One-shot handler {handler.id} consumed for {kind.value}")
                    return True
        return False

    def drop_scope(self, scope: Union[Scope, str], owner: Optional[str] = None) -> int:
        """Deregister every handler owned by a scope; returns how many were dropped."""
        key = (Scope(scope), owner or "")
        removed = 0
        with self._lock:
            for partition in self._partitions.values():
                removed += len(partition.pop(key, []))
            self._scope_seq.pop(key, None)
            if removed:
                self.version += 1
        return removed

    def get_handlers(self, event_type: Union[EventKind, str]) -> List[HandlerSpec]:
        """All handlers registered for a kind, in resolution order (disabled included)."""
        kind = EventKind.parse(event_type)
        with self._lock:
            partition = self._partitions.get(kind, {})
            return [
                handler
                for key in self._ordered_scopes(partition)
                for handler in partition[key]
            ]

    def resolve(
        self, event_type: Union[EventKind, str], match_value: Optional[str]
    ) -> List[HandlerSpec]:
        """
        Resolve the handlers that apply to one occurrence.

        Order is scope priority, then registration order within a scope.
        Duplicates (same type, normalized target and matcher) collapse to the
        first occurrence.
        """
        kind = EventKind.parse(event_type)
        has_match_field = get_policy(kind).match_field is not None
        with self._lock:
            claimed = set(self._claimed)
        resolved: List[HandlerSpec] = []
        seen = set()
        for handler in self.get_handlers(kind):
            if not handler.enabled:
                continue
            if handler.once and id(handler) in claimed:
                logger.debug(f"One-shot handler {handler.id} is already in flight")
                continue
            if not matches(handler.matcher, match_value, has_match_field):
                continue
            if handler.dedup_key in seen:
                logger.debug(f"Skipping duplicate handler '{handler.target}' for {kind.value}")
                continue
            seen.add(handler.dedup_key)
            resolved.append(handler)
        return resolved

    def count_hooks(self, event_type: Optional[Union[EventKind, str]] = None) -> int:
        kinds = list(EventKind) if event_type is None else [EventKind.parse(event_type)]
        return sum(len(self.get_handlers(kind)) for kind in kinds)

    def scopes(self) -> List[ScopeKey]:
        with self._lock:
            return sorted(
                self._scope_seq, key=lambda key: (key[0].priority, self._scope_seq[key])
            )


def _handler_from_dict(
    matcher: str,
    hook_data: Dict[str, Any],
    scope: Scope,
    owner: Optional[str],
    root: Optional[str],
) -> HandlerSpec:
    hook_type = hook_data.get("type", "command")
    if hook_type == HandlerType.COMMAND.value:
        target = hook_data.get("command", "")
    else:
        target = hook_data.get("prompt") or hook_data.get("command", "")
    return HandlerSpec(
        matcher=matcher,
        type=hook_type,
        target=target,
        timeout=hook_data.get("timeout"),
        run_async=bool(hook_data.get("async", False)),
        once=bool(hook_data.get("once", False)),
        enabled=bool(hook_data.get("enabled", True)),
        model=hook_data.get("model"),
        id=hook_data.get("id"),
        scope=scope,
        owner=owner,
        root=root,
    )


def build_registry_from_config(
    config: Dict[str, Any],
    index: Optional[HandlerIndex] = None,
    scope: Union[Scope, str] = Scope.PROJECT,
    owner: Optional[str] = None,
    root: Optional[str] = None,
) -> HandlerIndex:
    """
    Register every handler of one configuration scope.

    Args:
        config: Mapping of event kind -> list of {matcher, hooks: [...]}
        index: Index to add to (a new one is created when omitted)
        scope: Scope owning the handlers
        owner: Component name for component scopes
        root: Component root directory

    Returns:
        The populated HandlerIndex
    """
    index = index if index is not None else HandlerIndex()
    scope = Scope(scope)

    for event_type, hook_groups in config.items():
        if event_type.startswith("_"):
            continue  # skip comment keys

        try:
            kind = EventKind.parse(event_type)
        except ValueError as e:
            logger.warning(f"Skipping hooks for unknown event: {e}")
            continue

        if not isinstance(hook_groups, list):
            logger.warning(f"Hook groups for '{event_type}' must be a list, skipping")
            continue

        for group in hook_groups:
            if not isinstance(group, dict):
                continue

            matcher = group.get("matcher") or ""
            hooks_data = group.get("hooks", [])
            if not isinstance(hooks_data, list):
                continue

            for hook_data in hooks_data:
                if not isinstance(hook_data, dict):
                    continue
                try:
                    handler = _handler_from_dict(matcher, hook_data, scope, owner, root)
                    index.add_handler(kind, handler)
                except (ValueError, TypeError, KeyError) as e:
                    logger.warning(f"Skipping invalid hook in {event_type}: {e}")

    return index


def get_registry_stats(index: HandlerIndex) -> Dict[str, Any]:
    """Get statistics about an index."""
    stats: Dict[str, Any] = {
        "total_hooks": index.count_hooks(),
        "enabled_hooks": 0,
        "disabled_hooks": 0,
        "version": index.version,
        "by_event": {},
    }

    for kind in EventKind:
        hooks = index.get_handlers(kind)
        enabled = sum(1 for h in hooks if h.enabled)
        disabled = len(hooks) - enabled
        stats["enabled_hooks"] += enabled
        stats["disabled_hooks"] += disabled
        if hooks:
            stats["by_event"][kind.value] = {
                "total": len(hooks),
                "enabled": enabled,
                "disabled": disabled,
            }

    return stats
