"""
Data models for the hook engine.

Defines the handler registration record, the per-handler result and verdict
fragment, and the single final decision produced for every event occurrence.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class HandlerType(str, Enum):
    COMMAND = "command"
    PROMPT = "prompt"
    AGENT = "agent"


class Verdict(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"
    BLOCK = "block"
    CONTINUE = "continue"

    @property
    def rank(self) -> int:
        """Precedence: deny/block > ask > allow/continue."""
        return _VERDICT_RANK[self]

    @property
    def is_blocking(self) -> bool:
        return self in (Verdict.DENY, Verdict.BLOCK)


_VERDICT_RANK = {
    Verdict.DENY: 3,
    Verdict.BLOCK: 3,
    Verdict.ASK: 2,
    Verdict.ALLOW: 1,
    Verdict.CONTINUE: 1,
}


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    NON_BLOCKING_ERROR = "non_blocking_error"
    DELIVERY_FAILURE = "delivery_failure"


class Scope(str, Enum):
    """Registration scopes, highest priority first."""

    MANAGED = "managed"
    USER = "user"
    PROJECT = "project"
    LOCAL = "local"
    COMPONENT = "component"

    @property
    def priority(self) -> int:
        return list(Scope).index(self)


class MatchCompileError(ValueError):
    """A matcher pattern that does not compile; raised at registration only."""

    def __init__(self, pattern: str, reason: str):
        super().__init__(f"Invalid matcher pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


class HookEvaluationError(RuntimeError):
    """A prompt or agent handler could not produce a verdict."""


# Seconds
DEFAULT_TIMEOUTS: Dict[HandlerType, float] = {
    HandlerType.COMMAND: 600.0,
    HandlerType.PROMPT: 30.0,
    HandlerType.AGENT: 60.0,
}


@dataclass
class HandlerSpec:
    """
    Configuration for a single registered handler.

    Attributes:
        matcher: Regex matched against the event's match field ("", "*" = all)
        type: Handler type (command, prompt or agent)
        target: Shell command, or prompt/agent template
        timeout: Maximum execution time in seconds (None = per-type default)
        run_async: Fire-and-forget; result delivered on a later turn (command only)
        once: Invoke at most once per owning scope lifetime
        enabled: Whether this handler is resolved at all
        model: Evaluator model override for prompt/agent handlers
        id: Optional unique identifier for this handler
        scope: Registration scope that owns this handler
        owner: Component name for component-scoped handlers
        root: Component root directory, exported as CLAUDE_PLUGIN_ROOT
    """

    matcher: str
    type: HandlerType
    target: str
    timeout: Optional[float] = None
    run_async: bool = False
    once: bool = False
    enabled: bool = True
    model: Optional[str] = None
    id: Optional[str] = None
    scope: Scope = Scope.PROJECT
    owner: Optional[str] = None
    root: Optional[str] = None

    def __post_init__(self):
        from .matcher import compile_matcher

        self.matcher = self.matcher if self.matcher is not None else ""
        if not isinstance(self.matcher, str):
            raise ValueError(f"Handler matcher must be a string, got: {self.matcher!r}")
        self.scope = Scope(self.scope)
        try:
            self.type = HandlerType(self.type)
        except ValueError:
            raise ValueError(
                f"Handler type must be one of "
                f"{', '.join(t.value for t in HandlerType)}, got: {self.type}"
            ) from None

        if not isinstance(self.target, str) or not self.target.strip():
            raise ValueError("Handler command/prompt must be a non-empty string")

        if self.timeout is not None and (
            isinstance(self.timeout, bool) or float(self.timeout) <= 0
        ):
            raise ValueError(f"Handler timeout must be > 0 seconds, got: {self.timeout}")

        if self.run_async and self.type is not HandlerType.COMMAND:
            raise ValueError("Only command handlers can run async")

        # Raises MatchCompileError; nothing invalid reaches the index.
        compile_matcher(self.matcher)

        if self.id is None:
            content = f"{self.matcher}:{self.type.value}:{self.target}"
            self.id = hashlib.sha256(content.encode()).hexdigest()[:12]

    @property
    def effective_timeout(self) -> float:
        if self.timeout is None:
            return DEFAULT_TIMEOUTS[self.type]
        return float(self.timeout)

    @property
    def normalized_target(self) -> str:
        return " ".join(self.target.split())

    @property
    def dedup_key(self) -> Tuple[str, str, str]:
        return (self.type.value, self.normalized_target, self.matcher)

    @property
    def scope_key(self) -> Tuple["Scope", str]:
        return (self.scope, self.owner or "")


@dataclass(frozen=True)
class DecisionFragment:
    """The partial verdict and context contributed by one handler."""

    verdict: Optional[Verdict] = None
    reason: Optional[str] = None
    additional_context: Optional[str] = None
    modified_input: Optional[Dict[str, Any]] = None
    suppress_output: bool = False
    continue_: bool = True
    stop_reason: Optional[str] = None
    system_message: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self == DecisionFragment()


@dataclass
class HandlerResult:
    """
    Result from invoking one handler for one occurrence.

    Exactly one of ``fragment``/``failure`` describes the outcome, except for a
    fail-closed timeout which carries both (the failure and its blocking fragment).
    """

    handler_id: str
    handler_type: HandlerType
    target: str
    fragment: Optional[DecisionFragment] = None
    failure: Optional[FailureKind] = None
    elapsed_ms: float = 0.0
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.failure is None

    @property
    def blocking(self) -> bool:
        return (
            self.fragment is not None
            and self.fragment.verdict is not None
            and self.fragment.verdict.is_blocking
        )

    @property
    def diagnostic(self) -> Optional[str]:
        """Text surfaced to the host for a failed invocation."""
        if self.success:
            return None
        detail = self.error or self.stderr.strip() or self.failure.value
        return f"[{self.target}] {detail}"


@dataclass
class DeferredDelivery:
    """Context produced by an async handler, waiting for a later delivery."""

    event_id: str
    kind: str
    handler_id: str
    additional_context: Optional[str] = None
    system_message: Optional[str] = None
    diagnostic: Optional[str] = None


@dataclass
class FinalDecision:
    """The single authoritative outcome for one event occurrence."""

    kind: str
    event_id: str
    verdict: Verdict
    reason: Optional[str] = None
    additional_context: Optional[str] = None
    system_messages: List[str] = field(default_factory=list)
    modified_input: Optional[Dict[str, Any]] = None
    suppress_output: bool = False
    continue_: bool = True
    stop_reason: Optional[str] = None
    diagnostics: List[str] = field(default_factory=list)
    results: List[HandlerResult] = field(default_factory=list)
    deferred: List[DeferredDelivery] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.verdict.is_blocking

    @property
    def executed_hooks(self) -> int:
        return len(self.results)

    @property
    def failed_hooks(self) -> List[HandlerResult]:
        return [result for result in self.results if not result.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hook_event_name": self.kind,
            "event_id": self.event_id,
            "verdict": self.verdict.value,
            "reason": self.reason,
            "additional_context": self.additional_context,
            "system_messages": list(self.system_messages),
            "modified_input": self.modified_input,
            "suppress_output": self.suppress_output,
            "continue": self.continue_,
            "stop_reason": self.stop_reason,
            "diagnostics": list(self.diagnostics),
            "executed_hooks": self.executed_hooks,
            "deferred": [
                {
                    "event_id": item.event_id,
                    "hook_event_name": item.kind,
                    "handler_id": item.handler_id,
                    "additional_context": item.additional_context,
                    "system_message": item.system_message,
                    "diagnostic": item.diagnostic,
                }
                for item in self.deferred
            ],
        }
