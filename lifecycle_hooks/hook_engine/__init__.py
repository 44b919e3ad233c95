"""Hook engine package: lifecycle event dispatch to registered handlers."""

from .aggregator import aggregate
from .engine import HookEngine
from .events import EventEnvelope, EventKind, KindPolicy, build_envelope, get_policy
from .models import (
    DecisionFragment,
    FailureKind,
    FinalDecision,
    HandlerResult,
    HandlerSpec,
    HandlerType,
    MatchCompileError,
    Scope,
    Verdict,
)
from .registry import HandlerIndex

__all__ = [
    "HookEngine",
    "HandlerIndex",
    "HandlerSpec",
    "HandlerType",
    "HandlerResult",
    "DecisionFragment",
    "FinalDecision",
    "FailureKind",
    "MatchCompileError",
    "Scope",
    "Verdict",
    "EventKind",
    "EventEnvelope",
    "KindPolicy",
    "build_envelope",
    "get_policy",
    "aggregate",
]
