"""
Decision aggregation: merge handler fragments into one FinalDecision.

Pure functions over (kind, fragments). Fragments arrive in resolution order;
completion timing never reaches this module, so the outcome for a given set
of fragments is deterministic.
"""

from typing import List, Optional, Sequence, Union

from .events import EventKind, get_policy
from .models import DecisionFragment, FinalDecision, HandlerResult


def _join(parts: List[str]) -> Optional[str]:
    return "\n".join(parts) if parts else None


def select_verdict(
    fragments: Sequence[DecisionFragment],
) -> Optional[DecisionFragment]:
    """The first fragment carrying the highest-precedence verdict, if any."""
    winner: Optional[DecisionFragment] = None
    for fragment in fragments:
        if fragment.verdict is None:
            continue
        if winner is None or fragment.verdict.rank > winner.verdict.rank:
            winner = fragment
    return winner


def aggregate(
    kind: Union[EventKind, str],
    fragments: Sequence[DecisionFragment],
    *,
    audit_tier: bool = False,
    force_stop: bool = False,
    event_id: str = "",
    results: Optional[List[HandlerResult]] = None,
) -> FinalDecision:
    """
    Merge fragments into the final decision for one occurrence.

    Args:
        kind: Event kind of the occurrence
        fragments: Handler fragments in resolution order
        audit_tier: Occurrence belongs to the kind's audit-only tier
        force_stop: Host-level override forcing continue=false
        event_id: Occurrence identifier
        results: Raw handler results, carried for diagnostics

    Returns:
        Exactly one FinalDecision; default allow/continue when nothing blocks
    """
    event_kind = EventKind.parse(kind)
    policy = get_policy(event_kind)
    honour_verdicts = policy.blockable and not audit_tier

    verdict = policy.default_verdict
    reason: Optional[str] = None
    modified_input = None
    continue_ = True
    stop_reason: Optional[str] = None

    contexts = [f.additional_context for f in fragments if f.additional_context]
    system_messages = [f.system_message for f in fragments if f.system_message]

    if honour_verdicts:
        winner = select_verdict(fragments)
        if winner is not None:
            verdict = winner.verdict
            reason = winner.reason
        if not verdict.is_blocking:
            modified_input = next(
                (f.modified_input for f in fragments if f.modified_input is not None),
                None,
            )
        stopper = next((f for f in fragments if not f.continue_), None)
        if stopper is not None:
            continue_ = False
            stop_reason = stopper.stop_reason
    else:
        # Reasons cannot block here; they are surfaced like context.
        contexts.extend(f.reason for f in fragments if f.reason)

    if force_stop:
        continue_ = False
        stop_reason = stop_reason or "Stopped by host"

    results = list(results or [])
    return FinalDecision(
        kind=event_kind.value,
        event_id=event_id,
        verdict=verdict,
        reason=reason,
        additional_context=_join(contexts),
        system_messages=system_messages,
        modified_input=modified_input,
        suppress_output=any(f.suppress_output for f in fragments),
        continue_=continue_,
        stop_reason=stop_reason,
        diagnostics=[r.diagnostic for r in results if r.diagnostic],
        results=results,
    )


def aggregate_results(
    kind: Union[EventKind, str],
    results: Sequence[HandlerResult],
    *,
    audit_tier: bool = False,
    force_stop: bool = False,
    event_id: str = "",
) -> FinalDecision:
    """Aggregate raw handler results (failures contribute diagnostics only)."""
    fragments = [r.fragment for r in results if r.fragment is not None]
    return aggregate(
        kind,
        fragments,
        audit_tier=audit_tier,
        force_stop=force_stop,
        event_id=event_id,
        results=list(results),
    )


def default_decision(kind: Union[EventKind, str], event_id: str = "") -> FinalDecision:
    """Decision for an occurrence with no handlers (or a disabled engine)."""
    return aggregate(kind, [], event_id=event_id)
