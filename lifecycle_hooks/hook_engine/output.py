"""
Wire models for what a command handler prints on stdout (exit code 0).

The JSON object is optional: a handler that prints nothing, or prints plain
text, has no opinion (plain text becomes additional context only for kinds
whose policy says so).
"""

import json
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .events import KindPolicy
from .models import DecisionFragment, Verdict


class HookSpecificOutput(BaseModel):
    """Kind-specific part of a handler's output."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    hook_event_name: Optional[str] = Field(default=None, alias="hookEventName")
    permission_decision: Optional[Literal["allow", "deny", "ask"]] = Field(
        default=None, alias="permissionDecision"
    )
    permission_decision_reason: Optional[str] = Field(
        default=None, alias="permissionDecisionReason"
    )
    additional_context: Optional[str] = Field(default=None, alias="additionalContext")
    updated_input: Optional[Dict[str, Any]] = Field(default=None, alias="updatedInput")


class HookOutput(BaseModel):
    """The JSON document a command handler may print on stdout."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    continue_: bool = Field(default=True, alias="continue")
    stop_reason: Optional[str] = Field(default=None, alias="stopReason")
    suppress_output: bool = Field(default=False, alias="suppressOutput")
    system_message: Optional[str] = Field(default=None, alias="systemMessage")
    decision: Optional[Literal["approve", "block"]] = None
    reason: Optional[str] = None
    hook_specific_output: Optional[HookSpecificOutput] = Field(
        default=None, alias="hookSpecificOutput"
    )


def parse_hook_stdout(stdout: str) -> Optional[HookOutput]:
    """
    Parse handler stdout.

    Returns:
        The validated output, or None when stdout is empty or not a JSON object

    Raises:
        pydantic.ValidationError: stdout is a JSON object with invalid fields
    """
    text = (stdout or "").strip()
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return HookOutput.model_validate(data)


def to_fragment(output: HookOutput, policy: KindPolicy) -> DecisionFragment:
    verdict: Optional[Verdict] = None
    reason = output.reason
    additional_context = None
    modified_input = None

    specific = output.hook_specific_output
    if specific is not None:
        if specific.permission_decision:
            verdict = Verdict(specific.permission_decision)
        if specific.permission_decision_reason:
            reason = specific.permission_decision_reason
        additional_context = specific.additional_context
        modified_input = specific.updated_input

    if verdict is None and output.decision == "block":
        verdict = policy.block_verdict
    elif verdict is None and output.decision == "approve":
        verdict = policy.default_verdict

    return DecisionFragment(
        verdict=verdict,
        reason=reason,
        additional_context=additional_context,
        modified_input=modified_input,
        suppress_output=output.suppress_output,
        continue_=output.continue_,
        stop_reason=output.stop_reason,
        system_message=output.system_message,
    )


def fragment_from_stdout(stdout: str, policy: KindPolicy) -> DecisionFragment:
    """Map exit-0 stdout to a fragment (empty fragment = no opinion)."""
    output = parse_hook_stdout(stdout)
    if output is not None:
        return to_fragment(output, policy)
    text = (stdout or "").strip()
    if text and policy.stdout_is_context:
        return DecisionFragment(additional_context=text)
    return DecisionFragment()
