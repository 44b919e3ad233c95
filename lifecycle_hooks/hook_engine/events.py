"""
Event kinds, per-kind dispatch policy and the event envelope builder.

Every lifecycle moment the host announces is an ``EventKind``. What the engine
is allowed to do with handler verdicts for that kind lives in a single
``KindPolicy`` table so the rules stay in one place instead of being spread
across the coordinator and aggregator.
"""

import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from .models import Verdict


class EventKind(str, Enum):
    """Lifecycle moments, valued by their wire name (``hook_event_name``)."""

    PRE_TOOL_USE = "PreToolUse"
    PERMISSION_REQUEST = "PermissionRequest"
    POST_TOOL_USE = "PostToolUse"
    POST_TOOL_USE_FAILURE = "PostToolUseFailure"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    NOTIFICATION = "Notification"
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"
    STOP = "Stop"
    SUBAGENT_START = "SubagentStart"
    SUBAGENT_STOP = "SubagentStop"
    TEAMMATE_IDLE = "TeammateIdle"
    TASK_COMPLETED = "TaskCompleted"
    CONFIG_CHANGE = "ConfigChange"
    PRE_COMPACT = "PreCompact"

    @classmethod
    def parse(cls, value: Union["EventKind", str]) -> "EventKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown event kind '{value}'. "
                f"Valid kinds: {', '.join(k.value for k in cls)}"
            ) from None


@dataclass(frozen=True)
class KindPolicy:
    """
    Capability flags for one event kind.

    Attributes:
        blockable: Handlers may veto or alter the triggering action
        match_field: Payload key matched against handler patterns (None = always fires)
        block_verdict: Verdict produced by exit code 2 / ok=false
        default_verdict: Verdict of a decision with no blocking fragment
        supports_async: Command handlers may run fire-and-forget
        awaits_handlers: Host waits for handlers before continuing
        audit_match_values: Match values forming the audit-only tier
        fail_closed_on_timeout: A handler timeout blocks instead of passing
        required_fields: Payload keys that must be present on the envelope
        stdout_is_context: Plain (non-JSON) stdout on exit 0 becomes additional context
    """

    blockable: bool
    match_field: Optional[str] = None
    block_verdict: Verdict = Verdict.BLOCK
    default_verdict: Verdict = Verdict.CONTINUE
    supports_async: bool = True
    awaits_handlers: bool = True
    audit_match_values: FrozenSet[str] = frozenset()
    fail_closed_on_timeout: bool = False
    required_fields: Tuple[str, ...] = ()
    stdout_is_context: bool = False

    def is_audit_tier(self, match_value: Optional[str]) -> bool:
        return match_value is not None and match_value in self.audit_match_values

    def can_block(self, match_value: Optional[str]) -> bool:
        """Whether verdicts are honoured for an occurrence with this match value."""
        return self.blockable and not self.is_audit_tier(match_value)


KIND_POLICIES: Dict[EventKind, KindPolicy] = {
    EventKind.PRE_TOOL_USE: KindPolicy(
        blockable=True,
        match_field="tool_name",
        block_verdict=Verdict.DENY,
        default_verdict=Verdict.ALLOW,
        required_fields=("tool_name", "tool_input"),
    ),
    EventKind.PERMISSION_REQUEST: KindPolicy(
        blockable=True,
        match_field="tool_name",
        block_verdict=Verdict.DENY,
        default_verdict=Verdict.ALLOW,
        supports_async=False,
        required_fields=("tool_name", "tool_input"),
    ),
    EventKind.POST_TOOL_USE: KindPolicy(
        blockable=False,
        match_field="tool_name",
        required_fields=("tool_name", "tool_input", "tool_response"),
    ),
    EventKind.POST_TOOL_USE_FAILURE: KindPolicy(
        blockable=False,
        match_field="tool_name",
        required_fields=("tool_name", "tool_input", "error"),
    ),
    EventKind.USER_PROMPT_SUBMIT: KindPolicy(
        blockable=True,
        required_fields=("prompt",),
        stdout_is_context=True,
    ),
    EventKind.NOTIFICATION: KindPolicy(
        blockable=False,
        match_field="notification_type",
        awaits_handlers=False,
        required_fields=("message",),
    ),
    EventKind.SESSION_START: KindPolicy(
        blockable=False,
        match_field="source",
        required_fields=("source",),
        stdout_is_context=True,
    ),
    EventKind.SESSION_END: KindPolicy(
        blockable=False,
        match_field="reason",
        required_fields=("reason",),
    ),
    EventKind.STOP: KindPolicy(blockable=True),
    EventKind.SUBAGENT_START: KindPolicy(
        blockable=False,
        match_field="agent_type",
        required_fields=("agent_type",),
    ),
    EventKind.SUBAGENT_STOP: KindPolicy(
        blockable=True,
        match_field="agent_type",
        required_fields=("agent_type",),
    ),
    EventKind.TEAMMATE_IDLE: KindPolicy(blockable=True),
    EventKind.TASK_COMPLETED: KindPolicy(blockable=True),
    EventKind.CONFIG_CHANGE: KindPolicy(
        blockable=True,
        match_field="source",
        supports_async=False,
        audit_match_values=frozenset({"policy_settings"}),
        required_fields=("source",),
    ),
    EventKind.PRE_COMPACT: KindPolicy(
        blockable=False,
        match_field="trigger",
        required_fields=("trigger",),
    ),
}


def get_policy(kind: Union[EventKind, str]) -> KindPolicy:
    return KIND_POLICIES[EventKind.parse(kind)]


def _make_serializable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k): _make_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_make_serializable(v) for v in obj]
    if isinstance(obj, (str, int, float, bool, type(None))):
        return obj
    if hasattr(obj, "__fspath__"):
        return os.fspath(obj)
    return str(obj)


@dataclass(frozen=True)
class EventEnvelope:
    """
    One occurrence of a lifecycle event.

    Read-only for every component downstream of the builder; the payload is a
    mapping proxy over JSON-safe data.
    """

    kind: EventKind
    payload: Mapping[str, Any]
    match_field: Optional[str] = None
    session_id: str = "default-session"
    cwd: str = field(default_factory=os.getcwd)
    transcript_path: Optional[str] = None
    permission_mode: str = "default"
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def policy(self) -> KindPolicy:
        return KIND_POLICIES[self.kind]

    @property
    def can_block(self) -> bool:
        return self.policy.can_block(self.match_field)

    def to_wire(self) -> Dict[str, Any]:
        """The JSON object written to a command handler's stdin."""
        wire: Dict[str, Any] = {"session_id": self.session_id}
        if self.transcript_path:
            wire["transcript_path"] = self.transcript_path
        wire["cwd"] = self.cwd
        wire["permission_mode"] = self.permission_mode
        wire["hook_event_name"] = self.kind.value
        for key, value in self.payload.items():
            wire.setdefault(key, _thaw(value))
        return wire


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def build_envelope(
    kind: Union[EventKind, str],
    payload: Optional[Dict[str, Any]] = None,
    *,
    session_id: Optional[str] = None,
    cwd: Optional[str] = None,
    transcript_path: Optional[str] = None,
    permission_mode: str = "default",
    timestamp: Optional[float] = None,
) -> EventEnvelope:
    """
    Build the canonical envelope for one event occurrence.

    Raises:
        ValueError: unknown kind, or a required payload field is missing
    """
    event_kind = EventKind.parse(kind)
    policy = KIND_POLICIES[event_kind]
    data = _make_serializable(dict(payload or {}))

    missing = [name for name in policy.required_fields if name not in data]
    if missing:
        raise ValueError(
            f"{event_kind.value} payload missing required field(s): {', '.join(missing)}"
        )

    match_value = None
    if policy.match_field is not None:
        raw = data.get(policy.match_field)
        match_value = None if raw is None else str(raw)

    return EventEnvelope(
        kind=event_kind,
        payload=_freeze(data),
        match_field=match_value,
        session_id=session_id or "default-session",
        cwd=cwd or os.getcwd(),
        transcript_path=transcript_path,
        permission_mode=permission_mode,
        timestamp=time.time() if timestamp is None else timestamp,
    )
