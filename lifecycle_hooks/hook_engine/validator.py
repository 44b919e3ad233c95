"""
Static checks for hooks configuration mappings.

Looks at a hooks mapping (event kind -> list of ``{matcher, hooks}`` groups)
before anything is registered and reports every problem at once, with a
path to the offending entry (``PreToolUse[0].hooks[1]``). Matcher patterns are
compiled here so a bad regex is reported at load time, never at dispatch.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .events import EventKind
from .matcher import compile_matcher
from .models import HandlerType, MatchCompileError

logger = logging.getLogger(__name__)

VALID_EVENT_TYPES = [kind.value for kind in EventKind]

VALID_HOOK_TYPES = [hook_type.value for hook_type in HandlerType]

# Keys that may carry the handler target, by handler type.
_TARGET_KEYS = {
    HandlerType.COMMAND.value: ("command",),
    HandlerType.PROMPT.value: ("prompt", "command"),
    HandlerType.AGENT.value: ("prompt", "command"),
}

_BOOL_FLAGS = ("async", "once", "enabled")


def validate_hooks_config(config: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """
    Check every kind, group and handler entry in ``config``.

    Returns:
        ``(True, [])`` when the mapping is usable, else ``(False, messages)``
    """
    if not isinstance(config, dict):
        return False, ["Configuration must be a dictionary"]

    errors: List[str] = []
    for event_type, hook_groups in config.items():
        if event_type.startswith("_"):
            continue

        if event_type not in VALID_EVENT_TYPES:
            errors.append(
                f"Unknown event type '{event_type}'. "
                f"Valid types: {', '.join(VALID_EVENT_TYPES)}"
            )
        elif not isinstance(hook_groups, list):
            errors.append(f"'{event_type}' must be a list of hook groups")
        else:
            for i, group in enumerate(hook_groups):
                errors.extend(_validate_group(f"{event_type}[{i}]", group))

    if errors:
        logger.debug(f"Hook configuration failed validation with {len(errors)} error(s)")
    return not errors, errors


def _validate_group(path: str, group: Any) -> List[str]:
    if not isinstance(group, dict):
        return [f"'{path}' must be an object with 'matcher' and 'hooks'"]

    errors: List[str] = []
    matcher = group.get("matcher")
    if matcher is not None and not isinstance(matcher, str):
        errors.append(f"'{path}.matcher' must be a string")
    elif matcher is not None:
        try:
            compile_matcher(matcher)
        except MatchCompileError as e:
            errors.append(f"'{path}.matcher': {e}")

    hooks = group.get("hooks")
    if hooks is None:
        errors.append(f"'{path}' missing required field 'hooks'")
    elif not isinstance(hooks, list):
        errors.append(f"'{path}.hooks' must be a list")
    else:
        for j, hook in enumerate(hooks):
            errors.extend(_validate_hook(f"{path}.hooks[{j}]", hook))
    return errors


def _validate_hook(path: str, hook: Any) -> List[str]:
    prefix = f"'{path}'"
    if not isinstance(hook, dict):
        return [f"{prefix} must be an object"]

    errors: List[str] = []
    hook_type = hook.get("type")
    if not hook_type:
        errors.append(f"{prefix} missing required field 'type'")
    elif hook_type not in VALID_HOOK_TYPES:
        errors.append(
            f"{prefix} invalid type '{hook_type}'. "
            f"Must be one of: {', '.join(VALID_HOOK_TYPES)}"
        )
    elif not any(hook.get(key) for key in _TARGET_KEYS[hook_type]):
        wanted = " (or 'command')" if hook_type != HandlerType.COMMAND.value else ""
        field = _TARGET_KEYS[hook_type][0]
        errors.append(
            f"{prefix} missing required field '{field}'{wanted} for type '{hook_type}'"
        )

    timeout = hook.get("timeout")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        errors.append(f"{prefix} 'timeout' must be a positive number of seconds, got: {timeout!r}")

    if hook.get("async") and hook_type not in (None, HandlerType.COMMAND.value):
        errors.append(f"{prefix} 'async' is only supported for command hooks")

    errors.extend(
        f"{prefix} '{flag}' must be true or false"
        for flag in _BOOL_FLAGS
        if flag in hook and not isinstance(hook[flag], bool)
    )
    return errors


def format_validation_report(
    is_valid: bool, errors: List[str], suggestions: Optional[List[str]] = None
) -> str:
    if is_valid:
        lines = ["✓ Configuration is valid"]
    else:
        lines = [f"✗ Configuration has {len(errors)} error(s):"]
        lines.extend(f"  • {error}" for error in errors)

    if suggestions:
        lines.append("")
        lines.append("Suggestions:")
        lines.extend(f"  → {suggestion}" for suggestion in suggestions)
    return "\n".join(lines)


def get_config_suggestions(config: Dict[str, Any], errors: List[str]) -> List[str]:
    """Hints for the most common mistakes found in ``errors``."""
    hints = [
        (
            "Unknown event type",
            "Valid event types are: " + ", ".join(VALID_EVENT_TYPES),
        ),
        (
            "missing required field 'command'",
            "Command hooks run through the shell, e.g. "
            "'bash \"$CLAUDE_PROJECT_DIR\"/.claude/hooks/check.sh'",
        ),
        (
            "Invalid matcher pattern",
            "Matchers are regular expressions, e.g. 'Edit|Write' or 'mcp__.*'; "
            "use '*' or leave empty to match everything",
        ),
        (
            "'timeout'",
            "Timeouts are given in seconds (command hooks default to 600)",
        ),
    ]
    return [hint for needle, hint in hints if any(needle in e for e in errors)]
