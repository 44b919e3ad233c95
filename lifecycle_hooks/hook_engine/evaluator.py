"""
LLM-evaluated handlers: prompt hooks and agent hooks.

Both ask a model for a structured ``{"ok": bool, "reason": str}`` verdict via
pydantic-ai. Prompt hooks get a single judgment with no tools; agent hooks get
a bounded multi-turn run with read-only tools over the event's working
directory.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.exceptions import AgentRunError, UserError
from pydantic_ai.models import Model
from pydantic_ai.usage import UsageLimits

from .events import EventEnvelope
from .models import HandlerSpec, HandlerType, HookEvaluationError

logger = logging.getLogger(__name__)

ARGUMENTS_PLACEHOLDER = "$ARGUMENTS"

# One judgment plus one retry for malformed structured output.
PROMPT_REQUEST_LIMIT = 2
MAX_AGENT_TURNS = 50

_MAX_READ_CHARS = 20_000
_MAX_LIST_ENTRIES = 200
_MAX_GREP_MATCHES = 100
_MAX_GREP_FILE_BYTES = 1_000_000

PROMPT_INSTRUCTIONS = (
    "You are a lifecycle hook evaluating an event raised by a coding agent. "
    "Read the hook instructions and the event JSON, then decide whether the "
    "event should proceed. Respond with ok=true to let it proceed, or ok=false "
    "with a short reason explaining what must change."
)

AGENT_INSTRUCTIONS = (
    PROMPT_INSTRUCTIONS
    + " You may inspect the project with the read-only tools provided "
    "(read_file, list_files, grep_files) before deciding. Paths are relative "
    "to the event's working directory. Do not guess: verify with the tools."
)


class HookVerdict(BaseModel):
    """Structured verdict returned by prompt and agent hooks."""

    ok: bool
    reason: Optional[str] = None


def format_query(template: str, envelope: EventEnvelope) -> str:
    """Embed the event JSON into the hook's template."""
    event_json = json.dumps(envelope.to_wire(), ensure_ascii=False, indent=2)
    if ARGUMENTS_PLACEHOLDER in template:
        return template.replace(ARGUMENTS_PLACEHOLDER, event_json)
    return f"{template}\n\nEvent:\n{event_json}"


def _resolve_inside(root: Path, path: str) -> Path:
    candidate = (root / path).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        raise PermissionError(f"{path} is outside {root}") from None
    return candidate


def build_introspection_tools(cwd: str) -> List[Callable[..., str]]:
    """Read-only tools for agent hooks, confined to ``cwd``."""
    root = Path(cwd).resolve()

    def read_file(path: str, offset: int = 0, limit: int = 400) -> str:
        """Read lines from a text file in the project.

        Args:
            path: File path relative to the project root.
            offset: First line to return (0-based).
            limit: Maximum number of lines to return.
        """
        try:
            target = _resolve_inside(root, path)
            lines = target.read_text(encoding="utf-8", errors="replace").splitlines()
        except (OSError, PermissionError) as e:
            return f"Error: {e}"
        chunk = "\n".join(lines[max(offset, 0) : max(offset, 0) + max(limit, 1)])
        return chunk[:_MAX_READ_CHARS]

    def list_files(directory: str = ".") -> str:
        """List the entries of a directory in the project.

        Args:
            directory: Directory path relative to the project root.
        """
        try:
            target = _resolve_inside(root, directory)
            entries = sorted(os.listdir(target))
        except (OSError, PermissionError) as e:
            return f"Error: {e}"
        shown = [
            name + ("/" if (target / name).is_dir() else "")
            for name in entries[:_MAX_LIST_ENTRIES]
        ]
        if len(entries) > _MAX_LIST_ENTRIES:
            shown.append(f"... {len(entries) - _MAX_LIST_ENTRIES} more")
        return "\n".join(shown)

    def grep_files(pattern: str, directory: str = ".") -> str:
        """Search project files for a regular expression.

        Args:
            pattern: Regular expression to search for.
            directory: Directory path relative to the project root.
        """
        try:
            regex = re.compile(pattern)
            target = _resolve_inside(root, directory)
        except (re.error, PermissionError) as e:
            return f"Error: {e}"
        hits: List[str] = []
        for dirpath, dirnames, filenames in os.walk(target):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for filename in filenames:
                file_path = Path(dirpath) / filename
                try:
                    if file_path.stat().st_size > _MAX_GREP_FILE_BYTES:
                        continue
                    text = file_path.read_text(encoding="utf-8", errors="ignore")
                except OSError:
                    continue
                for line_no, line in enumerate(text.splitlines(), 1):
                    if regex.search(line):
                        rel = file_path.relative_to(root)
                        hits.append(f"{rel}:{line_no}: {line.strip()[:200]}")
                        if len(hits) >= _MAX_GREP_MATCHES:
                            return "\n".join(hits)
        return "\n".join(hits) if hits else "No matches"

    return [read_file, list_files, grep_files]


class VerdictEvaluator:
    """
    Evaluates prompt and agent handlers with a pydantic-ai model.

    The model is resolved per handler: the handler's own ``model``, then the
    evaluator's default, then the ``evaluator_model`` setting.
    """

    def __init__(self, model: Optional[Union[Model, str]] = None):
        self.model = model

    def _model_for(self, handler: HandlerSpec) -> Union[Model, str]:
        if handler.model:
            return handler.model
        if self.model is not None:
            return self.model
        from lifecycle_hooks.config import get_evaluator_model_name

        model_name = get_evaluator_model_name()
        if not model_name:
            raise HookEvaluationError(
                "No evaluator model configured for prompt/agent hooks "
                "(set 'evaluator_model' or LIFECYCLE_HOOKS_MODEL)"
            )
        return model_name

    def _build_agent(self, handler: HandlerSpec, envelope: EventEnvelope) -> Agent[Any, HookVerdict]:
        model = self._model_for(handler)
        if handler.type is HandlerType.AGENT:
            return Agent(
                model,
                instructions=AGENT_INSTRUCTIONS,
                output_type=HookVerdict,
                tools=build_introspection_tools(envelope.cwd),
                retries=1,
            )
        return Agent(
            model,
            instructions=PROMPT_INSTRUCTIONS,
            output_type=HookVerdict,
            retries=1,
        )

    async def evaluate(self, handler: HandlerSpec, envelope: EventEnvelope) -> HookVerdict:
        """
        Ask the model for a verdict on one occurrence.

        Raises:
            HookEvaluationError: no model, model failure, or turn limit exceeded
        """
        if handler.type is HandlerType.COMMAND:
            raise HookEvaluationError("Command handlers are not evaluated by a model")

        request_limit = (
            MAX_AGENT_TURNS if handler.type is HandlerType.AGENT else PROMPT_REQUEST_LIMIT
        )
        query = format_query(handler.target, envelope)
        try:
            agent = self._build_agent(handler, envelope)
            result = await agent.run(
                query, usage_limits=UsageLimits(request_limit=request_limit)
            )
        except (AgentRunError, UserError) as e:
            raise HookEvaluationError(f"{handler.type.value} hook evaluation failed: {e}") from e

        logger.debug(
            f"{handler.type.value} hook {handler.id} verdict: ok={result.output.ok}"
        )
        return result.output
