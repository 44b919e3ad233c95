"""
Handler invocation: runs one handler for one event occurrence.

Command handler contract:
  - Input is the event envelope as one JSON document on STDIN
  - CLAUDE_PROJECT_DIR / CLAUDE_HOOK_EVENT / CLAUDE_PLUGIN_ROOT are exported
  - Exit code 0  => success, stdout optionally carries a JSON decision
  - Exit code 2  => blocking verdict on blockable kinds (stderr is the reason),
                    a non-blocking error everywhere else
  - Anything else => non-blocking error, stderr kept for diagnostics

Prompt and agent handlers are evaluated by a model (see evaluator.py).

Timeouts are hard: the subprocess group is killed, the model call is cancelled.
"""

import asyncio
import json
import logging
import os
import re
import signal
import time
from typing import Dict, List, Optional

from pydantic import ValidationError

from .evaluator import VerdictEvaluator
from .events import EventEnvelope
from .models import (
    DecisionFragment,
    FailureKind,
    HandlerResult,
    HandlerSpec,
    HandlerType,
    HookEvaluationError,
)
from .output import fragment_from_stdout

logger = logging.getLogger(__name__)

_USE_PROCESS_GROUPS = os.name == "posix"


def _build_stdin_payload(envelope: EventEnvelope) -> bytes:
    return json.dumps(envelope.to_wire(), ensure_ascii=False).encode("utf-8")


def _substitute_variables(
    command: str,
    envelope: EventEnvelope,
    handler: HandlerSpec,
    env_vars: Dict[str, str],
) -> str:
    substitutions = {
        "CLAUDE_PROJECT_DIR": envelope.cwd,
        "CLAUDE_HOOK_EVENT": envelope.kind.value,
    }
    if handler.root:
        substitutions["CLAUDE_PLUGIN_ROOT"] = handler.root
    substitutions.update(env_vars)

    result = command
    for var, value in substitutions.items():
        result = result.replace(f"${{{var}}}", str(value))
        result = re.sub(rf"\${re.escape(var)}(?=\W|$)", lambda m: str(value), result)
    return result


def _build_environment(
    envelope: EventEnvelope,
    handler: HandlerSpec,
    env_vars: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    env = os.environ.copy()
    env["CLAUDE_PROJECT_DIR"] = envelope.cwd
    env["CLAUDE_HOOK_EVENT"] = envelope.kind.value
    if handler.root:
        env["CLAUDE_PLUGIN_ROOT"] = handler.root
    if env_vars:
        env.update(env_vars)
    return env


async def _kill_process(proc: asyncio.subprocess.Process) -> None:
    """Kill the handler and everything it spawned, then reap it."""
    if proc.returncode is not None:
        return
    try:
        if _USE_PROCESS_GROUPS:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    try:
        await asyncio.wait_for(proc.wait(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning(f"Hook process {proc.pid} did not exit after SIGKILL")


def _timeout_result(
    handler: HandlerSpec,
    envelope: EventEnvelope,
    timeout: float,
    elapsed_ms: float,
    fail_closed: bool,
) -> HandlerResult:
    message = f"Hook timed out after {timeout:g}s"
    fragment = None
    if (fail_closed or envelope.policy.fail_closed_on_timeout) and envelope.can_block:
        fragment = DecisionFragment(
            verdict=envelope.policy.block_verdict, reason=message
        )
    logger.warning(f"{message}: {handler.target}")
    return HandlerResult(
        handler_id=handler.id,
        handler_type=handler.type,
        target=handler.target,
        fragment=fragment,
        failure=FailureKind.TIMEOUT,
        elapsed_ms=elapsed_ms,
        error=message,
    )


def _error_result(
    handler: HandlerSpec, error: str, elapsed_ms: float, **kwargs
) -> HandlerResult:
    return HandlerResult(
        handler_id=handler.id,
        handler_type=handler.type,
        target=handler.target,
        failure=FailureKind.NON_BLOCKING_ERROR,
        elapsed_ms=elapsed_ms,
        error=error,
        **kwargs,
    )


def _map_exit_status(
    handler: HandlerSpec,
    envelope: EventEnvelope,
    exit_code: int,
    stdout: str,
    stderr: str,
    elapsed_ms: float,
) -> HandlerResult:
    captured = dict(exit_code=exit_code, stdout=stdout, stderr=stderr)

    if exit_code == 0:
        try:
            fragment = fragment_from_stdout(stdout, envelope.policy)
        except ValidationError as e:
            return _error_result(
                handler, f"Invalid hook output: {e.errors()}", elapsed_ms, **captured
            )
        return HandlerResult(
            handler_id=handler.id,
            handler_type=handler.type,
            target=handler.target,
            fragment=fragment,
            elapsed_ms=elapsed_ms,
            **captured,
        )

    if exit_code == 2 and envelope.can_block:
        reason = stderr.strip() or "Blocked by hook (no reason given)"
        return HandlerResult(
            handler_id=handler.id,
            handler_type=handler.type,
            target=handler.target,
            fragment=DecisionFragment(verdict=envelope.policy.block_verdict, reason=reason),
            elapsed_ms=elapsed_ms,
            **captured,
        )

    error = stderr.strip() or f"Hook exited with status {exit_code}"
    return _error_result(handler, error, elapsed_ms, **captured)


async def _invoke_command(
    handler: HandlerSpec,
    envelope: EventEnvelope,
    timeout: float,
    env_vars: Dict[str, str],
    fail_closed: bool,
) -> HandlerResult:
    command = _substitute_variables(handler.target, envelope, handler, env_vars)
    start_time = time.perf_counter()

    proc = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=envelope.cwd,
        env=_build_environment(envelope, handler, env_vars),
        start_new_session=_USE_PROCESS_GROUPS,
    )

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input=_build_stdin_payload(envelope)),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        await _kill_process(proc)
        duration_ms = (time.perf_counter() - start_time) * 1000
        return _timeout_result(handler, envelope, timeout, duration_ms, fail_closed)
    except asyncio.CancelledError:
        await _kill_process(proc)
        raise

    duration_ms = (time.perf_counter() - start_time) * 1000
    stdout_str = stdout.decode("utf-8", errors="replace") if stdout else ""
    stderr_str = stderr.decode("utf-8", errors="replace") if stderr else ""
    exit_code = proc.returncode if proc.returncode is not None else -1

    return _map_exit_status(
        handler, envelope, exit_code, stdout_str, stderr_str, duration_ms
    )


async def _invoke_model(
    handler: HandlerSpec,
    envelope: EventEnvelope,
    timeout: float,
    evaluator: VerdictEvaluator,
    fail_closed: bool,
) -> HandlerResult:
    start_time = time.perf_counter()
    try:
        verdict = await asyncio.wait_for(
            evaluator.evaluate(handler, envelope), timeout=timeout
        )
    except asyncio.TimeoutError:
        duration_ms = (time.perf_counter() - start_time) * 1000
        return _timeout_result(handler, envelope, timeout, duration_ms, fail_closed)
    except HookEvaluationError as e:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.warning(str(e))
        return _error_result(handler, str(e), duration_ms)

    duration_ms = (time.perf_counter() - start_time) * 1000
    policy = envelope.policy
    if verdict.ok:
        fragment = DecisionFragment(verdict=policy.default_verdict)
    else:
        fragment = DecisionFragment(
            verdict=policy.block_verdict,
            reason=verdict.reason or f"Blocked by {handler.type.value} hook",
        )
    return HandlerResult(
        handler_id=handler.id,
        handler_type=handler.type,
        target=handler.target,
        fragment=fragment,
        elapsed_ms=duration_ms,
    )


async def invoke_handler(
    handler: HandlerSpec,
    envelope: EventEnvelope,
    timeout: Optional[float] = None,
    *,
    evaluator: Optional[VerdictEvaluator] = None,
    env_vars: Optional[Dict[str, str]] = None,
    fail_closed: bool = False,
) -> HandlerResult:
    """
    Invoke one handler for one occurrence.

    Never raises for handler-side problems: crashes, bad output and timeouts
    come back as a HandlerResult with ``failure`` set. Cancellation of the
    caller propagates (after the subprocess is killed).
    """
    effective_timeout = timeout if timeout is not None else handler.effective_timeout
    start_time = time.perf_counter()
    try:
        if handler.type is HandlerType.COMMAND:
            return await _invoke_command(
                handler, envelope, effective_timeout, env_vars or {}, fail_closed
            )
        return await _invoke_model(
            handler,
            envelope,
            effective_timeout,
            evaluator or VerdictEvaluator(),
            fail_closed,
        )
    except Exception as e:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.error(f"Hook execution failed: {e}", exc_info=True)
        return _error_result(handler, f"Hook execution error: {e}", duration_ms)


def format_execution_summary(results: List[HandlerResult]) -> str:
    if not results:
        return "No hooks executed"
    total = len(results)
    successful = sum(1 for r in results if r.success)
    blocked = sum(1 for r in results if r.blocking)
    total_duration = sum(r.elapsed_ms for r in results)
    summary = [
        f"Executed {total} hook(s)",
        f"Successful: {successful}",
        f"Blocking: {blocked}",
        f"Total duration: {total_duration:.2f}ms",
    ]
    failed = [r for r in results if not r.success]
    if failed:
        summary.append("\nFailed hooks:")
        for result in failed:
            summary.append(f"  - {result.target} ({result.failure.value})")
            if result.error:
                summary.append(f"    Error: {result.error}")
    return "\n".join(summary)
