"""Tests for prompt and agent hook evaluation."""

import asyncio
import json

import pytest
from pydantic_ai.models.test import TestModel as ScriptedModel

from lifecycle_hooks import config as lh_config
from lifecycle_hooks.hook_engine.evaluator import (
    HookVerdict,
    VerdictEvaluator,
    build_introspection_tools,
    format_query,
)
from lifecycle_hooks.hook_engine.events import build_envelope
from lifecycle_hooks.hook_engine.executor import invoke_handler
from lifecycle_hooks.hook_engine.models import (
    FailureKind,
    HandlerSpec,
    HookEvaluationError,
    Verdict,
)


def _stop_envelope(project_dir):
    return build_envelope("Stop", {"stop_hook_active": False}, cwd=str(project_dir))


def _model(ok, reason=None):
    return ScriptedModel(call_tools=[], custom_output_args={"ok": ok, "reason": reason})


class TestFormatQuery:
    def test_arguments_placeholder(self, project_dir):
        query = format_query("Check this: $ARGUMENTS", _stop_envelope(project_dir))
        assert query.startswith("Check this: {")
        assert '"hook_event_name": "Stop"' in query

    def test_event_appended_without_placeholder(self, project_dir):
        query = format_query("Are all tasks done?", _stop_envelope(project_dir))
        head, event_json = query.split("\n\nEvent:\n")
        assert head == "Are all tasks done?"
        assert json.loads(event_json)["stop_hook_active"] is False


class TestIntrospectionTools:
    def _tools(self, project_dir):
        return {tool.__name__: tool for tool in build_introspection_tools(str(project_dir))}

    def test_read_file(self, project_dir):
        (project_dir / "notes.txt").write_text("one\ntwo\nthree\n")
        tools = self._tools(project_dir)
        assert tools["read_file"]("notes.txt") == "one\ntwo\nthree"
        assert tools["read_file"]("notes.txt", offset=1, limit=1) == "two"

    def test_read_outside_root_refused(self, project_dir, tmp_path):
        (tmp_path / "secret.txt").write_text("hidden")
        result = self._tools(project_dir)["read_file"]("../secret.txt")
        assert result.startswith("Error:")

    def test_missing_file(self, project_dir):
        assert self._tools(project_dir)["read_file"]("nope.txt").startswith("Error:")

    def test_list_files(self, project_dir):
        (project_dir / "src").mkdir()
        (project_dir / "README.md").write_text("hi")
        assert self._tools(project_dir)["list_files"]() == "README.md\nsrc/"

    def test_grep_files(self, project_dir):
        (project_dir / "app.py").write_text("import os\n# TODO: remove\n")
        result = self._tools(project_dir)["grep_files"]("TODO")
        assert result == "app.py:2: # TODO: remove"
        assert self._tools(project_dir)["grep_files"]("nothing") == "No matches"

    def test_grep_bad_pattern(self, project_dir):
        assert self._tools(project_dir)["grep_files"]("(").startswith("Error:")


@pytest.mark.asyncio
class TestVerdictEvaluator:
    async def test_prompt_ok(self, project_dir):
        handler = HandlerSpec(matcher="", type="prompt", target="Done?")
        verdict = await VerdictEvaluator(_model(True)).evaluate(
            handler, _stop_envelope(project_dir)
        )
        assert verdict == HookVerdict(ok=True, reason=None)

    async def test_agent_not_ok(self, project_dir):
        handler = HandlerSpec(matcher="", type="agent", target="Verify tests pass")
        verdict = await VerdictEvaluator(_model(False, "tests failing")).evaluate(
            handler, _stop_envelope(project_dir)
        )
        assert verdict.ok is False
        assert verdict.reason == "tests failing"

    async def test_agent_can_call_tools(self, project_dir):
        (project_dir / "README.md").write_text("hello")
        handler = HandlerSpec(matcher="", type="agent", target="Check the project")
        model = ScriptedModel(
            call_tools=["list_files"], custom_output_args={"ok": True, "reason": "seen"}
        )
        verdict = await VerdictEvaluator(model).evaluate(
            handler, _stop_envelope(project_dir)
        )
        assert verdict.ok is True

    async def test_no_model_configured(self, project_dir):
        handler = HandlerSpec(matcher="", type="prompt", target="Done?")
        with pytest.raises(HookEvaluationError, match="No evaluator model"):
            await VerdictEvaluator().evaluate(handler, _stop_envelope(project_dir))

    async def test_model_from_settings(self, monkeypatch):
        monkeypatch.setenv(lh_config.MODEL_ENV_VAR, "test")
        handler = HandlerSpec(matcher="", type="prompt", target="Done?")
        assert VerdictEvaluator()._model_for(handler) == "test"

    async def test_handler_model_overrides_default(self):
        handler = HandlerSpec(matcher="", type="prompt", target="Done?", model="test")
        assert VerdictEvaluator(_model(True))._model_for(handler) == "test"

    async def test_command_handlers_rejected(self, project_dir):
        handler = HandlerSpec(matcher="", type="command", target="true")
        with pytest.raises(HookEvaluationError):
            await VerdictEvaluator(_model(True)).evaluate(
                handler, _stop_envelope(project_dir)
            )


class SlowEvaluator(VerdictEvaluator):
    async def evaluate(self, handler, envelope):
        await asyncio.sleep(10)
        return HookVerdict(ok=True)


@pytest.mark.asyncio
class TestInvokeModelHandler:
    async def test_ok_maps_to_default_verdict(self, project_dir):
        handler = HandlerSpec(matcher="", type="prompt", target="Done?")
        result = await invoke_handler(
            handler, _stop_envelope(project_dir), evaluator=VerdictEvaluator(_model(True))
        )
        assert result.success is True
        assert result.fragment.verdict is Verdict.CONTINUE

    async def test_not_ok_blocks(self, project_dir):
        handler = HandlerSpec(matcher="", type="prompt", target="Done?")
        result = await invoke_handler(
            handler,
            _stop_envelope(project_dir),
            evaluator=VerdictEvaluator(_model(False, "2 tests failing")),
        )
        assert result.fragment.verdict is Verdict.BLOCK
        assert result.fragment.reason == "2 tests failing"

    async def test_not_ok_without_reason(self, project_dir):
        handler = HandlerSpec(matcher="", type="agent", target="Done?")
        result = await invoke_handler(
            handler,
            _stop_envelope(project_dir),
            evaluator=VerdictEvaluator(_model(False)),
        )
        assert result.fragment.reason == "Blocked by agent hook"

    async def test_timeout(self, project_dir):
        handler = HandlerSpec(matcher="", type="prompt", target="Done?", timeout=0.2)
        result = await invoke_handler(
            handler, _stop_envelope(project_dir), evaluator=SlowEvaluator()
        )
        assert result.failure is FailureKind.TIMEOUT
        assert result.fragment is None
