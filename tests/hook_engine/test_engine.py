"""Tests for hook engine main class."""

import asyncio
import json
import logging
import os
import time

import pytest

from lifecycle_hooks.hook_engine import HandlerSpec, HookEngine, Scope, Verdict


def _group(*commands, matcher="*", **hook_options):
    return {
        "matcher": matcher,
        "hooks": [
            {"type": "command", "command": command, "timeout": 5, **hook_options}
            for command in commands
        ],
    }


def _bash(project_dir, **extra):
    return {
        "payload": {"tool_name": "Bash", "tool_input": {"command": "ls"}},
        "cwd": str(project_dir),
        **extra,
    }


class TestHookEngineInit:
    def test_init_without_config(self):
        engine = HookEngine()
        assert engine.count_hooks() == 0

    def test_init_with_valid_config(self):
        engine = HookEngine({"PreToolUse": [_group("echo test")]})
        assert engine.count_hooks() == 1
        assert engine.count_hooks("PreToolUse") == 1

    def test_init_with_invalid_config_strict(self):
        with pytest.raises(ValueError, match="Invalid hook configuration"):
            HookEngine({"InvalidEvent": []}, strict_validation=True)

    def test_init_with_invalid_config_non_strict(self):
        engine = HookEngine(
            {"InvalidEvent": [], "Stop": [_group("echo ok")]}, strict_validation=False
        )
        assert engine.count_hooks() == 1

    def test_non_string_matcher_skipped_when_lenient(self):
        config = {
            "PreToolUse": [
                {"matcher": 5, "hooks": [{"type": "command", "command": "echo bad"}]},
                _group("echo good", matcher="Bash"),
            ]
        }
        engine = HookEngine(config, strict_validation=False)
        assert [h.target for h in engine.get_hooks_for_event("PreToolUse")] == ["echo good"]

    def test_settings_read_from_config_file(self, isolated_settings):
        isolated_settings.mkdir()
        (isolated_settings / "hooks.cfg").write_text(
            "[hooks]\nfail_closed_on_timeout = true\ndisable_all_hooks = yes\n"
        )
        engine = HookEngine()
        assert engine.fail_closed_on_timeout is True
        assert engine.disabled is True


@pytest.mark.asyncio
class TestProcessEvent:
    async def test_no_hooks_for_event(self, project_dir):
        engine = HookEngine()
        decision = await engine.process_event("PreToolUse", **_bash(project_dir))
        assert decision.verdict is Verdict.ALLOW
        assert decision.blocked is False
        assert decision.executed_hooks == 0

    async def test_unknown_event(self):
        engine = HookEngine()
        with pytest.raises(ValueError, match="Unknown event kind"):
            await engine.process_event("NotAnEvent", {})

    async def test_deny_supersedes_allow(self, project_dir):
        allow = json.dumps({"hookSpecificOutput": {"permissionDecision": "allow"}})
        config = {
            "PreToolUse": [
                _group(
                    f"echo '{allow}'",
                    "echo 'blocked: disallowed path' >&2; exit 2",
                    matcher="Bash",
                )
            ]
        }
        engine = HookEngine(config)
        decision = await engine.process_event("PreToolUse", **_bash(project_dir))
        assert decision.executed_hooks == 2
        assert decision.verdict is Verdict.DENY
        assert decision.reason == "blocked: disallowed path"
        assert decision.blocked is True

    async def test_non_matching_hook_skipped(self, project_dir):
        engine = HookEngine({"PreToolUse": [_group("exit 2", matcher="Edit|Write")]})
        decision = await engine.process_event("PreToolUse", **_bash(project_dir))
        assert decision.executed_hooks == 0
        assert decision.blocked is False

    async def test_kind_without_match_field_runs_everything(self, project_dir):
        config = {
            "UserPromptSubmit": [
                _group("echo first", matcher="Bash"),
                _group("echo second", matcher="never-matches"),
            ]
        }
        engine = HookEngine(config)
        decision = await engine.process_event(
            "UserPromptSubmit", {"prompt": "hello"}, cwd=str(project_dir)
        )
        assert decision.executed_hooks == 2
        assert decision.additional_context == "first\nsecond"

    async def test_duplicate_handlers_invoked_once(self, project_dir):
        command = "echo run >> runs.log"
        engine = HookEngine({"PreToolUse": [_group(command)]})
        engine.load_config({"PreToolUse": [_group(command)]}, scope=Scope.USER)
        decision = await engine.process_event("PreToolUse", **_bash(project_dir))
        assert decision.executed_hooks == 1
        assert (project_dir / "runs.log").read_text().splitlines() == ["run"]

    async def test_one_shot_handler_runs_once(self, project_dir):
        config = {
            "SessionStart": [_group("echo fired >> once.log", matcher="", once=True)]
        }
        engine = HookEngine(config)
        for _ in range(3):
            await engine.process_event(
                "SessionStart", {"source": "startup"}, cwd=str(project_dir)
            )
            assert engine.resolve("SessionStart", "startup") == []
        assert (project_dir / "once.log").read_text().splitlines() == ["fired"]
        assert engine.count_hooks("SessionStart") == 0

    async def test_one_shot_handler_not_run_by_overlapping_occurrences(self, project_dir):
        config = {
            "PreToolUse": [
                _group("sleep 0.3; echo fired >> once.log", matcher="Bash", once=True)
            ]
        }
        engine = HookEngine(config)
        first, second = await asyncio.gather(
            engine.process_event("PreToolUse", **_bash(project_dir)),
            engine.process_event("PreToolUse", **_bash(project_dir)),
        )
        assert first.executed_hooks + second.executed_hooks == 1
        assert (project_dir / "once.log").read_text().splitlines() == ["fired"]
        assert engine.count_hooks("PreToolUse") == 0

    async def test_debug_log_includes_execution_summary(self, project_dir, caplog):
        engine = HookEngine({"PreToolUse": [_group("echo ok", "exit 1")]})
        with caplog.at_level(logging.DEBUG, logger="lifecycle_hooks.hook_engine.engine"):
            await engine.process_event("PreToolUse", **_bash(project_dir))
        assert "Executed 2 hook(s)" in caplog.text
        assert "Failed hooks:" in caplog.text

    async def test_async_result_arrives_on_later_delivery(self, project_dir):
        output = json.dumps({"hookSpecificOutput": {"additionalContext": "lint ok"}})
        config = {
            "PostToolUse": [_group(f"sleep 0.3; echo '{output}'", matcher="Bash", **{"async": True})]
        }
        delivered = []
        engine = HookEngine(config, on_decision=delivered.append)
        payload = {"tool_name": "Bash", "tool_input": {}, "tool_response": "ok"}

        start = time.perf_counter()
        first = await engine.process_event("PostToolUse", payload, cwd=str(project_dir))
        assert time.perf_counter() - start < 0.3
        assert first.deferred == []
        assert first.executed_hooks == 0

        await engine.wait_for_background()
        assert first.deferred == []

        second = await engine.process_event(
            "Stop", {"stop_hook_active": False}, cwd=str(project_dir)
        )
        assert [d.additional_context for d in second.deferred] == ["lint ok"]
        assert second.deferred[0].event_id == first.event_id
        assert delivered == [first, second]

    async def test_timeout_does_not_delay_other_handlers(self, project_dir):
        config = {
            "UserPromptSubmit": [
                {
                    "hooks": [
                        {"type": "command", "command": "sleep 30", "timeout": 0.5},
                        {"type": "command", "command": "echo context"},
                    ]
                }
            ]
        }
        engine = HookEngine(config)
        start = time.perf_counter()
        decision = await engine.process_event(
            "UserPromptSubmit", {"prompt": "hi"}, cwd=str(project_dir)
        )
        assert time.perf_counter() - start < 5
        assert decision.blocked is False
        assert decision.additional_context == "context"
        assert len(decision.diagnostics) == 1
        assert "timed out" in decision.diagnostics[0]

    async def test_fail_closed_timeout(self, project_dir):
        config = {"Stop": [{"hooks": [{"type": "command", "command": "sleep 30", "timeout": 0.3}]}]}
        engine = HookEngine(config, fail_closed_on_timeout=True)
        decision = await engine.process_event("Stop", {}, cwd=str(project_dir))
        assert decision.verdict is Verdict.BLOCK

    async def test_every_handler_failing_still_decides(self, project_dir):
        engine = HookEngine({"PreToolUse": [_group("exit 1", "exit 3")]})
        decision = await engine.process_event("PreToolUse", **_bash(project_dir))
        assert decision.verdict is Verdict.ALLOW
        assert len(decision.failed_hooks) == 2

    async def test_post_tool_use_cannot_block(self, project_dir):
        engine = HookEngine({"PostToolUse": [_group("echo broken >&2; exit 2")]})
        decision = await engine.process_event(
            "PostToolUse",
            {"tool_name": "Bash", "tool_input": {}, "tool_response": ""},
            cwd=str(project_dir),
        )
        assert decision.blocked is False
        assert decision.diagnostics == ["[echo broken >&2; exit 2] broken"]

    async def test_audit_tier_config_change(self, project_dir):
        engine = HookEngine({"ConfigChange": [_group("echo no >&2; exit 2")]})
        audited = await engine.process_event(
            "ConfigChange", {"source": "policy_settings"}, cwd=str(project_dir)
        )
        assert audited.blocked is False
        blocked = await engine.process_event(
            "ConfigChange", {"source": "project_settings"}, cwd=str(project_dir)
        )
        assert blocked.verdict is Verdict.BLOCK
        assert blocked.reason == "no"

    async def test_stop_continue_false(self, project_dir):
        output = json.dumps({"continue": False, "stopReason": "quota reached"})
        engine = HookEngine({"Stop": [_group(f"echo '{output}'")]})
        decision = await engine.process_event("Stop", {}, cwd=str(project_dir))
        assert decision.continue_ is False
        assert decision.stop_reason == "quota reached"

    async def test_force_stop(self, project_dir):
        engine = HookEngine()
        decision = await engine.process_event(
            "Stop", {}, force_stop=True, cwd=str(project_dir)
        )
        assert decision.continue_ is False

    async def test_disabled_engine_runs_nothing(self, project_dir):
        engine = HookEngine({"PreToolUse": [_group("exit 2")]}, disabled=True)
        decision = await engine.process_event("PreToolUse", **_bash(project_dir))
        assert decision.executed_hooks == 0
        assert decision.blocked is False

    async def test_env_vars_passed(self, project_dir):
        engine = HookEngine(
            {"UserPromptSubmit": [{"hooks": [{"type": "command", "command": 'echo "$TEAM"'}]}]},
            env_vars={"TEAM": "platform"},
        )
        decision = await engine.process_event(
            "UserPromptSubmit", {"prompt": "x"}, cwd=str(project_dir)
        )
        assert decision.additional_context == "platform"


@pytest.mark.asyncio
class TestComponentScope:
    async def test_register_and_unregister(self, project_dir, tmp_path):
        root = tmp_path / "formatter"
        root.mkdir()
        engine = HookEngine()
        engine.register_component(
            "formatter",
            {"UserPromptSubmit": [{"hooks": [{"type": "command", "command": 'echo "$CLAUDE_PLUGIN_ROOT"'}]}]},
            root=str(root),
        )
        decision = await engine.process_event(
            "UserPromptSubmit", {"prompt": "x"}, cwd=str(project_dir)
        )
        assert decision.additional_context == str(root)

        assert engine.unregister_component("formatter") == 1
        decision = await engine.process_event(
            "UserPromptSubmit", {"prompt": "x"}, cwd=str(project_dir)
        )
        assert decision.executed_hooks == 0

    async def test_component_runs_after_project(self, project_dir):
        engine = HookEngine({"UserPromptSubmit": [{"hooks": [{"type": "command", "command": "echo project"}]}]})
        engine.register_component(
            "extra",
            {"UserPromptSubmit": [{"hooks": [{"type": "command", "command": "echo component"}]}]},
        )
        decision = await engine.process_event(
            "UserPromptSubmit", {"prompt": "x"}, cwd=str(project_dir)
        )
        assert decision.additional_context == "project\ncomponent"


class TestHookManagement:
    def test_add_and_remove_hook(self):
        engine = HookEngine()
        hook = HandlerSpec(matcher="*", type="command", target="echo test", id="h1")
        engine.add_hook("PreToolUse", hook)
        assert engine.count_hooks() == 1
        assert engine.get_hooks_for_event("PreToolUse") == [hook]
        assert engine.remove_hook("PreToolUse", "h1") is True
        assert engine.count_hooks() == 0

    def test_reload_config_replaces_scope(self):
        engine = HookEngine({"Stop": [_group("echo a", "echo b")]})
        engine.load_config({"Stop": [_group("echo user")]}, scope=Scope.USER)
        engine.reload_config({"Stop": [_group("echo c")]})
        assert [h.target for h in engine.get_hooks_for_event("Stop")] == [
            "echo user",
            "echo c",
        ]

    def test_stats(self):
        engine = HookEngine({"Stop": [_group("echo a")]})
        stats = engine.get_stats()
        assert stats["total_hooks"] == 1
        assert stats["by_event"]["Stop"]["enabled"] == 1

    def test_update_env_vars(self):
        engine = HookEngine(env_vars={"A": "1"})
        engine.update_env_vars({"B": "2"})
        assert engine.env_vars == {"A": "1", "B": "2"}
        engine.set_env_vars({"C": "3"})
        assert engine.env_vars == {"C": "3"}


@pytest.mark.asyncio
class TestShutdown:
    async def test_shutdown_cancels_async_hooks(self, project_dir):
        config = {"PostToolUse": [_group("sleep 30", **{"async": True})]}
        engine = HookEngine(config)
        await engine.process_event(
            "PostToolUse",
            {"tool_name": "Bash", "tool_input": {}, "tool_response": ""},
            cwd=str(project_dir),
        )
        assert engine.coordinator.background_count == 1
        start = time.perf_counter()
        await engine.shutdown()
        assert time.perf_counter() - start < 10
        assert engine.coordinator.background_count == 0
        assert engine.sink.closed is True


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancelled_dispatch_kills_handler_process(self, project_dir):
        engine = HookEngine({"PreToolUse": [_group("echo $$ > hook.pid; exec sleep 30")]})
        task = asyncio.create_task(engine.process_event("PreToolUse", **_bash(project_dir)))

        pid_file = project_dir / "hook.pid"
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)
        pid = int(pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    async def test_cancelled_one_shot_handler_can_run_again(self, project_dir):
        config = {"SessionStart": [_group("sleep 30", matcher="", once=True)]}
        engine = HookEngine(config)
        task = asyncio.create_task(
            engine.process_event("SessionStart", {"source": "startup"}, cwd=str(project_dir))
        )
        await asyncio.sleep(0.2)
        assert engine.resolve("SessionStart", "startup") == []

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(engine.resolve("SessionStart", "startup")) == 1
