"""Process execution against real POSIX utilities."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time

import pytest

import cli_mcp_server as cm
from cli_mcp_server import ArgumentSpec, ChainStep, CommandExecutor, OutputSpec


def _run(coro):
    return asyncio.run(coro)


def _sh_tool(make_tool, output: OutputSpec | None = None):
    return make_tool(
        "sh",
        ArgumentSpec(name="script", positional=True, required=True),
        command="-c",
        output=output,
    )


def _sh_catalog(make_catalog, tool, **kw):
    kw.setdefault("disable_injection_check", True)
    return make_catalog(tool, command="sh", **kw)


class TestExecute:
    def test_echo(self, make_catalog, make_tool):
        tool = make_tool("say", ArgumentSpec(name="msg", positional=True))
        out = _run(CommandExecutor().execute(make_catalog(tool), tool, {"msg": "hello"}))
        assert out == "hello\n"

    def test_stderr_appended_after_stdout(self, make_catalog, make_tool):
        tool = _sh_tool(make_tool)
        catalog = _sh_catalog(make_catalog, tool)
        out = _run(
            CommandExecutor().execute(catalog, tool, {"script": "echo out; echo err >&2"})
        )
        assert out == "out\n\nerr\n"

    def test_nonzero_exit(self, make_catalog, make_tool):
        tool = _sh_tool(make_tool)
        catalog = _sh_catalog(make_catalog, tool)
        with pytest.raises(cm.ExecutionFailed) as exc:
            _run(CommandExecutor().execute(catalog, tool, {"script": "echo partial; exit 3"}))
        assert exc.value.exit_code == 3
        assert "partial" in exc.value.output
        assert "exit code 3" in str(exc.value)

    def test_missing_binary(self, make_catalog, make_tool):
        tool = make_tool("t")
        catalog = make_catalog(tool, command="definitely-not-a-real-binary-xyz")
        with pytest.raises(cm.ExecutionFailed) as exc:
            _run(CommandExecutor().execute(catalog, tool, {}))
        assert exc.value.exit_code is None

    @pytest.mark.parametrize("msg", ["a\x00b", "\ud800"])
    def test_unspawnable_argv(self, make_catalog, make_tool, msg):
        tool = make_tool("say", ArgumentSpec(name="msg", positional=True))
        with pytest.raises(cm.ExecutionFailed) as exc:
            _run(CommandExecutor().execute(make_catalog(tool), tool, {"msg": msg}))
        assert exc.value.exit_code is None
        assert exc.value.output == ""

    def test_timeout(self, make_catalog, make_tool):
        tool = make_tool("nap", ArgumentSpec(name="secs", positional=True))
        catalog = make_catalog(tool, command="sleep", timeout=0.2)
        t0 = time.perf_counter()
        with pytest.raises(cm.ExecutionTimeout) as exc:
            _run(CommandExecutor().execute(catalog, tool, {"secs": "5"}))
        assert time.perf_counter() - t0 < 4
        assert exc.value.timeout == 0.2
        assert exc.value.output == ""

    def test_default_timeout_used_when_unset(self, make_catalog, make_tool):
        tool = make_tool("nap", ArgumentSpec(name="secs", positional=True))
        catalog = make_catalog(tool, command="sleep")
        with pytest.raises(cm.ExecutionTimeout):
            _run(CommandExecutor(default_timeout=0.2).execute(catalog, tool, {"secs": "5"}))

    def test_output_truncated(self, make_catalog, make_tool):
        tool = _sh_tool(make_tool)
        catalog = _sh_catalog(make_catalog, tool, max_output_size=100)
        out = _run(CommandExecutor().execute(catalog, tool, {"script": "printf '%05000d' 0"}))
        assert out.endswith(cm.TRUNCATION_MARKER)
        assert len(out.encode()) <= 100 + len(cm.TRUNCATION_MARKER.encode())
        assert out.startswith("0" * 100)

    def test_small_output_not_truncated(self, make_catalog, make_tool):
        tool = make_tool("say", ArgumentSpec(name="msg", positional=True))
        catalog = make_catalog(tool, max_output_size=100)
        out = _run(CommandExecutor().execute(catalog, tool, {"msg": "short"}))
        assert cm.TRUNCATION_MARKER not in out

    def test_environment_last_wins(self, make_catalog, make_tool):
        tool = _sh_tool(make_tool)
        catalog = _sh_catalog(
            make_catalog, tool, environment=("GREETING=hi", "GREETING=bye")
        )
        out = _run(CommandExecutor().execute(catalog, tool, {"script": "echo $GREETING"}))
        assert out == "bye\n"

    def test_inherits_process_environment(self, make_catalog, make_tool, monkeypatch):
        monkeypatch.setenv("CLI_MCP_TEST_VAR", "inherited")
        tool = _sh_tool(make_tool)
        catalog = _sh_catalog(make_catalog, tool)
        out = _run(CommandExecutor().execute(catalog, tool, {"script": "echo $CLI_MCP_TEST_VAR"}))
        assert out == "inherited\n"

    def test_configured_working_dir(self, make_catalog, make_tool, tmp_path):
        tool = make_tool("where")
        catalog = make_catalog(tool, command="pwd", working_dir=str(tmp_path))
        out = _run(CommandExecutor().execute(catalog, tool, {}))
        assert os.path.realpath(out.strip()) == os.path.realpath(tmp_path)

    def test_dot_working_dir_uses_server_default(self, make_catalog, make_tool, tmp_path):
        tool = make_tool("where")
        catalog = make_catalog(tool, command="pwd", working_dir=".")
        out = _run(CommandExecutor(default_workdir=str(tmp_path)).execute(catalog, tool, {}))
        assert os.path.realpath(out.strip()) == os.path.realpath(tmp_path)

    def test_dot_working_dir_uses_cwd(self, make_catalog, make_tool, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        tool = make_tool("where")
        out = _run(CommandExecutor().execute(make_catalog(tool, command="pwd"), tool, {}))
        assert os.path.realpath(out.strip()) == os.path.realpath(tmp_path)

    def test_parsed_output(self, make_catalog, make_tool):
        tool = _sh_tool(make_tool, output=OutputSpec(type="lines"))
        catalog = _sh_catalog(make_catalog, tool)
        out = _run(CommandExecutor().execute(catalog, tool, {"script": "printf 'a\\n\\n b \\n'"}))
        assert json.loads(out) == ["a", "b"]

    def test_parse_failure_returns_raw(self, make_catalog, make_tool, caplog):
        tool = make_tool(
            "say", ArgumentSpec(name="msg", positional=True), output=OutputSpec(type="json")
        )
        with caplog.at_level(logging.WARNING, logger="cli-mcp"):
            out = _run(CommandExecutor().execute(make_catalog(tool), tool, {"msg": "not json"}))
        assert out == "not json\n"
        assert "returning raw" in caplog.text

    @pytest.mark.parametrize("payload", ["NaN", "[1, Infinity]", '{"x": -Infinity}'])
    def test_non_standard_json_returned_raw(self, make_catalog, make_tool, payload):
        tool = make_tool(
            "say", ArgumentSpec(name="msg", positional=True), output=OutputSpec(type="json")
        )
        out = _run(CommandExecutor().execute(make_catalog(tool), tool, {"msg": payload}))
        assert out == payload + "\n"

    def test_builder_errors_propagate(self, make_catalog, make_tool):
        tool = make_tool("say", ArgumentSpec(name="msg", positional=True, required=True))
        with pytest.raises(cm.MissingRequiredArgument):
            _run(CommandExecutor().execute(make_catalog(tool), tool, {}))

    def test_sandbox_errors_propagate(self, make_catalog, make_tool):
        tool = make_tool("say", ArgumentSpec(name="msg", positional=True))
        catalog = make_catalog(tool, blocked_commands=("echo",))
        with pytest.raises(cm.SecurityViolation):
            _run(CommandExecutor().execute(catalog, tool, {"msg": "hi"}))

    def test_injection_blocked_before_execution(self, make_catalog, make_tool, tmp_path):
        marker = tmp_path / "pwned"
        tool = make_tool("say", ArgumentSpec(name="msg", positional=True))
        with pytest.raises(cm.SecurityViolation):
            _run(
                CommandExecutor().execute(
                    make_catalog(tool), tool, {"msg": f"x; touch {marker}"}
                )
            )
        assert not marker.exists()


# ── chains ───────────────────────────────────────────────────────────


class TestChain:
    def _catalog(self, make_catalog, make_tool, *steps: ChainStep, **kw):
        tool = make_tool("steps", chain=tuple(steps))
        return make_catalog(tool, command="sh", **kw), tool

    def test_outputs_joined(self, make_catalog, make_tool):
        catalog, tool = self._catalog(
            make_catalog,
            make_tool,
            ChainStep(command="-c", arguments=("echo one",)),
            ChainStep(command="-c", arguments=("echo two",)),
        )
        out = _run(CommandExecutor().execute_chain(catalog, tool.chain, {}))
        assert out == "one\n\ntwo\n"

    def test_placeholders_substituted(self, make_catalog, make_tool):
        catalog, tool = self._catalog(
            make_catalog,
            make_tool,
            ChainStep(command="-c", arguments=("echo ${name} ${count} ${unknown}",)),
        )
        out = _run(
            CommandExecutor().execute_chain(catalog, tool.chain, {"name": "ada", "count": 2})
        )
        assert out == "ada 2\n"

    def test_aborts_at_first_failure(self, make_catalog, make_tool, tmp_path):
        marker = tmp_path / "third"
        catalog, tool = self._catalog(
            make_catalog,
            make_tool,
            ChainStep(command="-c", arguments=("echo one",)),
            ChainStep(command="-c", arguments=("exit 4",)),
            ChainStep(command="-c", arguments=(f"touch {marker}",)),
        )
        with pytest.raises(cm.ChainStepFailed) as exc:
            _run(CommandExecutor().execute_chain(catalog, tool.chain, {}))
        assert exc.value.step == 2
        assert exc.value.output == "one\n"
        assert isinstance(exc.value.cause, cm.ExecutionFailed)
        assert "chain step 2 failed" in str(exc.value)
        assert not marker.exists()

    def test_first_step_failure_has_no_output(self, make_catalog, make_tool):
        catalog, tool = self._catalog(
            make_catalog, make_tool, ChainStep(command="-c", arguments=("exit 1",))
        )
        with pytest.raises(cm.ChainStepFailed) as exc:
            _run(CommandExecutor().execute_chain(catalog, tool.chain, {}))
        assert exc.value.step == 1
        assert exc.value.output == ""

    def test_unspawnable_step(self, make_catalog, make_tool):
        catalog, tool = self._catalog(
            make_catalog,
            make_tool,
            ChainStep(command="-c", arguments=("echo one",)),
            ChainStep(command="-c", arguments=("echo ${text}",)),
        )
        with pytest.raises(cm.ChainStepFailed) as exc:
            _run(CommandExecutor().execute_chain(catalog, tool.chain, {"text": "a\x00b"}))
        assert exc.value.step == 2
        assert exc.value.output == "one\n"
        assert isinstance(exc.value.cause, cm.ExecutionFailed)
        assert exc.value.cause.exit_code is None

    def test_step_timeout(self, make_catalog, make_tool):
        catalog, tool = self._catalog(
            make_catalog,
            make_tool,
            ChainStep(command="-c", arguments=("sleep 5",)),
            timeout=0.2,
        )
        with pytest.raises(cm.ChainStepFailed) as exc:
            _run(CommandExecutor().execute_chain(catalog, tool.chain, {}))
        assert isinstance(exc.value.cause, cm.ExecutionTimeout)

    def test_chain_skips_sandbox(self, make_catalog, make_tool):
        catalog, tool = self._catalog(
            make_catalog,
            make_tool,
            ChainStep(command="-c", arguments=("echo a; echo b",)),
            blocked_commands=("sh",),
        )
        out = _run(CommandExecutor().execute_chain(catalog, tool.chain, {}))
        assert out == "a\nb\n"


def test_tracer_sees_command_and_output(make_catalog, make_tool):
    tracer = cm.RecordingTracer()
    tool = make_tool("say", ArgumentSpec(name="msg", positional=True))
    catalog = make_catalog(tool, environment=("A=1",))
    _run(CommandExecutor(tracer=tracer).execute(catalog, tool, {"msg": "hi"}))
    command, output = tracer.events
    assert command.type == "command"
    assert command.direction == "internal"
    assert command.metadata["args"] == ["hi"]
    assert command.metadata["env"] == ["A=1"]
    assert output.type == "output"
    assert output.data == "hi\n"
    assert output.metadata == {"exit_code": 0, "success": True}
