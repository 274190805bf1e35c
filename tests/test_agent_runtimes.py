"""
Test Agent Runtimes
===================

CLI invocation and session-file handling for the Claude, OpenClaw and Pi
runtimes, plus the shared subprocess runner.
"""

import asyncio
import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone

import pytest

from clawui.agent_claude import ClaudeAgentRuntime, encode_project_cwd as claude_encode
from clawui.agent_openclaw import OpenClawAgentRuntime
from clawui.agent_pimono import NPX_PACKAGE, PiMonoAgentRuntime, encode_project_cwd as pi_encode
from clawui.agent_runtime import (
    AgentBinaryNotFound,
    SessionErr,
    SessionNotFound,
    SessionOk,
    clean_env,
    is_process_alive,
    run_cli,
)


def write_jsonl(path, *entries):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(e) + "\n" for e in entries))
    return path


class TestRunCli:
    """The shared subprocess runner."""

    @pytest.mark.asyncio
    async def test_success_captures_stdout(self):
        pids = []
        result = await run_cli(
            [sys.executable, "-c", "print('hello from agent')"],
            agent_type="claude",
            timeout=30,
            on_pid=pids.append,
        )
        assert isinstance(result, SessionOk)
        assert result.output == "hello from agent"
        assert len(pids) == 1

    @pytest.mark.asyncio
    async def test_nonzero_exit_without_output_is_error(self):
        result = await run_cli(
            [sys.executable, "-c", "import sys; sys.stderr.write('bad flag'); sys.exit(2)"],
            agent_type="claude",
            timeout=30,
        )
        assert isinstance(result, SessionErr)
        assert result.kind == "error"
        assert result.exit_code == 2
        assert "bad flag" in result.message

    @pytest.mark.asyncio
    async def test_nonzero_exit_with_output_is_ok(self):
        result = await run_cli(
            [sys.executable, "-c", "print('partial work'); import sys; sys.exit(1)"],
            agent_type="claude",
            timeout=30,
        )
        assert isinstance(result, SessionOk)
        assert result.exit_code == 1

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        result = await run_cli(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            agent_type="claude",
            timeout=0.5,
        )
        assert isinstance(result, SessionErr)
        assert result.kind == "timeout"
        assert "timed out" in result.message

    @pytest.mark.asyncio
    async def test_idle_process_is_hung(self):
        result = await run_cli(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            agent_type="claude",
            timeout=20,
            idle_timeout=0.3,
        )
        assert isinstance(result, SessionErr)
        assert result.kind == "hung"

    @pytest.mark.asyncio
    async def test_activity_keeps_silent_process_alive(self):
        result = await run_cli(
            [sys.executable, "-c", "import time; time.sleep(1.0); print('done at last')"],
            agent_type="claude",
            timeout=20,
            idle_timeout=0.3,
            activity=time.time,
        )
        assert isinstance(result, SessionOk)
        assert result.output == "done at last"

    @pytest.mark.asyncio
    async def test_stale_activity_still_hung(self):
        result = await run_cli(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            agent_type="claude",
            timeout=20,
            idle_timeout=0.3,
            activity=lambda: time.time() - 3600,
        )
        assert isinstance(result, SessionErr)
        assert result.kind == "hung"

    @pytest.mark.asyncio
    async def test_no_tasks_left_behind_after_kill(self):
        for idle_timeout, timeout in ((0.3, 20), (None, 0.3)):
            result = await run_cli(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                agent_type="claude",
                timeout=timeout,
                idle_timeout=idle_timeout,
            )
            assert isinstance(result, SessionErr)
            leftover = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            assert leftover == []

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self):
        with pytest.raises(AgentBinaryNotFound) as exc_info:
            await run_cli(["/nonexistent/agent-cli"], agent_type="openclaw", timeout=5)
        assert exc_info.value.agent_type == "openclaw"

    def test_clean_env_strips_nested_session_markers(self, monkeypatch):
        monkeypatch.setenv("CLAUDECODE", "1")
        env = clean_env({"EXTRA": "x"})
        assert "CLAUDECODE" not in env
        assert env["EXTRA"] == "x"

    def test_is_process_alive(self):
        assert is_process_alive(os.getpid())
        assert not is_process_alive(None)
        assert not is_process_alive(0)


class TestClaudeRuntime:
    def test_commands(self):
        runtime = ClaudeAgentRuntime("claude")
        argv, session_id = runtime.build_run_command("do it")
        assert argv == ["claude", "--dangerously-skip-permissions", "-p", "do it"]
        assert session_id is None
        assert "--resume" in runtime.build_resume_command("s1", "more")

    def test_parse_output_strips_ansi(self):
        runtime = ClaudeAgentRuntime("claude")
        assert runtime.parse_output("\x1b[32mdone\x1b[0m\r\n") == "done"

    def test_cwd_encoding(self):
        assert claude_encode("/home/me/.config/app") == "-home-me--config-app"

    def test_detect_and_analyze_session(self, tmp_path):
        runtime = ClaudeAgentRuntime("claude", home=tmp_path)
        project_dir = tmp_path / ".claude" / "projects" / claude_encode("/work/app")
        since = datetime.now(timezone.utc) - timedelta(seconds=5)
        old = write_jsonl(project_dir / "old.jsonl", {"type": "user", "message": {"content": "x"}})
        stale = time.time() - 3600
        os.utime(old, (stale, stale))
        write_jsonl(
            project_dir / "new.jsonl",
            {"type": "user", "message": {"role": "user", "content": "go"}},
            {"type": "assistant", "message": {"role": "assistant", "content": "finished", "usage": {"input_tokens": 42}}},
        )

        assert runtime.detect_new_session("/work/app", since) == "new"
        assert runtime.find_session_file("new") == project_dir / "new.jsonl"
        assert runtime.session_last_modified("new") is not None

        health = runtime.analyze_session("new")
        assert health.message_count == 2
        assert health.peak_tokens == 42
        assert health.last_assistant_text == "finished"

    def test_missing_session(self, tmp_path):
        runtime = ClaudeAgentRuntime("claude", home=tmp_path)
        assert runtime.analyze_session("nope") is None
        assert runtime.analyze_session(None) is None
        assert runtime.session_last_modified("nope") is None

    @staticmethod
    def fake_claude(tmp_path, body):
        script = tmp_path / "claude"
        script.write_text(f"#!{sys.executable}\nimport time\n{body}")
        script.chmod(0o755)
        return str(script)

    @pytest.mark.asyncio
    async def test_silent_run_with_growing_transcript_is_not_hung(self, tmp_path):
        work = tmp_path / "work"
        work.mkdir()
        transcript = tmp_path / ".claude" / "projects" / claude_encode(str(work)) / "s1.jsonl"
        transcript.parent.mkdir(parents=True)
        binary = self.fake_claude(tmp_path, (
            "for _ in range(8):\n"
            f"    with open({str(transcript)!r}, 'a') as f:\n"
            "        f.write('{}\\n')\n"
            "    time.sleep(0.3)\n"
            "print('all steps finished')\n"
        ))
        runtime = ClaudeAgentRuntime(binary, hung_idle_seconds=1, home=tmp_path)

        result = await runtime.run_session("do it", cwd=str(work), timeout=30)

        assert isinstance(result, SessionOk)
        assert result.output == "all steps finished"

    @pytest.mark.asyncio
    async def test_silent_run_without_transcript_is_hung(self, tmp_path):
        work = tmp_path / "work"
        work.mkdir()
        binary = self.fake_claude(tmp_path, "time.sleep(30)\n")
        runtime = ClaudeAgentRuntime(binary, hung_idle_seconds=0.5, home=tmp_path)

        result = await runtime.run_session("do it", cwd=str(work), timeout=30)

        assert isinstance(result, SessionErr)
        assert result.kind == "hung"


class TestOpenClawRuntime:
    def test_session_id_known_up_front(self):
        runtime = OpenClawAgentRuntime("openclaw")
        argv, session_id = runtime.build_run_command("task")
        assert session_id
        assert argv[argv.index("--session-id") + 1] == session_id

    def test_parse_json_output(self):
        runtime = OpenClawAgentRuntime("openclaw")
        stdout = json.dumps({"status": "ok", "message": {"content": [{"type": "text", "text": "all done"}]}})
        assert runtime.parse_output(stdout) == "all done"
        assert runtime.parse_output("plain text") == "plain text"

    def test_session_files_match_header_cwd(self, tmp_path):
        runtime = OpenClawAgentRuntime("openclaw", home=tmp_path)
        sessions = tmp_path / ".openclaw" / "agents" / "main" / "sessions"
        write_jsonl(sessions / "a.jsonl", {"type": "session", "cwd": "/work/app"})
        write_jsonl(sessions / "b.jsonl", {"type": "session", "cwd": "/elsewhere"})
        assert [p.stem for p in runtime.session_files("/work/app")] == ["a"]


class TestPiMonoRuntime:
    def test_npx_invocation(self):
        runtime = PiMonoAgentRuntime("/usr/bin/npx")
        argv, _ = runtime.build_run_command("task")
        assert argv[:2] == ["/usr/bin/npx", NPX_PACKAGE]

    def test_resume_requires_session_file(self, tmp_path):
        runtime = PiMonoAgentRuntime("pi", home=tmp_path)
        with pytest.raises(SessionNotFound):
            runtime.build_resume_command("missing", "continue")

        path = write_jsonl(
            tmp_path / ".pi" / "agent" / "sessions" / pi_encode("/work/app") / "s1.jsonl",
            {"type": "session", "id": "s1"},
        )
        argv = runtime.build_resume_command("s1", "continue")
        assert argv[-2:] == ["--session", str(path)]

    def test_cwd_encoding(self):
        assert pi_encode("/work/app") == "--work-app--"
