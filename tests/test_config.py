from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from appily_agent.agents.base import BACKENDS, GEMINI_STOP_REASONS, resolve_backend
from appily_agent.agents.setup import build_install_script, run_backend_install
from appily_agent.config import DriverSettings
from appily_agent.drivers.claude_cli import build_claude_argv, claude_env
from appily_agent.drivers.gemini_cli import (
    build_gemini_argv,
    build_gemini_prompt,
    build_source_factory,
    vertex_env,
)
from appily_agent.pipeline import TurnPipeline
from appily_agent.sandbox.base import CommandResult
from appily_agent.store import MemoryStore
from appily_agent.utils.logging import bind_log_context, log_event, reset_log_context

BASE_ENV = {
    "SUPABASE_URL": "https://db.example.com",
    "SUPABASE_SERVICE_ROLE_KEY": "key",
    "PROJECT_ID": "p1",
    "USER_PROMPT": "Say hello",
}


def test_driver_settings_report_missing_variables() -> None:
    with pytest.raises(RuntimeError, match="PROJECT_ID, USER_PROMPT"):
        DriverSettings.from_env({"SUPABASE_URL": "x", "SUPABASE_SERVICE_ROLE_KEY": "y"})


def test_driver_settings_from_env(tmp_path: Path) -> None:
    system_file = tmp_path / "system_prompt.md"
    system_file.write_text("Be concise.")
    settings = DriverSettings.from_env({
        **BASE_ENV,
        "SESSION_ID": "s-1",
        "RECOVERY_SYSTEM_PROMPT_FILE": str(system_file),
        "AGENT_STOP_REASONS": "end_turn, STOP ,",
    })
    assert settings.session_id == "s-1"
    assert settings.working_directory == "/home/user/project"
    assert settings.stop_reasons == frozenset({"end_turn", "STOP"})
    assert settings.system_prompt() == ""
    assert settings.recovery_system_prompt() == "Be concise."


def test_new_session_recovery_falls_back_to_system_prompt(tmp_path: Path) -> None:
    system_file = tmp_path / "system_prompt.md"
    system_file.write_text("Be concise.")
    settings = DriverSettings.from_env({**BASE_ENV, "SYSTEM_PROMPT_FILE": str(system_file)})
    assert settings.session_id is None
    assert settings.stop_reasons is None
    assert settings.system_prompt() == "Be concise."
    assert settings.recovery_system_prompt() == "Be concise."


def test_resolve_backend() -> None:
    assert set(BACKENDS) == {"claude", "claude-sdk", "gemini"}
    assert resolve_backend("gemini").stop_reasons == GEMINI_STOP_REASONS
    assert resolve_backend("claude-sdk").driver_path == "appily_agent/drivers/claude_sdk.py"
    with pytest.raises(ValueError, match="Unknown agent provider"):
        resolve_backend("codex")


def test_install_script_embeds_backend_snippet() -> None:
    script = build_install_script(resolve_backend("gemini"))
    assert "npm install -g @google/gemini-cli" in script
    assert "checking gemini runtime" in script


class InstallSandbox:
    sandbox_id = "sbx"

    def __init__(self) -> None:
        self.files: dict[str, str] = {}

    async def run(self, cmd: str, **_: object) -> CommandResult:
        return CommandResult(1, "", "npm ERR! code ENOTFOUND")

    async def write_file(self, path: str, content: str, **_: object) -> None:
        self.files[path] = content


def test_failed_install_is_returned_not_raised() -> None:
    sandbox = InstallSandbox()
    result = asyncio.run(run_backend_install(sandbox, resolve_backend("claude")))
    assert result.exit_code == 1
    assert "/home/user/appily/install_claude.sh" in sandbox.files


def test_claude_argv() -> None:
    assert build_claude_argv("Say hello", system_prompt="Be concise.") == [
        "claude",
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
        "--append-system-prompt",
        "Be concise.",
        "Say hello",
    ]
    resumed = build_claude_argv("Say hello", resume_session_id="s-1")
    assert resumed[:3] == ["claude", "-r", "s-1"]
    assert "--append-system-prompt" not in resumed
    assert claude_env({"PATH": "/usr/bin"})["IS_SANDBOX"] == "1"


def test_gemini_argv_and_prompt() -> None:
    argv = build_gemini_argv(model="gemini-test", resume_session_id="g-1")
    assert argv[:3] == ["gemini", "-r", "g-1"]
    assert argv[argv.index("--model") + 1] == "gemini-test"
    assert argv[-2:] == ["--output-format", "stream-json"]
    assert build_gemini_prompt("Say hello", None) == "Say hello"
    assert build_gemini_prompt("Say hello", "Be concise.") == "Be concise.\n\nSay hello"


def test_vertex_env_writes_credentials_and_strips_api_keys(tmp_path: Path) -> None:
    credentials = json.dumps({"type": "service_account", "project_id": "proj"})
    path = tmp_path / "gcp.json"
    env = vertex_env(
        {
            "GOOGLE_APPLICATION_CREDENTIALS_JSON": credentials,
            "GOOGLE_CLOUD_PROJECT": "proj",
            "GEMINI_API_KEY": "should-go",
        },
        credentials_path=str(path),
    )
    assert path.read_text() == credentials
    assert env["GOOGLE_APPLICATION_CREDENTIALS"] == str(path)
    assert env["GOOGLE_GENAI_USE_VERTEXAI"] == "true"
    assert env["GOOGLE_CLOUD_LOCATION"] == "global"
    assert "GEMINI_API_KEY" not in env
    assert "GOOGLE_APPLICATION_CREDENTIALS_JSON" not in env


def test_vertex_env_requires_project(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError, match="GOOGLE_CLOUD_PROJECT"):
        vertex_env(
            {"GOOGLE_APPLICATION_CREDENTIALS_JSON": "{}"},
            credentials_path=str(tmp_path / "gcp.json"),
        )


def test_log_event_writes_json_lines_with_context(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
) -> None:
    log_path = tmp_path / "appily.jsonl"
    monkeypatch.setenv("APPILY_LOG_PATH", str(log_path))
    token = bind_log_context(project_id="p1")
    try:
        record = log_event(
            component="store",
            event="append.failed",
            level="error",
            message="boom",
            headers={"api_key": "abc", "Accept": "json"},
        )
    finally:
        reset_log_context(token)

    assert record["project_id"] == "p1"
    written = json.loads(log_path.read_text().splitlines()[0])
    assert written["event"] == "append.failed"
    assert written["headers"]["Accept"] == "json"
    assert written["headers"]["api_key"] == "***"


def test_gemini_credential_failure_ends_turn_with_error() -> None:
    settings = DriverSettings.from_env(BASE_ENV)
    factory = build_source_factory(
        settings,
        environ={"GOOGLE_APPLICATION_CREDENTIALS_JSON": "{}"},
    )
    store = MemoryStore()
    pipeline = TurnPipeline(
        project_id="p1",
        user_prompt="Say hello",
        source_factory=factory,
        events=store,
        state=store,
    )

    async def run():
        await store.set_running("p1", 4242)
        return await pipeline.run()

    outcome = asyncio.run(run())
    assert outcome.status == "error"
    (result,) = [e.event_data for e in store.events if e.event_type == "result"]
    assert "GOOGLE_CLOUD_PROJECT" in result["error"]
    assert store.projects["p1"].agent_pid is None
