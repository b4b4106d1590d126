"""Claude Code CLI driver -- runs inside the sandbox.

Spawns ``claude -p --output-format stream-json`` in the project directory and
streams its output through the turn pipeline. A resumed turn passes ``-r`` with
the stored session id; the system instructions are appended only when a new
session starts (first turn, or the retry after a lost session).
"""

from __future__ import annotations

import argparse
import asyncio
import os

from appily_agent.agents.base import resolve_backend
from appily_agent.config import AGENT_SILENCE_TIMEOUT_SECONDS, DriverSettings
from appily_agent.pipeline import SourceFactory, run_driver
from appily_agent.protocol import ClaudeStreamTranslator
from appily_agent.sources import ProcessSource


def build_claude_argv(
    prompt: str,
    *,
    resume_session_id: str | None = None,
    system_prompt: str | None = None,
) -> list[str]:
    argv = ["claude"]
    if resume_session_id:
        argv += ["-r", resume_session_id]
    argv += [
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
    ]
    if system_prompt:
        argv += ["--append-system-prompt", system_prompt]
    argv.append(prompt)
    return argv


def claude_env(environ: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if environ is None else environ)
    env.setdefault("HOME", "/home/user")
    # Allows --dangerously-skip-permissions when the sandbox runs as root.
    env["IS_SANDBOX"] = "1"
    return env


def build_source_factory(
    settings: DriverSettings,
    *,
    silence_timeout: float = AGENT_SILENCE_TIMEOUT_SECONDS,
) -> SourceFactory:
    env = claude_env()

    def factory(
        prompt: str,
        resume_session_id: str | None,
        system_prompt: str | None,
    ) -> ProcessSource:
        return ProcessSource(
            build_claude_argv(
                prompt,
                resume_session_id=resume_session_id,
                system_prompt=system_prompt,
            ),
            translator=ClaudeStreamTranslator(),
            cwd=settings.working_directory,
            env=env,
            resume_session_id=resume_session_id,
            silence_timeout=silence_timeout,
        )

    return factory


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one Claude Code CLI turn")
    parser.add_argument(
        "--silence-timeout",
        type=float,
        default=AGENT_SILENCE_TIMEOUT_SECONDS,
        help="seconds to wait for the first output before failing the turn",
    )
    args = parser.parse_args()
    settings = DriverSettings.from_env()
    factory = build_source_factory(settings, silence_timeout=args.silence_timeout)
    raise SystemExit(asyncio.run(run_driver(settings, resolve_backend("claude"), factory)))


if __name__ == "__main__":
    main()
