"""Gemini CLI driver -- runs inside the sandbox.

Gemini runs against Vertex AI: the service account JSON from the environment
is written to disk and the child gets the Vertex variables while any plain
API keys are removed so the CLI cannot fall back to them. The prompt goes in
on stdin; the CLI has no system-prompt flag, so the system instructions are
placed ahead of the prompt when a new session starts.
"""

from __future__ import annotations

import argparse
import asyncio
import os
from collections.abc import Mapping
from pathlib import Path

from appily_agent.agents.base import resolve_backend
from appily_agent.config import AGENT_SILENCE_TIMEOUT_SECONDS, GEMINI_MODEL, DriverSettings
from appily_agent.pipeline import SourceFactory, run_driver
from appily_agent.protocol import GeminiStreamTranslator
from appily_agent.sources import ProcessSource
from appily_agent.utils.helpers import tprint

print = tprint

GEMINI_CREDENTIALS_PATH = "/tmp/gcp-credentials.json"
STRIPPED_API_KEYS = ("GOOGLE_API_KEY", "GEMINI_API_KEY")


def build_gemini_argv(
    *,
    model: str = GEMINI_MODEL,
    resume_session_id: str | None = None,
) -> list[str]:
    argv = ["gemini"]
    if resume_session_id:
        argv += ["-r", resume_session_id]
    argv += [
        "--model",
        model,
        "--approval-mode",
        "yolo",
        "--output-format",
        "stream-json",
    ]
    return argv


def build_gemini_prompt(prompt: str, system_prompt: str | None) -> str:
    if not system_prompt:
        return prompt
    return f"{system_prompt}\n\n{prompt}"


def vertex_env(
    environ: Mapping[str, str] | None = None,
    *,
    credentials_path: str = GEMINI_CREDENTIALS_PATH,
) -> dict[str, str]:
    """Child environment for Vertex AI auth; writes the credentials file."""
    env = dict(os.environ if environ is None else environ)
    credentials_json = env.pop("GOOGLE_APPLICATION_CREDENTIALS_JSON", "")
    project = env.get("GOOGLE_CLOUD_PROJECT", "")
    if not credentials_json or not project:
        raise RuntimeError(
            "Gemini requires GOOGLE_APPLICATION_CREDENTIALS_JSON "
            "and GOOGLE_CLOUD_PROJECT"
        )
    Path(credentials_path).write_text(credentials_json, encoding="utf-8")
    print(f"[agent] Vertex AI credentials written to {credentials_path}")
    env.setdefault("HOME", "/home/user")
    env["GOOGLE_GENAI_USE_VERTEXAI"] = "true"
    env["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path
    env["GOOGLE_CLOUD_LOCATION"] = env.get("GOOGLE_CLOUD_LOCATION") or "global"
    for name in STRIPPED_API_KEYS:
        env.pop(name, None)
    return env


def build_source_factory(
    settings: DriverSettings,
    *,
    model: str = GEMINI_MODEL,
    silence_timeout: float = AGENT_SILENCE_TIMEOUT_SECONDS,
    environ: Mapping[str, str] | None = None,
) -> SourceFactory:
    """Credentials are written when a source is built, so a failure there
    becomes the turn's error outcome instead of crashing the driver."""

    def factory(
        prompt: str,
        resume_session_id: str | None,
        system_prompt: str | None,
    ) -> ProcessSource:
        return ProcessSource(
            build_gemini_argv(model=model, resume_session_id=resume_session_id),
            translator=GeminiStreamTranslator(),
            cwd=settings.working_directory,
            env=vertex_env(environ),
            stdin_text=build_gemini_prompt(prompt, system_prompt),
            resume_session_id=resume_session_id,
            silence_timeout=silence_timeout,
        )

    return factory


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one Gemini CLI turn")
    parser.add_argument("--model", default=GEMINI_MODEL)
    parser.add_argument(
        "--silence-timeout",
        type=float,
        default=AGENT_SILENCE_TIMEOUT_SECONDS,
        help="seconds to wait for the first output before failing the turn",
    )
    args = parser.parse_args()
    settings = DriverSettings.from_env()
    factory = build_source_factory(
        settings, model=args.model, silence_timeout=args.silence_timeout,
    )
    raise SystemExit(asyncio.run(run_driver(settings, resolve_backend("gemini"), factory)))


if __name__ == "__main__":
    main()
