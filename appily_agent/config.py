"""Runtime configuration for the sandbox-side driver.

Tunables are module-level constants read from the environment. The driver
builds a DriverSettings once at startup from the env bundle assembled by the
controller (see controller.build_agent_env).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel

from appily_agent.models import DEFAULT_WORKING_DIRECTORY

AGENT_SILENCE_TIMEOUT_SECONDS = float(
    os.environ.get("AGENT_SILENCE_TIMEOUT_SECONDS", "60")
)
AGENT_INSTALL_TIMEOUT_SECONDS = int(
    os.environ.get("AGENT_INSTALL_TIMEOUT_SECONDS", "120")
)
AGENT_LAUNCH_TIMEOUT_SECONDS = int(
    os.environ.get("AGENT_LAUNCH_TIMEOUT_SECONDS", "5")
)
HISTORY_ASSISTANT_CHAR_LIMIT = int(
    os.environ.get("HISTORY_ASSISTANT_CHAR_LIMIT", "2000")
)
SNAPSHOT_MAX_FILE_BYTES = int(
    os.environ.get("SNAPSHOT_MAX_FILE_BYTES", str(50 * 1024 * 1024))
)
BUNDLE_EXPORT_TIMEOUT_SECONDS = int(
    os.environ.get("BUNDLE_EXPORT_TIMEOUT_SECONDS", "300")
)
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-3-pro-preview")

REMOTE_ROOT = "/home/user/appily"
REMOTE_LOG_DIR = "/home/user"

REQUIRED_DRIVER_ENV = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "PROJECT_ID",
    "USER_PROMPT",
)


class DriverSettings(BaseModel):
    """Everything one driver run needs, resolved from its environment."""

    supabase_url: str
    supabase_key: str
    project_id: str
    user_id: str = ""
    user_prompt: str
    working_directory: str = DEFAULT_WORKING_DIRECTORY
    session_id: str | None = None
    system_prompt_file: str | None = None
    recovery_system_prompt_file: str | None = None
    stop_reasons: frozenset[str] | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DriverSettings:
        env = os.environ if environ is None else environ
        missing = [name for name in REQUIRED_DRIVER_ENV if not env.get(name)]
        if missing:
            raise RuntimeError(
                "Missing required environment variables: "
                + ", ".join(missing)
            )
        raw_stop_reasons = (env.get("AGENT_STOP_REASONS") or "").strip()
        stop_reasons = (
            frozenset(
                reason.strip()
                for reason in raw_stop_reasons.split(",")
                if reason.strip()
            )
            if raw_stop_reasons
            else None
        )
        return cls(
            supabase_url=env["SUPABASE_URL"],
            supabase_key=env["SUPABASE_SERVICE_ROLE_KEY"],
            project_id=env["PROJECT_ID"],
            user_id=env.get("USER_ID", ""),
            user_prompt=env["USER_PROMPT"],
            working_directory=(
                env.get("WORKING_DIRECTORY") or DEFAULT_WORKING_DIRECTORY
            ),
            session_id=env.get("SESSION_ID") or None,
            system_prompt_file=env.get("SYSTEM_PROMPT_FILE") or None,
            recovery_system_prompt_file=(
                env.get("RECOVERY_SYSTEM_PROMPT_FILE") or None
            ),
            stop_reasons=stop_reasons,
        )

    def system_prompt(self) -> str:
        """System instructions for a fresh session (empty when resuming)."""
        return read_prompt_file(self.system_prompt_file)

    def recovery_system_prompt(self) -> str:
        """System instructions to resend when a resumed session was lost."""
        return read_prompt_file(
            self.recovery_system_prompt_file or self.system_prompt_file
        )


def read_prompt_file(path: str | None) -> str:
    if not path:
        return ""
    candidate = Path(path)
    if not candidate.is_file():
        return ""
    return candidate.read_text(encoding="utf-8")
