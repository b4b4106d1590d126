"""Claude Agent SDK driver -- runs inside the sandbox.

Same turn semantics as the CLI driver, but messages come from the SDK's
``query()`` as typed objects instead of stdout. A resume uses the SDK's
``resume`` option; a new session passes the system instructions directly.
"""

from __future__ import annotations

import argparse
import asyncio

from appily_agent.agents.base import resolve_backend
from appily_agent.config import DriverSettings
from appily_agent.pipeline import SourceFactory, run_driver
from appily_agent.sources import SdkSource


def build_source_factory(settings: DriverSettings) -> SourceFactory:
    def factory(
        prompt: str,
        resume_session_id: str | None,
        system_prompt: str | None,
    ) -> SdkSource:
        return SdkSource(
            prompt,
            cwd=settings.working_directory,
            resume_session_id=resume_session_id,
            system_prompt=system_prompt,
        )

    return factory


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one Claude Agent SDK turn")
    parser.parse_args()
    settings = DriverSettings.from_env()
    raise SystemExit(
        asyncio.run(
            run_driver(settings, resolve_backend("claude-sdk"), build_source_factory(settings))
        )
    )


if __name__ == "__main__":
    main()
