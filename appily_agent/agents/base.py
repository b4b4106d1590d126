"""Agent backend registry.

The controller never branches on the provider. Each provider maps to one
BackendSpec: the driver module that runs inside the sandbox, the credential
environment variables forwarded to it, the shell snippet that installs the
backend runtime, and the stop reasons that count as a natural end of turn.
Adding a backend is adding one entry to BACKENDS.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from appily_agent.models import Provider

CLAUDE_STOP_REASONS = frozenset({"end_turn", "stop_sequence", "max_tokens", "stop"})
GEMINI_STOP_REASONS = CLAUDE_STOP_REASONS | {"STOP", "MAX_TOKENS"}


class BackendSpec(BaseModel):
    """One (driver, credential set) pair."""

    provider: Provider
    driver_module: str
    log_name: str
    credential_env: tuple[str, ...]
    optional_env: tuple[str, ...] = ()
    install_snippet: str
    stop_reasons: frozenset[str] = Field(default=CLAUDE_STOP_REASONS)

    model_config = {"frozen": True}

    @property
    def driver_path(self) -> str:
        return self.driver_module.replace(".", "/") + ".py"


BACKENDS: dict[str, BackendSpec] = {
    "claude": BackendSpec(
        provider="claude",
        driver_module="appily_agent.drivers.claude_cli",
        log_name="claude-agent.log",
        credential_env=("CLAUDE_CODE_OAUTH_TOKEN",),
        install_snippet=(
            "command -v claude >/dev/null 2>&1 "
            "|| npm install -g @anthropic-ai/claude-code"
        ),
    ),
    "claude-sdk": BackendSpec(
        provider="claude-sdk",
        driver_module="appily_agent.drivers.claude_sdk",
        log_name="claude-sdk-agent.log",
        credential_env=("ANTHROPIC_API_KEY",),
        install_snippet=(
            'python3 -c "import claude_agent_sdk" 2>/dev/null '
            "|| pip3 install --break-system-packages claude-agent-sdk"
        ),
    ),
    "gemini": BackendSpec(
        provider="gemini",
        driver_module="appily_agent.drivers.gemini_cli",
        log_name="gemini-agent.log",
        credential_env=(
            "GOOGLE_APPLICATION_CREDENTIALS_JSON",
            "GOOGLE_CLOUD_PROJECT",
        ),
        optional_env=("GOOGLE_CLOUD_LOCATION", "GEMINI_MODEL"),
        install_snippet=(
            "command -v gemini >/dev/null 2>&1 "
            "|| npm install -g @google/gemini-cli"
        ),
        stop_reasons=GEMINI_STOP_REASONS,
    ),
}


def resolve_backend(provider: str) -> BackendSpec:
    spec = BACKENDS.get(provider)
    if spec is None:
        known = ", ".join(sorted(BACKENDS))
        raise ValueError(f"Unknown agent provider: {provider} (expected one of: {known})")
    return spec
