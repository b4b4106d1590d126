"""Sandbox abstraction layer.

Provides the Sandbox protocol and connect_sandbox(), which attaches to an
existing sandbox (the web app creates them) or creates a new one.
"""

from appily_agent.sandbox.base import CommandResult, Sandbox, SandboxConfig
from appily_agent.sandbox.e2b import E2BSandbox


async def connect_sandbox(provider: str, config: SandboxConfig) -> Sandbox:
    """Attach to config.sandbox_id, or create a sandbox when it is unset."""
    if provider == "e2b":
        if config.sandbox_id:
            return await E2BSandbox.connect(config)
        return await E2BSandbox.create(config)
    raise ValueError(f"Unknown sandbox provider: {provider}")


__all__ = [
    "CommandResult",
    "E2BSandbox",
    "Sandbox",
    "SandboxConfig",
    "connect_sandbox",
]
