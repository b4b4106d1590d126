"""Agent backends shared by the controller and the drivers."""

from appily_agent.agents.base import BACKENDS, BackendSpec, resolve_backend

__all__ = [
    "BACKENDS",
    "BackendSpec",
    "resolve_backend",
]
