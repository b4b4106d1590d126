from appily_agent.sandbox.e2b.backend import E2BSandbox

__all__ = ["E2BSandbox"]
