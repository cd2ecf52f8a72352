"""Live bet client: agent gateway, response heuristics and the bet lifecycle orchestrator."""

__version__ = "0.1.0"
