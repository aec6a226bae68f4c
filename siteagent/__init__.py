"""Site Agent Orchestrator — provisions and reconciles website support agents and their knowledge bases."""

__version__ = "0.1.0"
