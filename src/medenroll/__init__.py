"""Healthcare-plan enrollment lifecycle orchestrator and document verification pipeline."""

__version__ = "1.0.0"
