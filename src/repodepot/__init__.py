"""Agent orchestration core: task claims, progress ledger, clarifications, agent supervision."""

__version__ = "0.1.0"
