"""Goal planning, plan optimization and error recovery for agent orchestration."""

__version__ = "0.1.0"
