"""ADR orchestration HTTP control surface."""

__version__ = "0.1.0"
