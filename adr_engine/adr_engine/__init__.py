"""ADR orchestration engine: billing schedules, job lifecycle, and run coordination."""

__version__ = "0.1.0"
