"""livebridge: session orchestration and live-state reconciliation for an automated remote web app."""

__version__ = "0.1.0"
