"""Incremental two-way sync between a local event store and Google Calendar."""

__version__ = "1.0.0"
