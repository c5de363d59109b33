"""Scheduling and delivery of automated guest messages."""

__version__ = "1.0.0"
