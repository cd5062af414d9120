"""Milestone progress and content unlock engine for session-based games."""

__version__ = "0.1.0"
