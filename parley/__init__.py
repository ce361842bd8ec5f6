"""Parley: real-time voice session orchestration."""

__version__ = "0.1.0"
