"""Delegate tasks to isolated agent processes."""

__version__ = "0.1.0"
