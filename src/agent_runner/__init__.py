"""Autonomous task execution over a dependency graph of issues."""

__version__ = "0.1.0"
