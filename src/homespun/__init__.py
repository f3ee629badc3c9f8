"""Coding-agent harness orchestration, notifications and PR timeline ordering."""

__version__ = "0.1.0"
