"""
Taskforge - Autonomous task resolution via Claude Code.

This package drives Claude Code through a triage, consult, implement and
review pipeline for small units of work, with bounded concurrency, durable
state tracking and a file-based clarification protocol.
"""

__version__ = "0.1.0"
