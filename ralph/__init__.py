"""
Ralph - Autonomous plan execution harness.

This package drives an external AI coding agent through the tasks of an
implementation plan, persisting resumable session state, mediating task
completion through an MCP side channel, and exposing live status over HTTP.
"""

__version__ = "0.1.0"
