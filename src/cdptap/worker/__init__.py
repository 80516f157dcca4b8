"""Browser session worker.

PUBLIC API:
  - create_command_registry / dispatch: Command dispatch table
"""

from .commands import create_command_registry, dispatch

__all__ = ["create_command_registry", "dispatch"]
