"""User channels: how the session reads from and writes to the user."""

from aide.channels.base import UserChannel
from aide.channels.console import ConsoleChannel

__all__ = ["UserChannel", "ConsoleChannel"]
