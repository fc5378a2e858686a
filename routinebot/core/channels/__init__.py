"""Channel handlers — delivery targets for routine results."""

from routinebot.core.channels.base import register_channels

__all__ = ["register_channels"]
