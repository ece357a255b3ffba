from .daemon import register_daemon_commands
from .notify import register_notify_commands

__all__ = ["register_daemon_commands", "register_notify_commands"]
