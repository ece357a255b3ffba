"""Best-effort re-attachment to agent sessions through kitty remote control."""

from .kitty import KittyControl, KittyTarget
from .recovery import RecoveryAdapter

__all__ = ["KittyControl", "KittyTarget", "RecoveryAdapter"]
