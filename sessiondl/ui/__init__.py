"""UI components for SessionDL."""

from .widgets import (
    SessionDetailPanel,
    SessionItem,
    TreeNodeItem,
)
from .styles import APP_CSS

__all__ = [
    "SessionDetailPanel",
    "SessionItem",
    "TreeNodeItem",
    "APP_CSS",
]
