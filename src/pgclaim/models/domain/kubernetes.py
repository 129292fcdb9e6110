"""Data types for interacting with Kubernetes."""

from __future__ import annotations

from enum import Enum

__all__ = [
    "ConditionStatus",
    "PropagationPolicy",
    "WatchEventType",
]


class ConditionStatus(str, Enum):
    """Possible values of the ``status`` field of a status condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class PropagationPolicy(Enum):
    """Possible values for the ``propagationPolicy`` parameter to delete."""

    FOREGROUND = "Foreground"
    BACKGROUND = "Background"
    ORPHAN = "Orphan"


class WatchEventType(Enum):
    """Possible values of the ``type`` field of Kubernetes watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
