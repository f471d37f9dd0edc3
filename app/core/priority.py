"""
Priority engine.

Priority is never taken from user input: it is a pure function of an
incident's severity and impact, looked up in a fixed 4x4 matrix.

Values read back from storage go through ``decode()``, which maps unknown
or legacy strings to ``Medium`` instead of failing.

Usage:
    from app.core.priority import priority_for

    priority_for("Critical", "High")   # -> Priority.P1
"""

from __future__ import annotations

from enum import Enum


class Level(str, Enum):
    """Shared scale for severity and impact."""

    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @classmethod
    def decode(cls, value) -> "Level":
        """Return the matching member, or ``MEDIUM`` for anything unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.MEDIUM

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]


# Severity and impact share one scale; the aliases keep call sites readable.
Severity = Level
Impact = Level


class Priority(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]


_C, _H, _M, _L = Level.CRITICAL, Level.HIGH, Level.MEDIUM, Level.LOW

PRIORITY_MATRIX: dict[tuple[Level, Level], Priority] = {
    (_C, _C): Priority.P0,
    (_C, _H): Priority.P1,
    (_C, _M): Priority.P1,
    (_C, _L): Priority.P2,
    (_H, _C): Priority.P1,
    (_H, _H): Priority.P1,
    (_H, _M): Priority.P2,
    (_H, _L): Priority.P3,
    (_M, _C): Priority.P2,
    (_M, _H): Priority.P2,
    (_M, _M): Priority.P3,
    (_M, _L): Priority.P3,
    (_L, _C): Priority.P3,
    (_L, _H): Priority.P3,
    (_L, _M): Priority.P4,
    (_L, _L): Priority.P4,
}


def priority_for(severity, impact) -> Priority:
    """Map (severity, impact) to a Priority. Total over all inputs."""
    return PRIORITY_MATRIX[(Level.decode(severity), Level.decode(impact))]
