"""
Wall-clock deadlines that nest.

A registration may carry an overall deadline and each automation stage its
own; the stage deadline is derived from the overall one so the earlier of
the two always governs.

    overall = Deadline.after(600, "registration")
    stage = overall.child(120, "hostname step")
"""

import time
from typing import Optional


class Deadline:
    """An absolute monotonic expiry time, or none."""

    def __init__(self, expires_at: Optional[float] = None, label: str = ""):
        self.expires_at = expires_at
        self.label = label

    @classmethod
    def after(cls, seconds: Optional[float], label: str = "") -> "Deadline":
        """Deadline `seconds` from now. None or <= 0 means unbounded."""
        if not seconds or seconds <= 0:
            return cls(None, label)
        return cls(time.monotonic() + seconds, label)

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    @property
    def bounded(self) -> bool:
        return self.expires_at is not None

    def remaining(self) -> Optional[float]:
        """Seconds left (never negative), or None when unbounded."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def child(self, seconds: Optional[float], label: str = "") -> "Deadline":
        """
        Derive a tighter deadline. The result expires at the earlier of this
        deadline and `seconds` from now, and keeps the label of whichever wins.
        """
        own = Deadline.after(seconds, label)
        if not own.bounded:
            return self
        if self.bounded and self.expires_at <= own.expires_at:
            return self
        return own

    def __repr__(self):
        remaining = self.remaining()
        left = "unbounded" if remaining is None else f"{remaining:.1f}s left"
        return f"Deadline({self.label or 'unnamed'}, {left})"
