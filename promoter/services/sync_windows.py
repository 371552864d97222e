"""
Evaluation of Argo CD AppProject sync windows.

A sync window is a cron schedule plus a duration during which syncs of
matching Applications are allowed or denied.
"""
import logging
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from promoter.schemas.argocd import Application, SyncWindow
from promoter.schemas.promotion import parse_duration

logger = logging.getLogger(__name__)

KIND_ALLOW = "allow"
KIND_DENY = "deny"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _time_zone_offset(window: SyncWindow, now: datetime) -> timedelta:
    if not window.time_zone:
        return timedelta(0)
    try:
        zone = ZoneInfo(window.time_zone)
    except (ZoneInfoNotFoundError, ValueError):
        return timedelta(0)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(zone).utcoffset() or timedelta(0)


def _window_is_active(window: SyncWindow, now: datetime) -> Optional[bool]:
    """Whether the window is open at now (naive UTC); None if it is invalid."""
    try:
        duration = parse_duration(window.duration)
        local_now = now + _time_zone_offset(window, now)
        schedule = croniter(window.schedule, local_now - duration)
        next_start = schedule.get_next(datetime)
    except (ValueError, KeyError) as e:
        logger.warning(f"Ignoring invalid sync window {window.schedule!r}/{window.duration!r}: {e}")
        return None
    return next_start < local_now


class SyncWindows:
    """A list of sync windows with the Argo CD semantics for combining them."""

    def __init__(self, windows: Optional[List[SyncWindow]] = None):
        self.windows = list(windows or [])

    def has_windows(self) -> bool:
        return len(self.windows) > 0

    def matches(self, app: Application) -> "SyncWindows":
        """Return the windows that apply to an Application."""
        destination = app.spec.destination
        matching = []
        for window in self.windows:
            if any(fnmatchcase(app.name, pattern) for pattern in window.applications):
                matching.append(window)
            elif any(
                (destination.name and fnmatchcase(destination.name, pattern))
                or (destination.server and fnmatchcase(destination.server, pattern))
                for pattern in window.clusters
            ):
                matching.append(window)
            elif any(fnmatchcase(destination.namespace, pattern) for pattern in window.namespaces):
                matching.append(window)
        return SyncWindows(matching)

    def active(self, now: Optional[datetime] = None) -> "SyncWindows":
        now = now or _utc_now()
        return SyncWindows([w for w in self.windows if _window_is_active(w, now)])

    def inactive_allows(self, now: Optional[datetime] = None) -> "SyncWindows":
        now = now or _utc_now()
        return SyncWindows(
            [
                w for w in self.windows
                if w.kind == KIND_ALLOW and _window_is_active(w, now) is False
            ]
        )

    def _has_deny(self) -> bool:
        return any(w.kind == KIND_DENY for w in self.windows)

    def _has_allow(self) -> bool:
        return any(w.kind == KIND_ALLOW for w in self.windows)

    def _manual_enabled(self, kind: Optional[str] = None) -> bool:
        windows = [w for w in self.windows if kind is None or w.kind == kind]
        return bool(windows) and all(w.manual_sync for w in windows)

    def can_sync(self, is_manual: bool, now: Optional[datetime] = None) -> bool:
        """Whether a sync is currently permitted.

        An active deny window blocks unless the sync is manual and every
        active deny window permits manual syncs. An active allow window
        permits. Otherwise, inactive allow windows block unless the sync is
        manual and all of them permit manual syncs.
        """
        if not self.has_windows():
            return True
        now = now or _utc_now()

        active = self.active(now)
        if active._has_deny():
            return is_manual and active._manual_enabled(KIND_DENY)
        if active._has_allow():
            return True

        inactive_allows = self.inactive_allows(now)
        if inactive_allows.has_windows():
            return is_manual and inactive_allows._manual_enabled()
        return True
