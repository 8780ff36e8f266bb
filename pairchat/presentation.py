from __future__ import annotations

from typing import Any, Dict, Optional

from .models import User
from .presence import PresenceTracker


def last_seen_text(last_seen: Optional[int], now: int) -> str:
    if last_seen is None:
        return "offline"

    diff = max(0, now - int(last_seen))
    minutes = diff // 60
    hours = diff // 3600
    days = diff // 86400

    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minutes ago"
    if hours < 24:
        return f"{hours} hours ago"
    if days == 1:
        return "yesterday"
    return f"{days} days ago"


def user_summary(user: User, presence: PresenceTracker, now: int) -> Dict[str, Any]:
    online = presence.is_online(user.username)
    last_seen = presence.last_seen(user.username)
    return {
        "username": user.username,
        "displayName": user.display_name,
        "online": online,
        "lastSeen": last_seen,
        "statusText": "online" if online else last_seen_text(last_seen, now),
    }
