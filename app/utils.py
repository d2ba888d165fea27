"""Utility helpers for the ReelFeed service."""

from __future__ import annotations

from datetime import datetime, timezone


def humanize_status(status: object) -> str:
    """Return a watch status the way it reads in a sentence."""

    if not status:
        return "watch"
    return str(status).replace("_", " ")


def format_relative_time(moment: datetime, now: datetime) -> str:
    """Return ``"3d ago"``, ``"5h ago"`` or ``"Just now"``."""

    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)

    hours = int((now - moment).total_seconds() // 3600)
    days = hours // 24
    if days > 0:
        return f"{days}d ago"
    if hours > 0:
        return f"{hours}h ago"
    return "Just now"


def parse_bearer_token(header: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer`` header value."""

    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None
