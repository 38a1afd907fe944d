from __future__ import annotations

from datetime import datetime


def utcnow_iso() -> str:
    """Current UTC time in the ``YYYY-MM-DDTHH:MM:SSZ`` form stored in Text columns."""

    return datetime.utcnow().isoformat(timespec="seconds") + "Z"
