"""
Legacy On-Disk Format Upgrades
==============================

Decode-time normalization of older document shapes. Each upgrade returns
the canonical value plus a flag telling the store to persist it once; steady
state reads and writes never touch this module's logic beyond the check.
"""

from typing import Any, Dict, List, Tuple

# Credential fields once kept in settings.json; they now come from the environment.
LEGACY_SETTINGS_KEYS = ("jdUrl", "jdUser", "jdDevice", "jdEmail", "jdPassword")

_SETTINGS_RENAMES = {"checkInterval": "check_interval"}


def upgrade_processed_urls(value: List[Any], now: int) -> Tuple[List[Dict[str, Any]], bool]:
    """Upgrade a bare list of url strings to ``{url, timestamp}`` records.

    Legacy strings carry no first-seen time, so they are stamped with ``now``.
    Duplicate urls collapse onto their first occurrence.
    """
    if not any(isinstance(entry, str) for entry in value):
        return value, False

    seen = set()
    upgraded = []
    for entry in value:
        record = {"url": entry, "timestamp": now} if isinstance(entry, str) else entry
        url = record.get("url") if isinstance(record, dict) else None
        if not url or url in seen:
            continue
        seen.add(url)
        upgraded.append(record)

    return upgraded, True


def strip_legacy_settings(value: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Drop credential keys and rename camelCase keys in the settings document."""
    changed = False
    cleaned = {}

    for key, item in value.items():
        if key in LEGACY_SETTINGS_KEYS:
            changed = True
            continue
        if key in _SETTINGS_RENAMES:
            key = _SETTINGS_RENAMES[key]
            changed = True
        cleaned.setdefault(key, item)

    return cleaned, changed
