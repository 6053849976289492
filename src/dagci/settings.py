from __future__ import annotations

import os


def _bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _int_or_none(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else None


WORKERS = _int_or_none("DAGCI_WORKERS")
FAIL_FAST = _bool("DAGCI_FAIL_FAST", False)
CACHE_DIR = os.environ.get("DAGCI_CACHE_DIR", ".dagci/cache")
COMPARE_REF = os.environ.get("DAGCI_COMPARE_REF", "origin/main")
WEBHOOK_URL = os.environ.get("DAGCI_WEBHOOK_URL") or None
ON_SKIPPED = os.environ.get("DAGCI_ON_SKIPPED", "neutral")
CACHE_KEEP = int(os.environ.get("DAGCI_CACHE_KEEP", "3"))
