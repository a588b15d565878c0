from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEVICES_KEY = "devices"
READINGS_HISTORY_KEY = "readings_history"
TRIALS_KEY = "trials"


class KeyValueStore(Protocol):
    def save(self, key: str, value: Any) -> None: ...

    def load(self, key: str) -> Any | None: ...

    def delete(self, key: str) -> None: ...


def save_quietly(store: KeyValueStore | None, key: str, value: Any) -> bool:
    """Persist ``value`` under ``key``; failures are logged, never raised."""
    if store is None:
        return False
    try:
        store.save(key, value)
    except Exception:  # noqa: BLE001 - durability is best-effort
        logger.warning("Could not persist snapshot %r", key, exc_info=True)
        return False
    return True


def delete_quietly(store: KeyValueStore | None, key: str) -> bool:
    if store is None:
        return False
    try:
        store.delete(key)
    except Exception:  # noqa: BLE001 - durability is best-effort
        logger.warning("Could not delete snapshot %r", key, exc_info=True)
        return False
    return True


def load_quietly(store: KeyValueStore | None, key: str) -> Any | None:
    if store is None:
        return None
    try:
        return store.load(key)
    except Exception:  # noqa: BLE001 - unreadable store means start empty
        logger.warning("Could not load snapshot %r; starting empty", key, exc_info=True)
        return None
