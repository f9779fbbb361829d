from __future__ import annotations

import os

PRIMARY_PREFIX = "MOVEMENT_SCREEN_"
SHORT_PREFIX = "FMS_"


def get_env(name: str, default: str | None = None) -> str | None:
    """
    Resolve configuration environment variables.

    Prefers the full ``MOVEMENT_SCREEN_`` prefix and falls back to the short
    ``FMS_`` form that clinic deployment scripts tend to use.
    """
    for prefix in (PRIMARY_PREFIX, SHORT_PREFIX):
        value = os.getenv(f"{prefix}{name}")
        if value is not None:
            return value
    return default

