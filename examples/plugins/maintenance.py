"""
maintenance — Example Hop Plugin (register pattern)
====================================================
Answers requests with ``503 Service Unavailable`` while a flag file exists,
without contacting the upstream. Useful to take a backend out of rotation
during a deploy::

    touch /tmp/hop-maintenance     # enable
    rm /tmp/hop-maintenance        # disable

The flag path can be changed with ``HOP_MAINTENANCE_FLAG``.
"""

import os
from pathlib import Path

from hop.core.plugins import PluginDefinition


def register() -> PluginDefinition:
    """Return plugin definition. Called by PluginLoader."""
    return PluginDefinition(
        name="maintenance",
        description="Short-circuit requests with 503 while a flag file exists",
        version="1.0.0",
        on_request=check_maintenance,
    )


def _flag_path() -> Path:
    return Path(os.environ.get("HOP_MAINTENANCE_FLAG", "/tmp/hop-maintenance"))


async def check_maintenance(request, response):
    if _flag_path().exists():
        response.send(
            503,
            "Service temporarily unavailable for maintenance",
            headers={"Retry-After": "30"},
        )
