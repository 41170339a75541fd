"""Local time lookup tool."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFINITION: dict[str, Any] = {
    "name": "getLocalTime",
    "description": "Get the current local time for a location given as an IANA time zone name.",
    "parameters": {
        "type": "object",
        "properties": {
            "location": {
                "type": "string",
                "description": "IANA time zone, e.g. 'Europe/Madrid' or 'America/New_York'",
            },
        },
        "required": ["location"],
    },
}


async def handle(location: str = "", **_: Any) -> dict[str, Any]:
    try:
        tz = ZoneInfo(location.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return {"error": f"Unknown time zone: {location!r}. Use an IANA name such as 'Europe/Madrid'."}
    now = datetime.now(tz)
    return {"location": location, "local_time": now.strftime("%H:%M"), "iso": now.isoformat()}
