"""Weather lookup tool. Runs only after the user confirms it."""

from __future__ import annotations

from typing import Any

DEFINITION: dict[str, Any] = {
    "name": "getWeatherInformation",
    "description": "Show the weather in a given city to the user. The user must approve the lookup.",
    "parameters": {
        "type": "object",
        "properties": {
            "city": {"type": "string", "description": "City name, e.g. 'Madrid'"},
        },
        "required": ["city"],
    },
}


async def handle(city: str = "", **_: Any) -> dict[str, Any]:
    city = city.strip()
    if not city:
        return {"error": "city is required"}
    return {"city": city, "forecast": f"The weather in {city} is sunny"}
