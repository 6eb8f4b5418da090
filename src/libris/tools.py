# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Tools the model may call while answering. Tool calls are not executed
here: they are returned to the caller (e.g. the UI renders a weather card).
"""
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from .models import ToolCall


class WeatherCard(BaseModel):
    """Show a weather card when the user asks about the weather. Provide
    city name, temperature, a short condition and an icon code."""

    city: str = Field(description="City name")
    temp: float = Field(description="Temperature in degrees Celsius")
    condition: str = Field(description="Short weather description, e.g. 'sunny', 'light rain'")
    icon: Literal[
        "sunny", "cloudy", "rain", "snow", "thunder", "fog", "wind", "partlyCloudy",
    ] = Field(description="Weather icon code")


TOOLS: dict[str, type[BaseModel]] = {
    "show_weather_card": WeatherCard,
}


def tool_schemas() -> list[dict]:
    """OpenAI function-calling declarations for every known tool."""
    return [
        {
            "type": "function",
            "function": {
                "name": name,
                "description": " ".join((model.__doc__ or "").split()),
                "parameters": model.model_json_schema(),
            },
        }
        for name, model in TOOLS.items()
    ]


def validate_tool_call(call: ToolCall) -> ToolCall:
    """Coerce arguments of known tools. Unknown or invalid calls pass
    through unchanged so the caller still sees what the model asked for."""
    model = TOOLS.get(call.name)
    if model is None:
        return call
    try:
        parsed = model.model_validate(call.args)
    except ValidationError as e:
        print(f"Warning: invalid arguments for tool '{call.name}': {e.error_count()} errors")
        return call
    return ToolCall(name=call.name, args=parsed.model_dump())
