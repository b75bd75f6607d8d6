from __future__ import annotations

import argparse
import asyncio
import logging

from llm_relay import (
    LocalTools,
    Provider,
    ToolInfo,
    ToolLoop,
    ToolRegistry,
    UserMessage,
    conversation_tools,
    create_llm,
)
from llm_relay.events import ContentDelta, ToolCallFinished, ToolCallStarted

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

WEATHER_TOOL = ToolInfo(
    name="get_weather",
    description="Get the current weather in a given location",
    parameters={
        "type": "object",
        "properties": {
            "location": {
                "type": "string",
                "description": "City and state, e.g. San Francisco, CA",
            },
            "unit": {
                "type": "string",
                "enum": ["celsius", "fahrenheit"],
            },
        },
        "required": ["location"],
    },
)


def get_weather(location: str, unit: str = "celsius") -> dict[str, str]:
    """Stub implementation of get_weather."""
    # imagine we call a real weather API here
    return {"location": location, "forecast": "15 °C, mostly cloudy", "unit": unit}


async def tool_roundtrip(provider: Provider, model: str) -> None:
    """
    Let the loop drive a full tool-calling turn.

    The weather tool lives in its own registry under the ``weather`` prefix;
    the conversation built-ins are the un-prefixed fallback.
    """
    history = [UserMessage("What's the weather in San Francisco?")]

    weather = LocalTools()
    weather.register(WEATHER_TOOL, get_weather)

    async with ToolRegistry() as registry, create_llm(provider, model) as llm:
        await registry.add_server("weather", weather)
        loop = ToolLoop(llm, registry.dispatcher(conversation_tools(history)), tool_timeout=30)

        async def show(event) -> None:
            if isinstance(event, ContentDelta):
                print(event.text, end="", flush=True)
            elif isinstance(event, ToolCallStarted):
                logger.info("-> %s(%s)", event.call.name, event.call.arguments)
            elif isinstance(event, ToolCallFinished):
                logger.info("<- %s: %s", event.name, event.content)

        complete = await loop.run(history, show)
        print()
        logger.info("%d messages, usage %s", len(complete.history), complete.usage)


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--provider",
        choices=[p.value for p in Provider],
        default=Provider.ANTHROPIC.value,
    )
    parser.add_argument(
        "--model",
        default="claude-3-5-haiku-20241022",  # "gpt-4.1-nano-2025-04-14", "gemini-2.0-flash-lite", "qwen3:8b"
    )
    args = parser.parse_args()

    asyncio.run(tool_roundtrip(Provider(args.provider), args.model))
