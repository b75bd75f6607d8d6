import argparse
import asyncio

from llm_relay import Provider, ToolLoop, UserMessage, create_llm, load_mcp_servers, submit
from llm_relay.events import ContentDelta, ThinkingDelta, TurnComplete, TurnFailed


async def chat(provider: Provider, model: str, mcp_config: str | None) -> None:
    """Interactive chat; MCP servers from *mcp_config* become tools. Ctrl-C cancels a turn."""
    llm = create_llm(provider, model)
    registry = await load_mcp_servers(mcp_config) if mcp_config else None
    loop = ToolLoop(
        llm,
        registry.dispatcher() if registry else None,
        system="You are a helpful assistant.",
        turn_timeout=300,
    )
    history = []

    try:
        while True:
            prompt = await asyncio.to_thread(input, "> ")
            history.append(UserMessage(prompt))
            stream, handle = submit(loop, history)
            try:
                async for event in stream:
                    if isinstance(event, ThinkingDelta):
                        print(f"\033[2m{event.text}\033[0m", end="", flush=True)
                    elif isinstance(event, ContentDelta):
                        print(event.text, end="", flush=True)
                    elif isinstance(event, TurnComplete):
                        print(f"\n[{event.usage}]")
                    elif isinstance(event, TurnFailed):
                        print(f"\n[turn failed: {event.error}]")
            except asyncio.CancelledError:
                handle.cancel()
                await handle.wait()
                raise
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        if registry:
            await registry.aclose()
        await llm.aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--provider", choices=[p.value for p in Provider], default="openai")
    parser.add_argument("--model", default="gpt-4.1-mini")
    parser.add_argument("--mcp-config", default=None, help="JSON file with an mcpServers object")
    args = parser.parse_args()

    asyncio.run(chat(Provider(args.provider), args.model, args.mcp_config))
