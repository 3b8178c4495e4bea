"""Minimal chat-loop example with a hook. Requires OPENAI_API_KEY."""

import asyncio
import os

from pydantic import Field

from chat_loop import Conversation, OpenAIAdaptor, Tool, ToolInput


class CityInput(ToolInput):
    city: str = Field(description="City name")


class GetPopulation(Tool):
    name = "get_population"
    description = "Returns the approximate population of a city"
    input_model = CityInput

    async def execute(self, city: str) -> str:
        populations = {"tokyo": "14M", "paris": "2.1M", "new york": "8.3M"}
        return populations.get(city.lower(), "unknown")


conversation = Conversation(
    model=OpenAIAdaptor(api_key=os.environ["OPENAI_API_KEY"], model="gpt-4.1-mini"),
    tools=[GetPopulation()],
    system_prompt="You answer questions about cities.",
)


@conversation.hook("after_tool_call")
async def on_tool_call(event):
    print(f"\n[hook] {event.tool_name}({event.arguments}) -> {event.result}")


async def main():
    async for chunk in conversation.send_message("What's the population of Tokyo and Paris?"):
        print(chunk, end="", flush=True)
    print()


if __name__ == "__main__":
    asyncio.run(main())
