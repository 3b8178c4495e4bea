#!/usr/bin/env python3
"""Offline chat-loop example with a scripted model.

Runs without an API key. The mock model first asks for a script that calls
the calculator tool twice, then streams a final answer built from the
script result. Hooks print the status events along the way.

Run:
    python examples/mock_conversation.py
"""

import asyncio
import json
import logging

from pydantic import Field

from chat_loop import (
    Conversation,
    ModelAdaptor,
    OutputStore,
    ScriptTool,
    StreamChunk,
    Tool,
    ToolCallDelta,
    ToolInput,
)

SCRIPT = """progress("Adding numbers...")
a = await calculator(a=25, b=17)
b = await calculator(a=100, b=100)
return {"first": a, "second": b}"""


class CalculatorInput(ToolInput):
    a: float = Field(description="First addend")
    b: float = Field(description="Second addend")


class CalculatorTool(Tool):
    name = "calculator"
    description = "Adds two numbers"
    input_model = CalculatorInput

    async def execute(self, a: float, b: float) -> float:
        return a + b


class MockModelAdaptor(ModelAdaptor):
    """Streams a script call on the first turn and a summary afterwards."""

    async def stream(self, messages, tools, **kwargs):
        last = messages[-1]
        if last.role != "tool":
            yield StreamChunk(content="Let me work that out. ")
            arguments = json.dumps({"purpose": "Add two pairs", "code": SCRIPT})
            # Arguments arrive split across deltas, as they do from a real backend.
            half = len(arguments) // 2
            yield StreamChunk(
                tool_calls=[
                    ToolCallDelta(index=0, id="call-001", name="script", arguments=arguments[:half])
                ]
            )
            yield StreamChunk(tool_calls=[ToolCallDelta(index=0, arguments=arguments[half:])])
            return

        result = json.loads(last.content)
        for word in f"25 + 17 = {result['first']:g} and 100 + 100 = {result['second']:g}.".split(" "):
            await asyncio.sleep(0.05)
            yield StreamChunk(content=word + " ")


async def main():
    conversation = Conversation(
        model=MockModelAdaptor(),
        tools=[CalculatorTool(), ScriptTool(output_store=OutputStore("data/output/storage"))],
        system_prompt="You are a careful calculator.",
        conversation_id="demo",
    )

    @conversation.hook("before_tool_call")
    def on_status(event):
        print(f"\n  [{event.status}] {event.tool_name} ({event.tool_call_id})")

    @conversation.hook("after_tool_call")
    def on_result(event):
        print(f"  [result] {event.tool_name} -> {event.result}")

    @conversation.hook("on_tool_error")
    def on_error(event):
        print(f"  [error] {event.tool_name}: {event.error_message}")

    async for chunk in conversation.send_message("What are 25 + 17 and 100 + 100?"):
        print(chunk, end="", flush=True)
    print()

    print("\nHistory:")
    for message in conversation.history:
        print(f"  {message.role}: {(message.content or '')[:60]!r}")

    await conversation.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    asyncio.run(main())
