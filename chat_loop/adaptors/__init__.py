"""Model adaptors for chat-loop.

The engine only needs an OpenAI-compatible streaming backend; any
``ModelAdaptor`` subclass that yields ``StreamChunk`` objects works.
"""

from chat_loop.adaptors.openai import OpenAIAdaptor

__all__ = ["OpenAIAdaptor"]
