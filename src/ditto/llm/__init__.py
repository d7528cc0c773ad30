"""LLM provider clients (OpenAI Responses API, Gemini) and stream decoding."""

from .gemini import GeminiClient
from .responses import CompletionClient, ResponsesClient, build_request
from .stream import iter_stream_events

__all__ = ["CompletionClient", "GeminiClient", "ResponsesClient", "build_request", "iter_stream_events"]
