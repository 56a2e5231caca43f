import json
from collections.abc import AsyncIterator
from typing import Any, Protocol, cast

from openai import AsyncOpenAI

from json_chat.infrastructure.data_models import Message, ModelTextDelta, ModelToolCall

# Default configuration constants for GPT-5
DEFAULT_MAX_OUTPUT_TOKENS_GPT5 = 4000
DEFAULT_REASONING_EFFORT = "low"
DEFAULT_VERBOSITY = "low"
# Default configuration constants for GPT-4 family
DEFAULT_MAX_OUTPUT_TOKENS_GPT4 = 2000
DEFAULT_TEMPERATURE = 0.0
# Shared configuration constants
DEFAULT_TOOL_CHOICE = "auto"

ModelStreamItem = ModelTextDelta | ModelToolCall


class ModelClient(Protocol):
    """Anything that can stream a model turn; OpenAIChat in production, fakes in tests."""

    def stream(
        self, messages: list[Message], **kwargs: Any
    ) -> AsyncIterator[ModelStreamItem]: ...


def messages_to_input(messages: list[Message]) -> list[dict[str, Any]]:
    """
    Translate Messages to Responses-API input items.

    Assistant messages that requested tools become one `function_call` item per
    invocation; tool messages become `function_call_output` items.
    """
    items: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "tool":
            items.append({
                "type": "function_call_output",
                "call_id": message.tool_call_id,
                "output": message.content or "",
            })
            continue

        if message.content:
            items.append({"role": message.role, "content": message.content})

        for invocation in message.tool_invocations:
            items.append({
                "type": "function_call",
                "call_id": invocation.id,
                "name": invocation.tool_name,
                "arguments": invocation.arguments,
            })
    return items


class OpenAIChat:
    """
    A streaming client for OpenAI's GPT models using the Responses API.

    Supports the GPT-5 and GPT-4o/4.1 families. Failures are not retried; they
    surface to the caller as RuntimeError.
    """

    def __init__(self, model: str, api_key: str | None) -> None:
        """
        Initialize the OpenAI chat client.

        Args:
            model: The OpenAI model to use (e.g., 'gpt-5-mini')
            api_key: The OpenAI API key

        Raises:
            ValueError: If the API key is missing
        """
        if not api_key:
            raise ValueError("No OpenAI API key configured")

        self.client: AsyncOpenAI = AsyncOpenAI(api_key=api_key)
        self.model = model

    def _params_for_model(self, model: str, **kwargs: Any) -> dict[str, Any]:
        """
        Return default parameters based on model family.

        Args:
            model: The model name (e.g., 'gpt-4.1', 'gpt-5')
            **kwargs: Additional parameters to override defaults

        Returns:
            Dictionary of parameters for the specific model

        Raises:
            ValueError: If the model is not supported
        """
        tools = kwargs.get("tools", [])
        tool_choice = kwargs.get("tool_choice", DEFAULT_TOOL_CHOICE)

        if model.startswith("gpt-5"):
            return {
                "max_output_tokens": kwargs.get(
                    "max_output_tokens", DEFAULT_MAX_OUTPUT_TOKENS_GPT5
                ),
                "text": {"verbosity": kwargs.get("verbosity", DEFAULT_VERBOSITY)},
                "reasoning": {"effort": kwargs.get("reasoning_effort", DEFAULT_REASONING_EFFORT)},
                "tool_choice": tool_choice,
                "tools": tools,
            }
        if model.startswith(("gpt-4o", "gpt-4.1")):
            return {
                "max_output_tokens": kwargs.get(
                    "max_output_tokens", DEFAULT_MAX_OUTPUT_TOKENS_GPT4
                ),
                "temperature": kwargs.get("temperature", DEFAULT_TEMPERATURE),
                "tool_choice": tool_choice,
                "tools": tools,
            }
        raise ValueError(f"Unsupported model: {model}")

    async def stream(
        self, messages: list[Message], **kwargs: Any
    ) -> AsyncIterator[ModelStreamItem]:
        """
        Stream one model response.

        Args:
            messages: Full history, system message first
            **kwargs: tools, tool_choice and model overrides

        Yields:
            ModelTextDelta for each text token batch and ModelToolCall for each
            completed function call item.

        Raises:
            RuntimeError: If the request or the stream fails
            ValueError: If the model is not supported
        """
        request_params = self._params_for_model(model=self.model, **kwargs)
        input_items = messages_to_input(messages)

        try:
            stream = await self.client.responses.create(
                model=self.model,
                input=cast(Any, input_items),
                stream=True,
                **request_params,
            )
            async for event in stream:
                item = self._handle_stream_event(event)
                if item is not None:
                    yield item
        except (ValueError, RuntimeError):
            raise
        except Exception as e:
            raise RuntimeError(f"Fatal error calling {self.model}: {e}") from e

    def _handle_stream_event(self, event: Any) -> ModelStreamItem | None:
        """
        Convert one Responses-API stream event into a stream item.

        Returns:
            The item to forward, or None for events that carry nothing we need
            (created, in-progress, reasoning, usage, ...).

        Raises:
            RuntimeError: If the stream reports an error or a failed response
        """
        event_type = getattr(event, "type", "")

        if event_type == "response.output_text.delta":
            delta = getattr(event, "delta", "") or ""
            return ModelTextDelta(text=delta) if delta else None

        if event_type == "response.output_item.done":
            item = getattr(event, "item", None)
            if getattr(item, "type", "") != "function_call":
                return None
            arguments = getattr(item, "arguments", None) or "{}"
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            return ModelToolCall(
                call_id=getattr(item, "call_id", None) or getattr(item, "id", ""),
                name=getattr(item, "name", "") or "",
                arguments=arguments,
            )

        if event_type == "error":
            raise RuntimeError(f"Model stream error: {getattr(event, 'message', 'unknown')}")

        if event_type in ("response.failed", "response.incomplete"):
            response = getattr(event, "response", None)
            details = getattr(response, "error", None) or getattr(
                response, "incomplete_details", None
            )
            raise RuntimeError(f"Model response {event_type.split('.')[-1]}: {details}")

        return None
