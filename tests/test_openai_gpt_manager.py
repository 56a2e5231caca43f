from types import SimpleNamespace
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock

from json_chat.infrastructure.data_models import (
    ExecutionResult,
    Message,
    ModelTextDelta,
    ModelToolCall,
    ToolInvocation,
)
from json_chat.infrastructure.openai_gpt_manager import OpenAIChat, messages_to_input


def event_stream(*events):
    async def generate():
        for event in events:
            yield event

    return generate()


def text_event(delta):
    return SimpleNamespace(type="response.output_text.delta", delta=delta)


def function_call_event(call_id, name, arguments):
    item = SimpleNamespace(
        type="function_call", call_id=call_id, id="fc_1", name=name, arguments=arguments
    )
    return SimpleNamespace(type="response.output_item.done", item=item)


class MessagesToInputTests(TestCase):
    def test_translates_tool_round_trip(self):
        invocation = ToolInvocation(
            id="call_1", tool_name="python_executor", arguments='{"code": "result = 1"}'
        ).complete(ExecutionResult.ok(1))
        messages = [
            Message(role="system", content="prompt"),
            Message(role="user", content="q"),
            Message(role="assistant", tool_invocations=(invocation,)),
            Message(role="tool", content="1", tool_call_id="call_1"),
            Message(role="assistant", content="It is 1."),
        ]

        self.assertEqual(messages_to_input(messages), [
            {"role": "system", "content": "prompt"},
            {"role": "user", "content": "q"},
            {
                "type": "function_call",
                "call_id": "call_1",
                "name": "python_executor",
                "arguments": '{"code": "result = 1"}',
            },
            {"type": "function_call_output", "call_id": "call_1", "output": "1"},
            {"role": "assistant", "content": "It is 1."},
        ])


class OpenAIChatTests(IsolatedAsyncioTestCase):
    def setUp(self):
        self.chat = OpenAIChat(model="gpt-5-mini", api_key="sk-test")
        self.chat.client = SimpleNamespace(responses=SimpleNamespace(create=AsyncMock()))

    async def collect(self, **kwargs):
        return [item async for item in self.chat.stream([Message(role="user", content="q")], **kwargs)]

    def test_missing_api_key(self):
        with self.assertRaisesRegex(ValueError, "No OpenAI API key configured"):
            OpenAIChat(model="gpt-5-mini", api_key=None)

    def test_params_for_gpt5(self):
        params = self.chat._params_for_model("gpt-5-mini", tools=[], tool_choice="none")

        self.assertEqual(params["tool_choice"], "none")
        self.assertEqual(params["reasoning"], {"effort": "low"})
        self.assertNotIn("temperature", params)

    def test_params_for_gpt4(self):
        params = self.chat._params_for_model("gpt-4.1")

        self.assertEqual(params["temperature"], 0.0)
        self.assertEqual(params["tool_choice"], "auto")

    def test_unsupported_model(self):
        with self.assertRaises(ValueError):
            self.chat._params_for_model("davinci")

    async def test_stream_yields_text_and_tool_calls(self):
        self.chat.client.responses.create.return_value = event_stream(
            SimpleNamespace(type="response.created"),
            text_event("Hel"),
            text_event("lo"),
            function_call_event("call_1", "python_executor", '{"code": "result = 1"}'),
            SimpleNamespace(type="response.completed"),
        )

        items = await self.collect(tools=[{"type": "function"}], tool_choice="auto")

        self.assertEqual(items, [
            ModelTextDelta(text="Hel"),
            ModelTextDelta(text="lo"),
            ModelToolCall(
                call_id="call_1", name="python_executor", arguments='{"code": "result = 1"}'
            ),
        ])
        kwargs = self.chat.client.responses.create.call_args.kwargs
        self.assertTrue(kwargs["stream"])
        self.assertEqual(kwargs["model"], "gpt-5-mini")
        self.assertEqual(kwargs["input"], [{"role": "user", "content": "q"}])

    async def test_request_errors_are_wrapped(self):
        self.chat.client.responses.create.side_effect = ConnectionError("reset")

        with self.assertRaisesRegex(RuntimeError, "Fatal error calling gpt-5-mini: reset"):
            await self.collect()

    async def test_failed_response_raises(self):
        failed = SimpleNamespace(
            type="response.failed", response=SimpleNamespace(error="server_error")
        )
        self.chat.client.responses.create.return_value = event_stream(text_event("x"), failed)

        with self.assertRaisesRegex(RuntimeError, "Model response failed: server_error"):
            await self.collect()

    async def test_stream_error_event_raises(self):
        self.chat.client.responses.create.return_value = event_stream(
            SimpleNamespace(type="error", message="rate limited")
        )

        with self.assertRaisesRegex(RuntimeError, "rate limited"):
            await self.collect()
