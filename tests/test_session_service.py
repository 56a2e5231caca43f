from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import MagicMock

from fakes import ScriptedModelClient, make_settings, text_round, tool_round

from json_chat.app.process_upload import UploadError
from json_chat.infrastructure.data_models import (
    TextDelta,
    ToolInvocationCompleted,
    TurnComplete,
    TurnFailed,
)
from json_chat.services.schema_service import LocalSchemaInferrer, SchemaService
from json_chat.services.session_service import SessionStore, default_model_client_factory

DOCUMENT = b'{"users": [{"name": "Ana", "age": 30}, {"name": "Bo", "age": 25}]}'


def build_store(clients, **settings_overrides) -> SessionStore:
    queue = list(clients)
    return SessionStore(
        schema_service=SchemaService(LocalSchemaInferrer()),
        settings_provider=lambda: make_settings(**settings_overrides),
        model_client_factory=lambda settings: queue.pop(0),
    )


async def collect(stream) -> list:
    return [event async for event in stream]


class ChatSessionTests(IsolatedAsyncioTestCase):
    async def test_completed_turns_are_committed_to_history(self):
        first = ScriptedModelClient([
            tool_round(("call_1", "result = len(json_data['users'])")),
            text_round("There are 2 users."),
        ])
        second = ScriptedModelClient([text_round("Ana is older.")])
        session = build_store([first, second]).create(DOCUMENT)

        events = await collect(session.converse("How many users?"))
        self.assertIsInstance(events[-1], TurnComplete)
        self.assertEqual(
            [m.role for m in session.conversation.messages],
            ["user", "assistant", "tool", "assistant"],
        )

        await collect(session.converse("Who is older?"))

        self.assertEqual(len(session.conversation), 6)
        sent = [m.content for m in second.calls[0]["messages"]]
        self.assertEqual(sent[1], "How many users?")
        self.assertEqual(sent[-1], "Who is older?")

    async def test_system_prompt_contains_the_schema(self):
        client = ScriptedModelClient([text_round("ok")])
        session = build_store([client]).create(DOCUMENT)

        await collect(session.converse("hi"))

        system = client.calls[0]["messages"][0]
        self.assertEqual(system.role, "system")
        self.assertIn(session.schema, system.content)

    async def test_new_turn_cancels_the_previous_one(self):
        first = ScriptedModelClient([text_round("one", "two", "three")])
        second = ScriptedModelClient([text_round("second answer")])
        session = build_store([first, second]).create(DOCUMENT)

        first_turn = session.converse("first question")
        self.assertEqual(await anext(first_turn), TextDelta(text="one"))

        events = await collect(session.converse("second question"))
        self.assertEqual(events[-1].final_text, "second answer")

        # The superseded turn yields nothing more and commits nothing
        self.assertEqual(await collect(first_turn), [])
        self.assertEqual(
            [m.content for m in session.conversation.messages],
            ["second question", "second answer"],
        )

    async def test_failed_turn_leaves_history_unchanged(self):
        client = ScriptedModelClient([], error=RuntimeError("Fatal error calling gpt-5-mini: down"))
        session = build_store([client]).create(DOCUMENT)

        events = await collect(session.converse("hi"))

        self.assertEqual(events, [TurnFailed(error="Fatal error calling gpt-5-mini: down")])
        self.assertEqual(len(session.conversation), 0)

    async def test_missing_api_key_fails_the_turn(self):
        store = SessionStore(
            schema_service=SchemaService(LocalSchemaInferrer()),
            settings_provider=lambda: make_settings(openai_api_key=None),
            model_client_factory=default_model_client_factory,
        )
        session = store.create(DOCUMENT)

        events = await collect(session.converse("hi"))

        self.assertEqual(events, [TurnFailed(error="No OpenAI API key configured")])

    async def test_round_limit_comes_from_settings(self):
        client = ScriptedModelClient([
            tool_round(("call_1", "result = 1")),
            tool_round(("call_2", "result = 2")),
        ])
        session = build_store([client], max_tool_rounds=2).create(DOCUMENT)

        events = await collect(session.converse("loop"))

        self.assertEqual(len(client.calls), 2)
        self.assertEqual(client.calls[-1]["tool_choice"], "none")
        completed = [e for e in events if isinstance(e, ToolInvocationCompleted)]
        self.assertEqual([e.invocation.result.value for e in completed], [1, 2])
        self.assertIsInstance(events[-1], TurnComplete)


class SessionStoreTests(TestCase):
    def test_create_infers_the_schema_once_from_the_exact_text(self):
        schema_service = MagicMock()
        schema_service.infer.return_value = '{"type":"object"}'
        store = SessionStore(schema_service, settings_provider=make_settings)
        raw = b'{ "b": 1,\n  "a": [true] }'

        session = store.create(raw)

        schema_service.infer.assert_called_once_with(raw.decode(), digest=session.document.digest)
        self.assertEqual(session.schema, '{"type":"object"}')
        self.assertEqual(session.document.text, raw.decode())
        self.assertIs(store.get(session.id), session)

    def test_invalid_upload_never_reaches_the_schema_service(self):
        schema_service = MagicMock()
        store = SessionStore(schema_service, settings_provider=make_settings)

        with self.assertRaises(UploadError) as ctx:
            store.create(b"{not json")

        self.assertEqual(ctx.exception.kind, "invalid_json")
        schema_service.infer.assert_not_called()
        self.assertEqual(len(store), 0)

    def test_executor_uses_sandbox_settings(self):
        store = SessionStore(
            SchemaService(LocalSchemaInferrer()),
            settings_provider=lambda: make_settings(
                sandbox_timeout_seconds=2.5, sandbox_memory_limit_mb=128
            ),
        )

        session = store.create(DOCUMENT)

        self.assertEqual(session.executor.timeout_seconds, 2.5)
        self.assertEqual(session.executor.memory_limit_mb, 128)

    def test_delete(self):
        store = SessionStore(SchemaService(LocalSchemaInferrer()), settings_provider=make_settings)
        session = store.create(DOCUMENT)

        self.assertTrue(store.delete(session.id))
        self.assertFalse(store.delete(session.id))
        self.assertIsNone(store.get(session.id))
