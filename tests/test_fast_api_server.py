import asyncio
import json
import time
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import patch

import httpx
from fastapi.testclient import TestClient

from fakes import ScriptedModelClient, make_settings, text_round, tool_round

from json_chat.app.main import reset_store
from json_chat.fast_api_server import app
from json_chat.services.schema_service import LocalSchemaInferrer, SchemaService
from json_chat.services.session_service import SessionStore

DOCUMENT = b'{"users": [{"name": "Ana", "age": 30}, {"name": "Bo", "age": 25}]}'


class FastApiServerTests(TestCase):
    def setUp(self):
        self.model = ScriptedModelClient([
            tool_round(("call_1", "result = sum(u['age'] for u in json_data['users']) / 2")),
            text_round("The average age is 27.5."),
        ])
        reset_store(SessionStore(
            schema_service=SchemaService(LocalSchemaInferrer()),
            settings_provider=make_settings,
            model_client_factory=lambda settings: self.model,
        ))
        self.client = TestClient(app)

    def tearDown(self):
        reset_store()

    def upload(self) -> str:
        resp = self.client.post("/documents", content=DOCUMENT)
        self.assertEqual(resp.status_code, 201)
        return resp.json()["session_id"]

    def test_upload_returns_session_and_schema(self):
        resp = self.client.post("/documents", content=DOCUMENT)

        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertTrue(body["session_id"])
        self.assertEqual(json.loads(body["schema"])["required"], ["users"])

    def test_upload_errors(self):
        resp = self.client.post("/documents", content=b"")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "No file selected", "kind": "no_file"})

        resp = self.client.post("/documents", content=b"{not json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(
            resp.json(), {"error": "Invalid json. Recheck the file", "kind": "invalid_json"}
        )

    def test_schema_failure_is_a_bad_gateway(self):
        with patch.object(LocalSchemaInferrer, "infer", side_effect=RuntimeError("down")):
            resp = self.client.post("/documents", content=DOCUMENT)

        self.assertEqual(resp.status_code, 502)

    def test_chat_streams_events_as_ndjson(self):
        session_id = self.upload()

        resp = self.client.post(
            f"/sessions/{session_id}/messages", json={"message": "Average age?"}
        )

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("application/x-ndjson"))
        events = [json.loads(line) for line in resp.text.splitlines() if line]
        self.assertEqual(
            [e["type"] for e in events],
            [
                "tool_invocation_requested",
                "tool_invocation_completed",
                "text_delta",
                "turn_complete",
            ],
        )
        self.assertEqual(events[1]["invocation"]["result"], {
            "status": "ok", "assigned": True, "value": 27.5
        })
        self.assertEqual(events[-1]["final_text"], "The average age is 27.5.")

        transcript = self.client.get(f"/sessions/{session_id}/messages").json()
        self.assertEqual(
            [m["role"] for m in transcript["messages"]],
            ["user", "assistant", "tool", "assistant"],
        )

    def test_chat_validation(self):
        session_id = self.upload()

        resp = self.client.post(f"/sessions/{session_id}/messages", json={"message": " "})
        self.assertEqual(resp.status_code, 400)

        resp = self.client.post("/sessions/missing/messages", json={"message": "hi"})
        self.assertEqual(resp.status_code, 404)

    def test_unknown_session_transcript(self):
        self.assertEqual(self.client.get("/sessions/missing/messages").status_code, 404)

    def test_delete_session(self):
        session_id = self.upload()

        self.assertEqual(self.client.delete(f"/sessions/{session_id}").status_code, 204)
        self.assertEqual(self.client.delete(f"/sessions/{session_id}").status_code, 404)

    def test_update_api_key(self):
        with patch("json_chat.app.main.save_openai_api_key") as save:
            resp = self.client.put("/settings/openai-api-key", json={"api_key": "sk-new"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"ok": True})
        save.assert_called_once_with("sk-new")

    def test_update_api_key_validation(self):
        with patch("json_chat.app.main.save_openai_api_key") as save:
            resp = self.client.put("/settings/openai-api-key", json={"api_key": ""})

        self.assertEqual(resp.status_code, 400)
        save.assert_not_called()

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"ok": True})


class SlowInferrer:
    def infer(self, json_text: str) -> str:
        time.sleep(0.5)
        return '{"type":"object"}'


class EventLoopTests(IsolatedAsyncioTestCase):
    def setUp(self):
        reset_store(SessionStore(
            schema_service=SchemaService(SlowInferrer()),
            settings_provider=make_settings,
        ))

    def tearDown(self):
        reset_store()

    async def test_slow_schema_inference_does_not_block_other_requests(self):
        finished: list[str] = []
        transport = httpx.ASGITransport(app=app)

        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:

            async def upload():
                resp = await client.post("/documents", content=DOCUMENT)
                finished.append("upload")
                return resp

            async def healthz():
                await asyncio.sleep(0.05)
                resp = await client.get("/healthz")
                finished.append("healthz")
                return resp

            upload_resp, healthz_resp = await asyncio.gather(upload(), healthz())

        self.assertEqual(upload_resp.status_code, 201)
        self.assertEqual(healthz_resp.status_code, 200)
        self.assertEqual(finished, ["healthz", "upload"])
