# Run with: uvicorn json_chat.fast_api_server:app --reload --port 8000
# or: json-chat serve --port 8000
from typing import Any

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response, StreamingResponse

from json_chat.app.main import (
    get_store,
    parse_chat_message,
    process_delete_request,
    process_settings_update,
    process_transcript_request,
    process_upload_request,
    stream_chat,
)


def _process_response(resp: dict[str, Any]) -> Response | JSONResponse:
    """Convert a Lambda-style proxy response into a FastAPI Response."""
    status_code = resp.get("statusCode", 200)
    content_type = resp.get("headers", {}).get("Content-Type", "text/plain")
    body = resp.get("body", "")

    # Handle dict content as JSON
    if isinstance(body, dict):
        return JSONResponse(content=body, status_code=status_code)

    return Response(content=body, status_code=status_code, media_type=content_type)


app: FastAPI = FastAPI(title="JSON Chat")


# --- Documents and sessions ---
@app.post("/documents")
async def upload_document(request: Request) -> Response:
    body = await request.body()
    # Schema inference may call a remote service or Redis
    return _process_response(await run_in_threadpool(process_upload_request, body))


@app.post("/sessions/{session_id}/messages")
async def send_message(session_id: str, request: Request) -> Response:
    session = get_store().get(session_id)
    if session is None:
        return JSONResponse({"error": f"Unknown session: {session_id}"}, status_code=404)

    body = await request.body()
    try:
        message = parse_chat_message(body)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    return StreamingResponse(stream_chat(session, message), media_type="application/x-ndjson")


@app.get("/sessions/{session_id}/messages")
def transcript(session_id: str) -> Response:
    return _process_response(process_transcript_request(session_id))


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str) -> Response:
    return _process_response(process_delete_request(session_id))


# --- Settings ---
@app.put("/settings/openai-api-key")
async def update_api_key(request: Request) -> Response:
    body = await request.body()
    return _process_response(await run_in_threadpool(process_settings_update, body))


@app.get("/healthz")
def healthz() -> dict[str, bool]:
    return {"ok": True}
