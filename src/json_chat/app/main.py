import json
from collections.abc import AsyncIterator
from typing import Any

from json_chat.app.config import get_settings, save_openai_api_key
from json_chat.app.process_upload import UploadError
from json_chat.infrastructure.local_platform_manager import create_logger
from json_chat.services.schema_service import SchemaInferenceError, build_schema_service
from json_chat.services.session_service import ChatSession, SessionStore

settings = get_settings()
logger = create_logger(logger_name="json-chat", log_level=settings.log_level, logs_dir=settings.logs_dir)
logger.info("Starting JSON Chat")

_store: SessionStore | None = None


def get_store() -> SessionStore:
    """Return the process-wide session store, building it on first use."""
    global _store
    if _store is None:
        _store = SessionStore(
            schema_service=build_schema_service(get_settings(), logger),
            settings_provider=get_settings,
            logger=logger,
        )
    return _store


def reset_store(store: SessionStore | None = None) -> None:
    """Replace the session store (None rebuilds it lazily)."""
    global _store
    _store = store


def create_response(
    status_code: int, body: str, content_type: str = "application/json"
) -> dict[str, Any]:
    """
    Create a standard HTTP response.
    """
    return {
        "statusCode": status_code,
        "body": body,
        "headers": {"Content-Type": content_type},
        "isBase64Encoded": False,
    }


def _error_response(status_code: int, message: str, **extra: Any) -> dict[str, Any]:
    return create_response(status_code, json.dumps({"error": message, **extra}))


def process_upload_request(body: bytes | None) -> dict[str, Any]:
    """Create a session from an uploaded JSON file."""
    try:
        session = get_store().create(body)
    except UploadError as e:
        logger.error(f"Upload rejected ({e.kind}): {e.message}")
        return _error_response(400, e.message, kind=e.kind)
    except SchemaInferenceError as e:
        logger.error(f"Schema inference failed: {e}")
        return _error_response(502, f"Schema inference failed: {e}")

    body_json = {"session_id": session.id, "schema": session.schema}
    return create_response(201, json.dumps(body_json))


def process_transcript_request(session_id: str) -> dict[str, Any]:
    """Return the committed conversation of a session."""
    session = get_store().get(session_id)
    if session is None:
        return _error_response(404, f"Unknown session: {session_id}")

    messages = [m.to_dict() for m in session.conversation.messages]
    return create_response(200, json.dumps({"session_id": session_id, "messages": messages}))


def process_delete_request(session_id: str) -> dict[str, Any]:
    """End a session and drop its document."""
    if not get_store().delete(session_id):
        return _error_response(404, f"Unknown session: {session_id}")
    return create_response(204, "", content_type="text/plain")


def process_settings_update(body: bytes) -> dict[str, Any]:
    """Save a new OpenAI API key."""
    try:
        data = json.loads(body or b"{}")
    except json.JSONDecodeError:
        return _error_response(400, "Request body must be JSON")

    api_key = data.get("api_key") if isinstance(data, dict) else None
    if not isinstance(api_key, str) or not api_key.strip():
        return _error_response(400, "No api_key provided")

    try:
        save_openai_api_key(api_key)
    except (ValueError, OSError) as e:
        logger.error(f"Could not save the OpenAI API key: {e}")
        return _error_response(500, "Could not save the OpenAI API key")

    logger.info("OpenAI API key updated")
    return create_response(200, json.dumps({"ok": True}))


def parse_chat_message(body: bytes) -> str:
    """
    Extract the user's message from a chat request body.

    Raises:
        ValueError: If the body is not JSON or carries no message.
    """
    try:
        data = json.loads(body or b"{}")
    except json.JSONDecodeError as e:
        raise ValueError("Request body must be JSON") from e

    message = data.get("message") if isinstance(data, dict) else None
    if not isinstance(message, str) or not message.strip():
        raise ValueError("No message provided")
    return message


async def stream_chat(session: ChatSession, message: str) -> AsyncIterator[str]:
    """Run a turn and serialize its events as newline-delimited JSON."""
    logger.info(f"Chat turn started for session {session.id}")
    async for event in session.converse(message):
        yield json.dumps(event.to_dict(), default=str) + "\n"
