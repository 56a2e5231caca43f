import logging
import uuid
from collections.abc import AsyncIterator, Callable

from json_chat.app.config import ChatSettings
from json_chat.app.process_upload import process_upload
from json_chat.infrastructure.data_models import (
    Conversation,
    ConversationEvent,
    Document,
    TurnComplete,
    TurnFailed,
)
from json_chat.infrastructure.openai_gpt_manager import ModelClient, OpenAIChat
from json_chat.services.llm_service import CancelToken, ToolCallLoop, build_script_tool
from json_chat.services.renderer_service import render_prompt
from json_chat.services.sandbox_service import SandboxExecutor
from json_chat.services.schema_service import SchemaService

ModelClientFactory = Callable[[ChatSettings], ModelClient]


def default_model_client_factory(settings: ChatSettings) -> ModelClient:
    return OpenAIChat(model=settings.openai_model, api_key=settings.openai_api_key)


class ChatSession:
    """
    One uploaded document and the conversation about it.

    Only one turn is active at a time: starting a turn cancels the previous one.
    A turn's messages are committed to the conversation only when it completes,
    so cancelled and failed turns leave the history untouched.
    """

    def __init__(
        self,
        document: Document,
        schema: str,
        executor: SandboxExecutor,
        settings_provider: Callable[[], ChatSettings],
        model_client_factory: ModelClientFactory = default_model_client_factory,
        session_id: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.document = document
        self.schema = schema
        self.conversation = Conversation()
        self.executor = executor
        self.settings_provider = settings_provider
        self.model_client_factory = model_client_factory
        self.logger = logger or logging.getLogger("json-chat")
        self._system_prompt = render_prompt(schema)
        self._active_turn: CancelToken | None = None

    def cancel_active_turn(self) -> None:
        if self._active_turn is not None:
            self._active_turn.cancel()
            self._active_turn = None

    async def converse(self, text: str) -> AsyncIterator[ConversationEvent]:
        """Run a turn for `text`, cancelling whichever turn is still in flight."""
        self.cancel_active_turn()
        token = CancelToken()
        self._active_turn = token

        settings = self.settings_provider()
        try:
            model_client = self.model_client_factory(settings)
        except ValueError as e:
            self.logger.error(f"Cannot start turn for session {self.id}: {e}")
            yield TurnFailed(error=str(e))
            return

        loop = ToolCallLoop(
            model_client=model_client,
            system_prompt=self._system_prompt,
            max_rounds=settings.max_tool_rounds,
            tool_output_max_chars=settings.tool_output_max_chars,
            logger=self.logger,
        )
        script_tool = build_script_tool(self.executor, self.document.value)
        tools = {script_tool.name: script_tool}

        try:
            async for event in loop.converse(
                self.conversation.messages, text, tools, cancel_token=token
            ):
                if token.cancelled:
                    return
                if isinstance(event, TurnComplete):
                    self.conversation.extend(event.messages)
                yield event
        finally:
            if self._active_turn is token:
                self._active_turn = None


class SessionStore:
    """In-memory registry of chat sessions keyed by id."""

    def __init__(
        self,
        schema_service: SchemaService,
        settings_provider: Callable[[], ChatSettings],
        model_client_factory: ModelClientFactory = default_model_client_factory,
        logger: logging.Logger | None = None,
    ) -> None:
        self.schema_service = schema_service
        self.settings_provider = settings_provider
        self.model_client_factory = model_client_factory
        self.logger = logger or logging.getLogger("json-chat")
        self._sessions: dict[str, ChatSession] = {}

    def create(self, raw_upload: bytes | str | None) -> ChatSession:
        """
        Validate the upload, infer its schema once and register a new session.

        Raises:
            UploadError: If the upload is missing or not valid JSON.
            SchemaInferenceError: If the schema service fails.
        """
        document = process_upload(raw_upload)
        schema = self.schema_service.infer(document.text, digest=document.digest)

        settings = self.settings_provider()
        executor = SandboxExecutor(
            timeout_seconds=settings.sandbox_timeout_seconds,
            memory_limit_mb=settings.sandbox_memory_limit_mb,
            logger=self.logger,
        )
        session = ChatSession(
            document=document,
            schema=schema,
            executor=executor,
            settings_provider=self.settings_provider,
            model_client_factory=self.model_client_factory,
            logger=self.logger,
        )
        self._sessions[session.id] = session
        self.logger.info(f"Created session {session.id} ({len(document.text)} chars)")
        return session

    def get(self, session_id: str) -> ChatSession | None:
        return self._sessions.get(session_id)

    def delete(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.cancel_active_turn()
        self.logger.info(f"Deleted session {session_id}")
        return True

    def __len__(self) -> int:
        return len(self._sessions)
