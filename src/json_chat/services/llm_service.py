import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any, cast

from json_chat.app.config import DOCUMENT_VARIABLE, RESULT_VARIABLE, SCRIPT_TOOL_NAME
from json_chat.app.logging import log_tool_invocation, log_turn_complete
from json_chat.infrastructure.data_models import (
    Conversation,
    ConversationEvent,
    ExecutionResult,
    Message,
    ModelTextDelta,
    ModelToolCall,
    RoundLimitReached,
    TextDelta,
    ToolInvocation,
    ToolInvocationCompleted,
    ToolInvocationRequested,
    TurnComplete,
    TurnFailed,
)
from json_chat.infrastructure.openai_gpt_manager import ModelClient
from json_chat.services.renderer_service import ROUND_LIMIT_NOTICE, render_tool_output
from json_chat.services.sandbox_service import SandboxExecutor

DEFAULT_MAX_ROUNDS = 5


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema
    handler: Callable[[dict[str, Any]], ExecutionResult]


class CancelToken:
    """Flag shared between a turn and whoever may start the next one."""

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


def build_script_tool(executor: SandboxExecutor, document: Any) -> ToolSpec:
    """Build the single script-execution tool bound to one document."""
    return ToolSpec(
        name=SCRIPT_TOOL_NAME,
        description=(
            "Use this tool to execute Python code to extract, modify and generate data "
            f"from the JSON document. The document is available to the code in the "
            f"variable `{DOCUMENT_VARIABLE}`. The result of the execution must be stored "
            f"in the variable `{RESULT_VARIABLE}`."
        ),
        parameters={
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": (
                        "Python code to execute. Provide only the code, no other text "
                        "including ```"
                    ),
                },
            },
            "required": ["code"],
            "additionalProperties": False,
        },
        handler=lambda args: executor.execute(args["code"], document),
    )


def openai_tools_from_specs(tools: dict[str, ToolSpec]) -> list[dict[str, Any]]:
    """
    Build OpenAI Responses-API tool specs.

    Example tool item:
      {
        "type": "function",
        "name": "python_executor",
        "description": "...",
        "parameters": { ... JSON Schema ... }
      }
    """
    return [
        {
            "type": "function",
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.parameters,
        }
        for spec in tools.values()
    ]


def _matches_json_type(value: Any, expected: str) -> bool:
    """
    Check whether a Python value matches a basic JSON Schema type.

    Args:
        value: The value to check.
        expected: The JSON Schema type string (e.g., "string", "integer").

    Returns:
        True if the value matches the expected type, else False.
    """
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, int | float) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    if expected == "null":
        return value is None
    # Unknown type: be conservative
    return False


def _validate_args_against_schema(args: dict[str, Any], schema: dict[str, Any]) -> None:
    """
    Validate tool arguments against a simplified subset of JSON Schema.

    This validates required fields and basic property types. It intentionally
    does not implement the full JSON Schema spec.

    Args:
        args: Parsed arguments returned by the LLM.
        schema: The JSON Schema of the selected tool.

    Raises:
        ValueError: If required fields are missing or any type mismatches occur.
    """
    properties = schema.get("properties")
    required = schema.get("required", [])
    additional_props = schema.get("additionalProperties", True)

    if not isinstance(properties, dict):
        properties = {}
    if not isinstance(required, list):
        required = []

    # Check required fields
    for field in required:
        if field not in args:
            raise ValueError(f"Missing required argument: {field}")

    # Disallow unknown fields if additionalProperties is explicitly false
    if additional_props is False:
        unknown = [k for k in args.keys() if k not in properties]
        if unknown:
            raise ValueError(f"Unknown argument(s) not allowed: {', '.join(unknown)}")

    # Type-check known properties (best-effort)
    for key, val in args.items():
        prop = properties.get(key)
        if not isinstance(prop, dict):
            continue
        expected_type = prop.get("type")
        if expected_type is None:
            continue
        # expected_type may be a string or a list of strings
        if isinstance(expected_type, list):
            if not any(_matches_json_type(val, t) for t in expected_type if isinstance(t, str)):
                raise ValueError(
                    f"Argument '{key}' has wrong type; expected one of {expected_type}"
                )
        elif not _matches_json_type(val, expected_type):
            raise ValueError(f"Argument '{key}' has wrong type; expected {expected_type}")


def parse_tool_arguments(raw_arguments: str, schema: dict[str, Any]) -> dict[str, Any]:
    """
    Parse the model's raw JSON arguments and validate them against the tool schema.

    Raises:
        ValueError: If the arguments are not a JSON object or fail validation.
    """
    try:
        parsed_any = json.loads(raw_arguments or "{}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in tool arguments: {e}") from e
    if not isinstance(parsed_any, dict):
        raise ValueError("Arguments are not formed correctly.")

    parsed_args = cast(dict[str, Any], parsed_any)
    _validate_args_against_schema(parsed_args, schema)
    return parsed_args


class ToolCallLoop:
    """
    Drive one conversational turn: model call, tool invocations, model call, ...

    Args:
        model_client: Streams model output (OpenAIChat in production).
        system_prompt: Instructions sent as the first message of every round.
        max_rounds: Maximum number of model calls per turn.
        tool_output_max_chars: Upper bound on each tool output sent to the model.
        logger: Logger for invocation and turn summaries.
    """

    def __init__(
        self,
        model_client: ModelClient,
        system_prompt: str,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        tool_output_max_chars: int = 20000,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.model_client = model_client
        self.system_prompt = system_prompt
        self.max_rounds = max_rounds
        self.tool_output_max_chars = tool_output_max_chars
        self.logger = logger or logging.getLogger("json-chat")

    async def converse(
        self,
        history: Conversation | Iterable[Message],
        new_user_message: str,
        tools: dict[str, ToolSpec],
        *,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[ConversationEvent]:
        """
        Run one turn and yield its events.

        The last permitted round is requested with tool_choice="none" so the model
        answers with what it has. Tool calls it still makes in that round are run
        to completion and recorded, then the turn ends without another model call.
        Once `cancel_token` is cancelled nothing more is yielded and no further
        model calls are made.
        """
        token = cancel_token or CancelToken()
        prior = list(history.messages if isinstance(history, Conversation) else history)
        system_message = Message(role="system", content=self.system_prompt)
        turn_messages: list[Message] = [Message(role="user", content=new_user_message)]
        oai_tools = openai_tools_from_specs(tools)

        for round_number in range(1, self.max_rounds + 1):
            final_round = round_number == self.max_rounds
            text_parts: list[str] = []
            tool_calls: list[ModelToolCall] = []

            try:
                async for item in self.model_client.stream(
                    [system_message, *prior, *turn_messages],
                    tools=oai_tools,
                    tool_choice="none" if final_round else "auto",
                ):
                    if token.cancelled:
                        return
                    if isinstance(item, ModelTextDelta):
                        text_parts.append(item.text)
                        yield TextDelta(text=item.text)
                    else:
                        tool_calls.append(item)
            except Exception as e:
                self.logger.error(f"Model call failed in round {round_number}: {e}")
                if not token.cancelled:
                    yield TurnFailed(error=str(e))
                return

            if token.cancelled:
                return

            text = "".join(text_parts) or None
            if not tool_calls:
                turn_messages.append(Message(role="assistant", content=text))
                log_turn_complete(round_number, len(turn_messages), self.logger)
                yield TurnComplete(messages=tuple(turn_messages))
                return

            invocations = [
                ToolInvocation(
                    id=call.call_id or f"call_{uuid.uuid4().hex[:12]}",
                    tool_name=call.name,
                    arguments=call.arguments,
                )
                for call in tool_calls
            ]
            for invocation in invocations:
                yield ToolInvocationRequested(invocation=invocation)
                if token.cancelled:
                    return

            completed: list[ToolInvocation | None] = [None] * len(invocations)
            async for index, done in self._run_invocations(invocations, tools):
                if token.cancelled:
                    return
                completed[index] = done
                log_tool_invocation(done, self.logger)
                yield ToolInvocationCompleted(invocation=done)
            if token.cancelled:
                return

            finished = tuple(inv for inv in completed if inv is not None)
            turn_messages.append(
                Message(role="assistant", content=text, tool_invocations=finished)
            )
            turn_messages.extend(
                Message(
                    role="tool",
                    content=render_tool_output(
                        cast(ExecutionResult, inv.result), self.tool_output_max_chars
                    ),
                    tool_call_id=inv.id,
                )
                for inv in finished
            )

            if final_round:
                self.logger.warning(f"Tool round limit reached ({self.max_rounds} rounds)")
                yield RoundLimitReached(rounds=self.max_rounds)
                yield TextDelta(text=ROUND_LIMIT_NOTICE)
                turn_messages.append(Message(role="assistant", content=ROUND_LIMIT_NOTICE))
                log_turn_complete(round_number, len(turn_messages), self.logger)
                yield TurnComplete(messages=tuple(turn_messages))
                return

    async def _run_invocations(
        self, invocations: list[ToolInvocation], tools: dict[str, ToolSpec]
    ) -> AsyncIterator[tuple[int, ToolInvocation]]:
        """Run invocations concurrently and yield (request index, completed) as they finish."""

        async def run(index: int, invocation: ToolInvocation) -> tuple[int, ToolInvocation]:
            result = await asyncio.to_thread(self._invoke_tool, invocation, tools)
            return index, invocation.complete(result)

        tasks = [asyncio.create_task(run(i, inv)) for i, inv in enumerate(invocations)]
        for next_done in asyncio.as_completed(tasks):
            yield await next_done

    def _invoke_tool(self, invocation: ToolInvocation, tools: dict[str, ToolSpec]) -> ExecutionResult:
        spec = tools.get(invocation.tool_name)
        if spec is None:
            return ExecutionResult.err(f"Unknown tool name returned by LLM: {invocation.tool_name}")

        try:
            args = parse_tool_arguments(invocation.arguments, spec.parameters)
        except ValueError as e:
            return ExecutionResult.err(str(e))

        try:
            return spec.handler(args)
        except Exception as e:
            return ExecutionResult.err(f"Tool '{spec.name}' failed: {e}")
