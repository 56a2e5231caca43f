import json
import os
from string import Template

from json_chat.app.config import DOCUMENT_VARIABLE, RESULT_VARIABLE, SCRIPT_TOOL_NAME
from json_chat.infrastructure.data_models import (
    ConversationEvent,
    ExecutionResult,
    RoundLimitReached,
    TextDelta,
    ToolInvocation,
    ToolInvocationCompleted,
    ToolInvocationRequested,
    TurnComplete,
    TurnFailed,
)
from json_chat.services.sandbox_service import ALLOWED_MODULES

ROUND_LIMIT_NOTICE = (
    "I could not complete this request within the allowed number of tool calls. "
    "Please try rephrasing or narrowing the question."
)
TRUNCATION_MARKER = "\n... [output truncated]"


def render_prompt(schema: str) -> str:
    # Get the directory of this file and construct the path to the prompt template
    current_dir = os.path.dirname(os.path.abspath(__file__))
    prompt_path = os.path.join(current_dir, "..", "prompts", "system_prompt.md")
    with open(prompt_path, encoding="utf-8") as f:
        template = Template(f.read())

    return template.safe_substitute(
        schema=schema,
        tool_name=SCRIPT_TOOL_NAME,
        document_variable=DOCUMENT_VARIABLE,
        result_variable=RESULT_VARIABLE,
        allowed_modules=", ".join(sorted(ALLOWED_MODULES)),
    )


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(TRUNCATION_MARKER))
    return text[:keep] + TRUNCATION_MARKER


def render_tool_output(result: ExecutionResult, max_chars: int = 20000) -> str:
    """
    Render an execution result as the text the model receives as tool output.

    Args:
        result: The completed execution result.
        max_chars: Upper bound on the returned text.

    Returns:
        JSON of the value for successes, a notice when `result` was never
        assigned, or the error message.
    """
    if not result.is_ok:
        return truncate(f"There was an error executing the code: {result.error}", max_chars)

    if result.assigned:
        body = json.dumps(result.value, ensure_ascii=False, default=str)
    else:
        body = (
            f"The code ran without errors but did not assign a value to "
            f"`{RESULT_VARIABLE}`."
        )
    if result.stdout:
        body += f"\nPrinted output:\n{result.stdout}"
    return truncate(body, max_chars)


def _render_invocation_status(invocation: ToolInvocation) -> str:
    if invocation.result is None:
        return f"[{invocation.tool_name}] running..."
    if invocation.result.is_ok:
        return f"[{invocation.tool_name}] done: {render_tool_output(invocation.result, 500)}"
    return f"[{invocation.tool_name}] failed: {invocation.result.error}"


def render_event(event: ConversationEvent) -> str:
    """
    Render a conversation event for a plain-text terminal.

    Text deltas are returned as-is so they can be written without newlines;
    everything else is returned as a complete line.
    """
    if isinstance(event, TextDelta):
        return event.text
    if isinstance(event, ToolInvocationRequested):
        return f"\n{_render_invocation_status(event.invocation)}\n"
    if isinstance(event, ToolInvocationCompleted):
        return f"{_render_invocation_status(event.invocation)}\n"
    if isinstance(event, RoundLimitReached):
        return f"\n[tool call limit of {event.rounds} rounds reached]\n"
    if isinstance(event, TurnComplete):
        return "\n"
    if isinstance(event, TurnFailed):
        return f"\nError: {event.error}\n"
    return ""
