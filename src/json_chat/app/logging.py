import logging

from json_chat.infrastructure.data_models import ToolInvocation


def log_tool_invocation(invocation: ToolInvocation, logger: logging.Logger) -> None:
    logger.info(f"Tool call: {invocation.tool_name} ({invocation.id})")
    if invocation.result is None:
        logger.info("Status: pending")
    elif invocation.result.is_ok:
        logger.info(f"Status: ok (assigned={invocation.result.assigned})")
    else:
        logger.info(f"Status: error: {invocation.result.error}")


def log_turn_complete(rounds: int, message_count: int, logger: logging.Logger) -> None:
    logger.info(f"Turn complete after {rounds} round(s), {message_count} new message(s)")
