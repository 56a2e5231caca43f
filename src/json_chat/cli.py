"""
Terminal front-end.

    json-chat chat data.json      converse with a JSON file in the terminal
    json-chat serve --port 8000   run the HTTP service
    json-chat set-key sk-...      save the OpenAI API key
"""

import argparse
import asyncio
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from json_chat.app.config import get_settings, save_openai_api_key
from json_chat.app.process_upload import UploadError
from json_chat.infrastructure.local_platform_manager import create_logger
from json_chat.services.renderer_service import render_event
from json_chat.services.schema_service import SchemaInferenceError, build_schema_service
from json_chat.services.session_service import ChatSession, SessionStore

EXIT_COMMANDS = {"exit", "quit", ":q"}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns:
        argparse.Namespace: Parsed arguments
    """
    parser = argparse.ArgumentParser(
        prog="json-chat",
        description="Chat with a JSON document",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
        help="Set the logging level (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    chat = subparsers.add_parser("chat", help="Converse with a JSON file")
    chat.add_argument("file", help="Path to the JSON file")
    chat.add_argument("--model", "-m", help="OpenAI model (default: OPENAI_MODEL or gpt-5-mini)")
    chat.add_argument(
        "--max-rounds", type=int, help="Maximum model calls per turn (default: MAX_TOOL_ROUNDS or 5)"
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", "-p", type=int, default=8000, help="Port (default: 8000)")

    set_key = subparsers.add_parser("set-key", help="Save the OpenAI API key")
    set_key.add_argument("api_key", help="OpenAI API key")

    return parser.parse_args(argv)


async def _print_turn(session: ChatSession, text: str) -> None:
    async for event in session.converse(text):
        sys.stdout.write(render_event(event))
        sys.stdout.flush()


def run_chat(
    path: str, log_level: str, model: str | None = None, max_rounds: int | None = None
) -> int:
    settings = get_settings()
    logger = create_logger(logger_name="json-chat", log_level=log_level, logs_dir=settings.logs_dir)

    overrides: dict[str, Any] = {}
    if model:
        overrides["openai_model"] = model
    if max_rounds is not None:
        if max_rounds < 1:
            print("❌ --max-rounds must be at least 1")
            return 1
        overrides["max_tool_rounds"] = max_rounds

    raw = Path(path).read_bytes()
    store = SessionStore(
        schema_service=build_schema_service(settings, logger),
        # Settings are re-read for every turn
        settings_provider=lambda: replace(get_settings(), **overrides),
        logger=logger,
    )
    try:
        session = store.create(raw)
    except UploadError as e:
        print(f"❌ {e.message}")
        return 1
    except SchemaInferenceError as e:
        print(f"❌ {e}")
        return 1

    print(f"Loaded {path}. Ask a question, or type 'exit' to quit.")
    while True:
        try:
            question = input("> ").strip()
        except EOFError:
            break
        if not question:
            continue
        if question.lower() in EXIT_COMMANDS:
            break
        asyncio.run(_print_turn(session, question))
    return 0


def run_server(host: str, port: int, log_level: str) -> int:
    import uvicorn

    uvicorn.run("json_chat.fast_api_server:app", host=host, port=port, log_level=log_level.lower())
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)
    try:
        if args.command == "chat":
            return run_chat(args.file, args.log_level, args.model, args.max_rounds)
        if args.command == "serve":
            return run_server(args.host, args.port, args.log_level)
        if args.command == "set-key":
            save_openai_api_key(args.api_key)
            print(f"Saved OpenAI API key to {get_settings().settings_path}")
            return 0
        return 1

    except FileNotFoundError as e:
        print(f"❌ Error: File not found: {e}")
        return 1
    except KeyboardInterrupt:
        print()
        return 0
    except Exception as e:
        print(f"❌ Unexpected Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
