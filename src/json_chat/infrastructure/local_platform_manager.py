import logging
import os
from pathlib import Path


def create_logger(
    log_level: str = "INFO",
    logger_name: str = "json-chat",
    logs_dir: str | Path = "logs",
) -> logging.Logger:
    """
    Create a logger that outputs to console and optionally to a file.

    Args:
        log_level (str): Logging level (e.g., "INFO", "DEBUG").
        logger_name (str): Name for the logger instance and its log file.
        logs_dir (str | Path): Directory for log files.

    Returns:
        logging.Logger: Configured logger instance.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    if not logger.hasHandlers():  # Prevent handler duplication
        # Console handler (stdio) - always add this
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        try:
            logs_path = Path(logs_dir)
            logs_path.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(logs_path / f"{logger_name}.log")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError:
            # If file logging fails, just continue with console logging
            pass

    return logger


def get_parameters(param_names: list[str] | str) -> dict[str, str | None]:
    """
    Retrieve configuration parameters from environment variables.

    Parameters are stored in the environment in uppercase but returned keyed
    in lowercase, so `get_parameters(["openai_model"])` reads `OPENAI_MODEL`.

    Args:
        param_names (list[str] | str): One or more parameter names.

    Returns:
        dict[str, str | None]: Parameter values; None where the variable is unset
            or empty.
    """
    if isinstance(param_names, str):
        param_names = [param_names]

    result: dict[str, str | None] = {}
    for param_name in param_names:
        value = os.getenv(param_name.upper())
        result[param_name.lower()] = value if value else None
    return result
