import json
from typing import Any

from json_chat.infrastructure.data_models import Document

NO_FILE_MESSAGE = "No file selected"
INVALID_JSON_MESSAGE = "Invalid json. Recheck the file"


class UploadError(ValueError):
    """A rejected upload; `kind` is "no_file" or "invalid_json"."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


def _reject_constant(name: str) -> Any:
    # Python's json accepts NaN and Infinity; strict JSON does not
    raise ValueError(f"Invalid JSON constant: {name}")


def process_upload(raw: bytes | str | None) -> Document:
    """
    Validate an uploaded file and build the session Document.

    The text is kept exactly as uploaded, minus a UTF-8 byte order mark; the
    parse is only used for validation and for the value bound into snippets.

    Raises:
        UploadError: "no_file" for a missing or empty upload, "invalid_json" when
            the content is not UTF-8 encoded, strict JSON.
    """
    if raw is None or len(raw) == 0:
        raise UploadError("no_file", NO_FILE_MESSAGE)

    # A leading byte order mark is an encoding marker, not document text
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise UploadError("invalid_json", INVALID_JSON_MESSAGE) from e
    else:
        text = raw.removeprefix("\ufeff")

    try:
        value = json.loads(text, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as e:
        raise UploadError("invalid_json", INVALID_JSON_MESSAGE) from e

    return Document(text=text, value=value)
