"""Input validation for identifiers, keys, values and comments."""

from __future__ import annotations

import re
from typing import Optional

from .errors import ValidationError

MAX_KEY_LENGTH = 256
MAX_COMMENT_LENGTH = 500
DEFAULT_MAX_VALUE_BYTES = 65536

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")
# Also keeps every key writable as a bare dotenv key
_FORBIDDEN_KEY_CHARS_RE = re.compile(r"[\s=#'\"`\x00-\x1f\x7f]")


def validate_project_id(project_id: str) -> str:
    if not isinstance(project_id, str) or not _PROJECT_ID_RE.match(project_id):
        raise ValidationError(f"Invalid project id: {project_id!r}")
    return project_id


def validate_actor_id(actor_id: str) -> str:
    if not isinstance(actor_id, str) or not actor_id.strip() or len(actor_id) > 256:
        raise ValidationError(f"Invalid actor id: {actor_id!r}")
    return actor_id


def validate_key(key: str) -> str:
    if not isinstance(key, str) or not key:
        raise ValidationError("Secret key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(f"Secret key longer than {MAX_KEY_LENGTH} characters")
    if _FORBIDDEN_KEY_CHARS_RE.search(key):
        raise ValidationError(f"Secret key contains whitespace, '=', '#', quotes or control characters: {key!r}")
    return key


def encode_value(value: str, max_bytes: int = DEFAULT_MAX_VALUE_BYTES) -> bytes:
    """Validate a secret value and return its UTF-8 encoding."""
    if not isinstance(value, str):
        raise ValidationError(f"Secret value must be a string, got {type(value).__name__}")
    try:
        data = value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ValidationError(f"Secret value is not valid UTF-8: {e}")
    if len(data) > max_bytes:
        raise ValidationError(f"Secret value exceeds {max_bytes} bytes")
    return data


def validate_comment(comment: Optional[str]) -> Optional[str]:
    if comment is None:
        return None
    if not isinstance(comment, str):
        raise ValidationError("Comment must be a string")
    if len(comment) > MAX_COMMENT_LENGTH:
        raise ValidationError(f"Comment longer than {MAX_COMMENT_LENGTH} characters")
    return comment
