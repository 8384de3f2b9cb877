"""
Export/import of environment snapshots.

This module provides:
- ExportFormat: dotenv, json, yaml
- encode / decode: pure conversion between a key -> value map and bytes
- SecretCodec: authorized export and all-or-nothing import through a SecretStore

Exports hold current plaintext values only, keys sorted ascending. Imports
are parsed and validated completely before the first put is issued.
"""

from __future__ import annotations

import io
import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv.parser import parse_stream

from .errors import DenialReason, ParseError, ValidationError
from .models import Actor, EnvironmentId, Operation, SecretVersion
from .store import EnvironmentLike, SecretStore
from .validation import DEFAULT_MAX_VALUE_BYTES, encode_value, validate_key

logger = logging.getLogger(__name__)

_BARE_DOTENV_VALUE_RE = re.compile(r"^[A-Za-z0-9_./:@+,%=*-]+$")


class ExportFormat(Enum):
    DOTENV = "dotenv"
    JSON = "json"
    YAML = "yaml"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str | ExportFormat) -> ExportFormat:
        if isinstance(s, ExportFormat):
            return s
        aliases = {"env": "dotenv", ".env": "dotenv", "yml": "yaml"}
        try:
            name = s.lower()
            return cls(aliases.get(name, name))
        except (ValueError, AttributeError):
            raise ValidationError(f"Unsupported format: {s!r}")


# =============================================================================
# Encoding
# =============================================================================


def _dotenv_value(value: str) -> str:
    if value == "" or _BARE_DOTENV_VALUE_RE.match(value):
        return value
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def encode(values: Mapping[str, str], fmt: ExportFormat | str) -> bytes:
    """Serialize a key -> value map; keys are always sorted ascending."""
    fmt = ExportFormat.from_str(fmt)
    ordered = {k: values[k] for k in sorted(values)}
    if fmt is ExportFormat.DOTENV:
        text = "".join(f"{k}={_dotenv_value(v)}\n" for k, v in ordered.items())
    elif fmt is ExportFormat.JSON:
        text = json.dumps(ordered, indent=2, ensure_ascii=False) + "\n"
    else:
        text = yaml.safe_dump(ordered, default_flow_style=False, sort_keys=True, allow_unicode=True) if ordered else ""
    return text.encode("utf-8")


# =============================================================================
# Decoding
# =============================================================================


def _scalar(key: str, value: Any) -> str:
    # bool first: it is a subclass of int
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        raise ParseError(f"Value for {key!r} is null")
    raise ParseError(f"Value for {key!r} must be a scalar, got {type(value).__name__}")


def _decode_dotenv(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for binding in parse_stream(io.StringIO(text)):
        line = binding.original.line
        if binding.error:
            raise ParseError(f"Invalid line: {binding.original.string.strip()!r}", line)
        if binding.key is None:
            continue  # blank or comment
        if binding.value is None:
            raise ParseError(f"Missing '=' after {binding.key!r}", line)
        values[binding.key] = binding.value
    return values


def _decode_mapping(data: Any) -> Dict[str, str]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError(f"Top-level value must be a mapping, got {type(data).__name__}")
    values: Dict[str, str] = {}
    for key, value in data.items():
        if not isinstance(key, str):
            raise ParseError(f"Key {key!r} must be a string")
        values[key] = _scalar(key, value)
    return values


def decode(payload: bytes, fmt: ExportFormat | str) -> Dict[str, str]:
    """
    Parse a payload into a key -> value map.

    Raises:
        ParseError: If the payload is not valid for the format
    """
    fmt = ExportFormat.from_str(fmt)
    try:
        text = payload.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(f"Payload is not UTF-8: {e}")

    if fmt is ExportFormat.DOTENV:
        return _decode_dotenv(text)
    if fmt is ExportFormat.JSON:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(e.msg, e.lineno)
        if data is None:
            raise ParseError("Top-level value must be a mapping, got null")
        return _decode_mapping(data)
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        raise ParseError(f"Invalid YAML: {getattr(e, 'problem', None) or e}", mark.line + 1 if mark else None)
    return _decode_mapping(data)


def validate_entries(values: Mapping[str, str], max_value_bytes: int = DEFAULT_MAX_VALUE_BYTES) -> None:
    """Check every parsed entry would be accepted by put()."""
    for key, value in values.items():
        try:
            validate_key(key)
            encode_value(value, max_value_bytes)
        except ValidationError as e:
            raise ParseError(str(e))


# =============================================================================
# Store integration
# =============================================================================


class SecretCodec:
    """Authorized export/import against a SecretStore."""

    def __init__(self, store: SecretStore, max_value_bytes: int = DEFAULT_MAX_VALUE_BYTES) -> None:
        self._store = store
        self._max_value_bytes = max_value_bytes

    async def _format(
        self, fmt: ExportFormat | str, actor: Actor, operation: Operation, project_id: str
    ) -> ExportFormat:
        try:
            return ExportFormat.from_str(fmt)
        except ValidationError as e:
            raise await self._store.fail_operation(e, DenialReason.INVALID_INPUT, actor, operation, project_id)

    async def export(
        self,
        project_id: str,
        environment: EnvironmentLike,
        fmt: ExportFormat | str,
        actor: Actor,
    ) -> bytes:
        """Serialize the environment's current decrypted values."""
        fmt = await self._format(fmt, actor, Operation.EXPORT, project_id)
        values = await self._store.snapshot(project_id, environment, actor, Operation.EXPORT)
        return encode(values, fmt)

    async def import_payload(
        self,
        project_id: str,
        environment: EnvironmentLike,
        payload: bytes,
        fmt: ExportFormat | str,
        actor: Actor,
        comment: Optional[str] = None,
    ) -> List[SecretVersion]:
        """
        Parse a payload and write every entry as one all-or-nothing batch.

        Raises:
            ParseError: Malformed payload; nothing is written
            ForbiddenError / NotFoundError: Raised before any write
            ConflictError: A key's lock could not be taken; nothing is written
        """
        op = Operation.IMPORT
        fmt = await self._format(fmt, actor, op, project_id)
        env_id: EnvironmentId = await self._store.require_writable(project_id, environment, actor, op)
        try:
            values = decode(payload, fmt)
            validate_entries(values, self._max_value_bytes)
        except ParseError as e:
            raise await self._store.fail_operation(e, DenialReason.INVALID_INPUT, actor, op, project_id, env_id)

        results = await self._store.put_many(project_id, env_id, values, actor, comment=comment, operation=op)
        logger.info("Imported %d secrets into %s/%s (%s)", len(results), project_id, env_id, fmt)
        return results
