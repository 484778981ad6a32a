from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..errors import InvalidOperationKey, ValidationError
from .hasher import ContentHasher

FORMAT_VERSION = 1
MAX_OPERATION_KEY_LENGTH = 512

_FORBIDDEN_KEY_CHARS = re.compile(r"[\s\x00-\x1f\x7f]")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC already.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_operation_key(operation_key: object) -> str:
    """
    Check an operation key and return it unchanged.

    Keys look like ``subject:action[:target...]``: no whitespace or control
    characters, no empty segments, at most 512 characters.
    """
    if not isinstance(operation_key, str):
        raise InvalidOperationKey(operation_key, "must be a string")
    if not operation_key:
        raise InvalidOperationKey(operation_key, "must not be empty")
    if len(operation_key) > MAX_OPERATION_KEY_LENGTH:
        raise InvalidOperationKey(
            operation_key, f"longer than {MAX_OPERATION_KEY_LENGTH} characters"
        )
    if _FORBIDDEN_KEY_CHARS.search(operation_key):
        raise InvalidOperationKey(operation_key, "contains whitespace or control characters")
    if any(segment == "" for segment in operation_key.split(":")):
        raise InvalidOperationKey(operation_key, "contains an empty segment")
    return operation_key


def split_operation_key(operation_key: str) -> tuple[str, str, str]:
    """Split a key into (subject, action, operation_prefix)."""
    segments = operation_key.split(":")
    subject = segments[0]
    action = segments[1] if len(segments) > 1 else ""
    prefix = f"{subject}:{action}" if action else subject
    return subject, action, prefix


class _Record(BaseModel):
    """Base for hashed log records. Bytes travel as base64 in JSON."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

    @field_validator("created_at", mode="after", check_fields=False)
    @classmethod
    def _normalize_created_at(cls, value: datetime) -> datetime:
        return _as_utc(value)


class Receipt(_Record):
    """Immutable proof that an operation was attempted, and how it ended."""

    receipt_id: str
    operation_key: str
    owning_agent_id: str
    trace_id: str
    created_at: datetime
    success: bool
    result_payload: bytes = b""
    error_message: Optional[str] = None
    token_cost: int = Field(default=0, ge=0)
    latency: float = Field(default=0.0, ge=0.0)
    record_hash: str

    @model_validator(mode="after")
    def _error_iff_failure(self) -> "Receipt":
        if self.success and self.error_message is not None:
            raise ValueError("successful receipt must not carry an error_message")
        if not self.success and self.error_message is None:
            raise ValueError("failed receipt must carry an error_message")
        return self

    @classmethod
    def build(
        cls,
        operation_key: str,
        owning_agent_id: str,
        trace_id: str,
        success: bool,
        result_payload: bytes = b"",
        error_message: str | None = None,
        token_cost: int = 0,
        latency: float = 0.0,
        created_at: datetime | None = None,
        receipt_id: str | None = None,
        hasher: ContentHasher | None = None,
    ) -> "Receipt":
        """
        Create a receipt with a fresh id and its record hash filled in.

        Raises:
            InvalidOperationKey: If the operation key is malformed
            ValidationError: If the field values violate receipt invariants
        """
        validate_operation_key(operation_key)
        hasher = hasher or ContentHasher()
        fields = dict(
            receipt_id=receipt_id or f"receipt-{uuid.uuid4()}",
            operation_key=operation_key,
            owning_agent_id=owning_agent_id,
            trace_id=trace_id,
            created_at=created_at or utc_now(),
            success=success,
            result_payload=result_payload,
            error_message=error_message,
            token_cost=token_cost,
            latency=latency,
        )
        return _build_hashed(cls, fields, hasher)


class StateSnapshot(_Record):
    """Compressed agent context at a point in time. Prunable."""

    state_id: str
    created_at: datetime
    compressed_context: bytes = b""
    token_count: int = Field(default=0, ge=0)
    message_count: int = Field(default=0, ge=0)
    record_hash: str

    @classmethod
    def build(
        cls,
        compressed_context: bytes,
        token_count: int = 0,
        message_count: int = 0,
        created_at: datetime | None = None,
        state_id: str | None = None,
        hasher: ContentHasher | None = None,
    ) -> "StateSnapshot":
        hasher = hasher or ContentHasher()
        fields = dict(
            state_id=state_id or f"state-{uuid.uuid4()}",
            created_at=created_at or utc_now(),
            compressed_context=compressed_context,
            token_count=token_count,
            message_count=message_count,
        )
        return _build_hashed(cls, fields, hasher)


def _build_hashed(model_cls, fields: dict, hasher: ContentHasher):
    try:
        draft = model_cls(**fields, record_hash="")
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {model_cls.__name__}: {e}") from e
    # Hash the validated draft so normalized timestamps are what gets hashed.
    return draft.model_copy(update={"record_hash": hasher.record_digest(draft)})


class CoordinateDictionaryEntry(BaseModel):
    """
    Aggregate usage statistics for one operation prefix.

    The only record updated in place. Informational; never part of the
    container digest.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    operation_prefix: str
    subject: str
    action: str = ""
    template: str
    preferred_executor: Optional[str] = None
    usage_count: int = Field(default=0, ge=0)
    average_token_cost: float = Field(default=0.0, ge=0.0)
    first_used_at: datetime
    last_used_at: datetime

    @field_validator("first_used_at", "last_used_at", mode="after")
    @classmethod
    def _normalize_times(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @classmethod
    def for_operation(
        cls,
        operation_key: str,
        used_at: datetime,
        executor: str | None = None,
    ) -> "CoordinateDictionaryEntry":
        subject, action, prefix = split_operation_key(operation_key)
        has_target = operation_key.count(":") > (1 if action else 0)
        template = f"{prefix}:{{target}}" if has_target else prefix
        return cls(
            operation_prefix=prefix,
            subject=subject,
            action=action,
            template=template,
            preferred_executor=executor,
            usage_count=0,
            average_token_cost=0.0,
            first_used_at=used_at,
            last_used_at=used_at,
        )

    def record_use(
        self,
        token_cost: int,
        used_at: datetime,
        executor: str | None = None,
    ) -> None:
        used_at = _as_utc(used_at)
        count = self.usage_count + 1
        self.average_token_cost = self.average_token_cost + (token_cost - self.average_token_cost) / count
        self.usage_count = count
        if used_at > self.last_used_at:
            self.last_used_at = used_at
        if used_at < self.first_used_at:
            self.first_used_at = used_at
        if executor is not None:
            self.preferred_executor = executor


class Header(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    format_version: int = FORMAT_VERSION
    container_id: str
    owning_agent_id: str
    trace_id: str
    created_at: datetime
    last_modified_at: datetime
    entry_count: int = Field(default=0, ge=0)
    total_byte_size: int = Field(default=0, ge=0)
    content_hash: str
    # Ed25519 signature over content_hash, hex encoded (see qmem.signing)
    signature: Optional[str] = None
    signer_key: Optional[str] = None

    @field_validator("created_at", "last_modified_at", mode="after")
    @classmethod
    def _normalize_times(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ContainerStats(BaseModel):
    receipt_count: int
    state_count: int
    coordinate_count: int
    total_byte_size: int
    oldest_receipt_at: Optional[datetime] = None
    newest_receipt_at: Optional[datetime] = None
    mean_token_cost: float = 0.0
    success_count: int = 0
    failure_count: int = 0
