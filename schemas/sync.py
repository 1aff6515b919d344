"""
Pydantic schemas for sync passes: transform context/results, checkpoints,
sync parameters and results.
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Union
from datetime import datetime

from integrations.utils import parse_timestamp, format_timestamp, utcnow


class DataFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    FLAT_FILE = "flat-file"
    BINARY = "binary"
    CUSTOM = "custom"


# ============================================================================
# Transform Schemas
# ============================================================================

class TransformContext(BaseModel):
    """Immutable description of where a unit of raw data came from"""
    model_config = ConfigDict(frozen=True)

    source: str
    format: DataFormat = DataFormat.JSON
    metadata: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)
    trace_id: Optional[str] = None


class TransformResult(BaseModel):
    """
    One normalized record ready for upload.

    A non-empty ``errors`` list marks the record invalid; the connector
    reports it instead of uploading it.
    """
    filename: str
    data: bytes
    content_type: str = "application/json"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def item_id(self) -> Optional[str]:
        value = self.metadata.get("item_id")
        return None if value is None else str(value)

    @property
    def item_timestamp(self) -> Optional[datetime]:
        return parse_timestamp(self.metadata.get("item_timestamp"))


# ============================================================================
# Checkpoint Schemas
# ============================================================================

class CheckpointKind(str, Enum):
    TIMESTAMP = "timestamp"
    CURSOR = "cursor"
    OFFSET = "offset"
    PAGE = "page"


class Checkpoint(BaseModel):
    """
    Resumable sync position.

    Serialized as the opaque token ``"<kind>:<value>"``. A bare ISO-8601
    string is accepted as a timestamp checkpoint.
    """
    model_config = ConfigDict(frozen=True)

    kind: CheckpointKind
    value: str

    @property
    def token(self) -> str:
        return f"{self.kind.value}:{self.value}"

    def __str__(self) -> str:
        return self.token

    @classmethod
    def from_timestamp(cls, value: datetime) -> "Checkpoint":
        return cls(kind=CheckpointKind.TIMESTAMP, value=format_timestamp(value))

    @classmethod
    def parse(cls, token: Union[str, datetime, "Checkpoint"]) -> "Checkpoint":
        """
        Parse a checkpoint token.

        Raises:
            ValueError: If the token is neither ``kind:value`` nor an ISO timestamp
        """
        if isinstance(token, Checkpoint):
            return token
        if isinstance(token, datetime):
            return cls.from_timestamp(token)

        text = str(token).strip()
        kind, sep, value = text.partition(":")
        if sep and kind in {k.value for k in CheckpointKind}:
            checkpoint = cls(kind=CheckpointKind(kind), value=value)
            if checkpoint.kind == CheckpointKind.TIMESTAMP:
                if checkpoint.as_datetime() is None:
                    raise ValueError(f"Invalid timestamp checkpoint: {token!r}")
                return cls.from_timestamp(checkpoint.as_datetime())
            return checkpoint

        parsed = parse_timestamp(text)
        if parsed is None:
            raise ValueError(f"Unrecognized checkpoint token: {token!r}")
        return cls.from_timestamp(parsed)

    def as_datetime(self) -> Optional[datetime]:
        if self.kind != CheckpointKind.TIMESTAMP:
            return None
        return parse_timestamp(self.value)

    def as_int(self) -> Optional[int]:
        if self.kind not in (CheckpointKind.OFFSET, CheckpointKind.PAGE):
            return None
        try:
            return int(self.value)
        except ValueError:
            return None


# ============================================================================
# Sync Schemas
# ============================================================================

class SyncParams(BaseModel):
    """Parameters for one sync pass"""
    since: Optional[Union[datetime, str]] = None
    cursor: Optional[str] = None
    until: Optional[datetime] = None
    full_sync: bool = False
    params: Dict[str, Any] = Field(default_factory=dict)
    trace_id: Optional[str] = None

    def since_checkpoint(self) -> Optional[Checkpoint]:
        """Resolve ``since``/``cursor`` into a checkpoint (None means full sync)."""
        if self.full_sync:
            return None
        if self.cursor:
            return Checkpoint(kind=CheckpointKind.CURSOR, value=self.cursor)
        if self.since is None or self.since == "":
            return None
        return Checkpoint.parse(self.since)


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"


class SyncError(BaseModel):
    """A single item-level failure recorded during a pass"""
    message: str
    code: str
    item_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class SyncResult(BaseModel):
    """Aggregate outcome of one sync pass"""
    documents_processed: int = 0
    documents_uploaded: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    checkpoint: Optional[str] = None
    status: SyncStatus = SyncStatus.SUCCESS
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SourceBatch(BaseModel):
    """
    One unit acquired by a connector: a page of items or a downloaded file.

    ``position`` is the checkpoint to resume from once this batch and every
    batch before it has been fully uploaded. ``truncated`` means the source
    had more data after this batch that the pass did not fetch.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    data: Any
    format: DataFormat = DataFormat.JSON
    position: Optional[Checkpoint] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    truncated: bool = False
