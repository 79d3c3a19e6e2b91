"""
pdrive Data Models

Pydantic models shared by the planner, transport and session manager.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

MiB = 1024 * 1024

# Remote limits of the S3 multipart API
S3_MIN_PART_SIZE = 5 * MiB
S3_MAX_PART_COUNT = 10_000

# Split size used when no part size is configured
DEFAULT_PART_SIZE = 50 * MiB


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadTarget(BaseModel):
    """
    Where an upload goes. Immutable for the duration of one upload.

    The token is never serialized; a target loaded from a session record
    has an empty token and relies on the transport's own credentials.
    """

    model_config = ConfigDict(frozen=True)

    endpoint: str = Field(description="Base URL of the storage endpoint")
    token: str = Field(
        default="", repr=False, exclude=True, description="Bearer token (never logged or stored)"
    )
    bucket: str = Field(min_length=1)
    object_key: str = Field(min_length=1)


class ChunkSpec(BaseModel):
    """One contiguous byte range of the file."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    offset: int = Field(ge=0)
    length: int = Field(gt=0)

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def part_number(self) -> int:
        """1-based part number used on the wire."""
        return self.index + 1


class ChunkPlan(BaseModel):
    """Ordered, contiguous, non-overlapping parts covering a file exactly once."""

    file_size: int = Field(gt=0)
    part_size: int = Field(gt=0)
    parts: List[ChunkSpec]

    @property
    def part_count(self) -> int:
        return len(self.parts)

    @property
    def is_multipart(self) -> bool:
        return len(self.parts) > 1


class PartResult(BaseModel):
    """Result of one successfully uploaded part."""

    index: int = Field(ge=0)
    etag: str
    digest: bytes = Field(description="SHA-256 of the part data")

    @field_validator("digest", mode="before")
    @classmethod
    def _digest_from_hex(cls, value: Any) -> Any:
        if isinstance(value, str):
            return bytes.fromhex(value)
        return value

    @field_serializer("digest")
    def _digest_to_hex(self, value: bytes) -> str:
        return value.hex()


class ObjectDescriptor(BaseModel):
    """Object metadata reported by the server once an upload is assembled."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    size: int
    etag: Optional[str] = None
    checksum: Optional[str] = Field(default=None, alias="checksumSHA256")
    part_count: Optional[int] = Field(default=None, alias="partCount")


class SessionState(str, Enum):
    """Lifecycle of an upload session."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABORTED, SessionState.FAILED)


class UploadSession(BaseModel):
    """Persisted state of one upload, keyed by session id."""

    session_id: str
    target: UploadTarget
    file_path: str
    file_size: int
    file_mtime: float
    upload_id: Optional[str] = None
    plan: ChunkPlan
    completed_parts: Dict[int, PartResult] = Field(default_factory=dict)
    state: SessionState = SessionState.PLANNING
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def pending_parts(self) -> List[ChunkSpec]:
        """Plan entries that have not been uploaded yet, in index order."""
        return [part for part in self.plan.parts if part.index not in self.completed_parts]

    @property
    def bytes_completed(self) -> int:
        return sum(self.plan.parts[index].length for index in self.completed_parts)

    def sorted_parts(self) -> List[PartResult]:
        return [self.completed_parts[index] for index in sorted(self.completed_parts)]


class UploadOutcome(BaseModel):
    """Terminal result of an upload handed back to the CLI."""

    session_id: str
    state: SessionState
    descriptor: Optional[ObjectDescriptor] = None
    digest: Optional[str] = Field(default=None, description="Aggregate SHA-256 digest")
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    resumable: bool = False
    parts_uploaded: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state == SessionState.COMPLETED


class RetryPolicy(BaseModel):
    """Exponential backoff parameters for transient transport errors."""

    max_retries: int = Field(default=5, ge=0)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=30.0, ge=0)


class UploadSettings(BaseModel):
    """Engine tunables."""

    part_size: int = Field(default=DEFAULT_PART_SIZE, gt=0)
    min_part_size: int = Field(default=S3_MIN_PART_SIZE, gt=0)
    max_part_count: int = Field(default=S3_MAX_PART_COUNT, gt=0)
    concurrency: int = Field(default=2, ge=1)
    part_retries: int = Field(default=3, ge=0, description="Re-uploads of a part after integrity errors")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class EventType(str, Enum):
    PART_STARTED = "part_started"
    PART_COMPLETED = "part_completed"
    UPLOAD_COMPLETED = "upload_completed"
    UPLOAD_FAILED = "upload_failed"
    UPLOAD_ABORTED = "upload_aborted"


class ProgressEvent(BaseModel):
    """Event pushed by the session manager to a progress reporter."""

    type: EventType
    session_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class UploadProgress(BaseModel):
    """Progress information for upload callbacks."""

    bytes_uploaded: int = Field(description="Total bytes uploaded so far")
    total_bytes: int = Field(description="Total file size in bytes")
    chunks_completed: int = Field(default=0, description="Number of chunks completed")
    total_chunks: int = Field(default=1, description="Total number of chunks")
    percentage: float = Field(description="Upload progress percentage (0-100)")
    speed_bps: Optional[float] = Field(default=None, description="Upload speed in bytes/second")

    @classmethod
    def from_bytes(
        cls,
        bytes_uploaded: int,
        total_bytes: int,
        chunks_completed: int = 0,
        total_chunks: int = 1,
        speed_bps: Optional[float] = None,
    ) -> "UploadProgress":
        """Create progress from byte counts."""
        percentage = (bytes_uploaded / total_bytes * 100) if total_bytes > 0 else 0
        return cls(
            bytes_uploaded=bytes_uploaded,
            total_bytes=total_bytes,
            chunks_completed=chunks_completed,
            total_chunks=total_chunks,
            percentage=round(percentage, 2),
            speed_bps=speed_bps,
        )


# Type alias for progress callbacks
ProgressCallback = Callable[[UploadProgress], None]
