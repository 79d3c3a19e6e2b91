"""
pdrive

Resumable uploads of local files to an S3-compatible bucket.

Example usage:
    from pdrive import SessionStore, TransportClient, UploadSessionManager, UploadTarget

    target = UploadTarget(
        endpoint="https://storage.example.com",
        token="your_token_here",
        bucket="backups",
        object_key="photos.tar",
    )

    with TransportClient.for_target(target) as transport:
        manager = UploadSessionManager(transport, SessionStore("sessions"))
        outcome = manager.start_upload("photos.tar", target)
        print(outcome.state, outcome.session_id)
"""

__version__ = "0.1.0"

from pdrive.exceptions import (
    AuthError,
    ClientError,
    ConfigError,
    FileReadError,
    InconsistentStateError,
    IntegrityError,
    InternalError,
    InvalidSizeError,
    PDriveError,
    ServerError,
    SessionLockedError,
    SessionNotFoundError,
)
from pdrive.models import (
    ChunkPlan,
    ChunkSpec,
    EventType,
    ObjectDescriptor,
    PartResult,
    ProgressEvent,
    RetryPolicy,
    SessionState,
    UploadOutcome,
    UploadProgress,
    UploadSession,
    UploadSettings,
    UploadTarget,
)
from pdrive.planner import plan
from pdrive.progress import CallbackReporter, ProgressTracker, QueueingReporter
from pdrive.session import UploadSessionManager
from pdrive.store import SessionStore
from pdrive.transport import TransportClient

__all__ = [
    "UploadSessionManager",
    "TransportClient",
    "SessionStore",
    "plan",
    "CallbackReporter",
    "ProgressTracker",
    "QueueingReporter",
    "PDriveError",
    "ConfigError",
    "InvalidSizeError",
    "AuthError",
    "ClientError",
    "ServerError",
    "IntegrityError",
    "InconsistentStateError",
    "InternalError",
    "FileReadError",
    "SessionNotFoundError",
    "SessionLockedError",
    "ChunkPlan",
    "ChunkSpec",
    "EventType",
    "ObjectDescriptor",
    "PartResult",
    "ProgressEvent",
    "RetryPolicy",
    "SessionState",
    "UploadOutcome",
    "UploadProgress",
    "UploadSession",
    "UploadSettings",
    "UploadTarget",
]
