"""
Upload session manager.

Drives one file through the upload lifecycle:

    planning -> in_progress -> verifying -> completed | aborted | failed

Small files skip straight from planning to verifying with a single put.
Large files are initiated as a multipart upload whose parts are uploaded by
a bounded worker pool; the session is persisted after every completed part
so an interrupted upload can be resumed from where it stopped.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pdrive.exceptions import (
    FileReadError,
    InconsistentStateError,
    IntegrityError,
    InternalError,
    PDriveError,
    ServerError,
    SessionNotFoundError,
)
from pdrive.hashing import b64_digest, composite_digest, read_part
from pdrive.models import (
    ChunkSpec,
    EventType,
    ObjectDescriptor,
    ProgressEvent,
    SessionState,
    UploadOutcome,
    UploadSession,
    UploadSettings,
    UploadTarget,
)
from pdrive.planner import choose_part_size
from pdrive.progress import NullReporter, ProgressReporter
from pdrive.store import SessionStore
from pdrive.transport import TransportClient

logger = logging.getLogger(__name__)


class UploadCancelled(Exception):
    """Internal signal: the cancellation event was observed."""


class UploadSessionManager:
    """
    Orchestrates uploads: planning, part uploads, verification and cleanup.

    The manager is the only component that moves a session to failed or
    aborted, and the only one that asks the remote to abort a multipart
    upload.

    Example:
        >>> manager = UploadSessionManager(transport, SessionStore(path))
        >>> outcome = manager.start_upload("backup.tar", target)
        >>> outcome.state
        <SessionState.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        transport: TransportClient,
        store: SessionStore,
        settings: Optional[UploadSettings] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> None:
        """
        Initialize the session manager.

        Args:
            transport: Client for the storage endpoint
            store: Where sessions are persisted between parts
            settings: Part sizes, concurrency and retry bounds
            reporter: Sink for progress events
        """
        self._transport = transport
        self._store = store
        self.settings = settings or UploadSettings()
        self._reporter: ProgressReporter = reporter or NullReporter()
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._outcomes: Dict[str, UploadOutcome] = {}

    # ==================== Public API ====================

    def cancel(self) -> None:
        """Request cancellation of the running upload. Safe from any thread."""
        logger.info("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def start_upload(self, file_path: Union[str, Path], target: UploadTarget) -> UploadOutcome:
        """
        Upload a file.

        A cancel() that arrives before or during the call aborts this upload;
        the cancellation flag is cleared once the call returns.

        Args:
            file_path: Local file to upload
            target: Endpoint, bucket and object key

        Returns:
            UploadOutcome with the terminal state. A failed outcome with
            resumable=True can be continued with resume_upload().
        """
        try:
            return self._start(Path(file_path), target)
        finally:
            self._cancel.clear()

    def resume_upload(
        self, session_id: str, file_path: Optional[Union[str, Path]] = None
    ) -> UploadOutcome:
        """
        Continue a persisted upload, skipping parts that already completed.

        Resuming a session that already reached a terminal state returns its
        recorded outcome without touching the network.

        Args:
            session_id: Id printed when the upload was interrupted
            file_path: If given, must be the file the session was started with

        Raises:
            SessionNotFoundError: If the session is unknown
            SessionLockedError: If another process is uploading it
            InconsistentStateError: If file_path names a different file, or the
                record is terminal but was not removed
        """
        try:
            return self._resume(session_id, file_path)
        finally:
            self._cancel.clear()

    def abort_session(self, session_id: str) -> UploadOutcome:
        """
        Abort a persisted session and clean up the remote multipart upload.

        Raises:
            SessionNotFoundError: If the session is unknown
        """
        if not self._store.exists(session_id):
            cached = self._cached_outcome(session_id)
            if cached is not None:
                return cached
            raise SessionNotFoundError(f"No session {session_id} to abort")

        owner = self._store.lock(session_id)
        try:
            return self._abort(self._store.load(session_id))
        finally:
            self._store.release(session_id, owner)

    def list_sessions(self) -> List[UploadSession]:
        return self._store.list_sessions()

    def prune_outcomes(self, max_age: float) -> int:
        """
        Forget finished sessions older than max_age seconds.

        Returns:
            Number of outcome records removed
        """
        pruned = self._store.prune_outcomes(max_age)
        for session_id in pruned:
            self._outcomes.pop(session_id, None)
        return len(pruned)

    # ==================== Lifecycle ====================

    def _start(self, path: Path, target: UploadTarget) -> UploadOutcome:
        session_id = uuid.uuid4().hex
        try:
            stat = path.stat()
        except OSError as e:
            return self._preflight_failure(
                session_id, FileReadError(f"Cannot read {path}: {e}")
            )
        if not path.is_file():
            return self._preflight_failure(session_id, FileReadError(f"Not a regular file: {path}"))

        try:
            plan = choose_part_size(
                stat.st_size,
                self.settings.part_size,
                self.settings.min_part_size,
                self.settings.max_part_count,
            )
        except PDriveError as e:
            return self._preflight_failure(session_id, e)

        session = UploadSession(
            session_id=session_id,
            target=target,
            file_path=str(path.resolve()),
            file_size=stat.st_size,
            file_mtime=stat.st_mtime,
            plan=plan,
        )
        logger.info(
            "Starting upload %s: %s (%d bytes, %d parts of %d) -> %s/%s",
            session_id,
            path.name,
            plan.file_size,
            plan.part_count,
            plan.part_size,
            target.bucket,
            target.object_key,
        )

        owner = self._store.lock(session_id)
        try:
            return self._run(session)
        finally:
            self._store.release(session_id, owner)

    def _resume(self, session_id: str, file_path: Optional[Union[str, Path]]) -> UploadOutcome:
        if not self._store.exists(session_id):
            cached = self._cached_outcome(session_id)
            if cached is not None:
                logger.info("Session %s already %s", session_id, cached.state.value)
                return cached
            raise SessionNotFoundError(f"No session {session_id} to resume")

        owner = self._store.lock(session_id)
        try:
            session = self._store.load(session_id)
            if session.state.is_terminal:
                raise InconsistentStateError(
                    f"Session {session_id} is {session.state.value} but still on disk"
                )
            if file_path is not None and Path(file_path).resolve() != Path(session.file_path):
                raise InconsistentStateError(
                    f"Session {session_id} uploads {session.file_path}, not {file_path}"
                )
            logger.info(
                "Resuming upload %s: %d/%d parts done",
                session_id,
                len(session.completed_parts),
                session.plan.part_count,
            )
            try:
                self._check_file_unchanged(session)
            except InconsistentStateError as e:
                return self._fail(session, e)
            return self._run(session)
        finally:
            self._store.release(session_id, owner)

    def _run(self, session: UploadSession) -> UploadOutcome:
        try:
            self._check_cancelled()

            if session.state == SessionState.PLANNING:
                if not session.plan.is_multipart:
                    return self._run_single(session)
                session.upload_id = self._transport.initiate_multipart(session.target)
                self._transition(session, SessionState.IN_PROGRESS)
                self._persist(session)

            if session.state == SessionState.IN_PROGRESS:
                self._upload_parts(session)
                self._check_cancelled()
                self._transition(session, SessionState.VERIFYING)
                self._persist(session)

            if session.state != SessionState.VERIFYING:
                raise InconsistentStateError(
                    f"Session {session.session_id} cannot continue from {session.state.value}"
                )

            self._check_cancelled()
            descriptor = self._transport.complete_multipart(
                session.target, session.upload_id, session.completed_parts.values()
            )
            digest = composite_digest(part.digest for part in session.sorted_parts())
            self._verify(session, descriptor, digest)
            return self._complete(session, descriptor, digest)

        except UploadCancelled:
            return self._abort(session)
        except (ServerError, FileReadError) as e:
            resumable = session.upload_id is not None
            return self._fail(session, e, resumable=resumable)
        except PDriveError as e:
            return self._fail(session, e)
        except Exception as e:
            logger.exception("Unexpected error in upload %s", session.session_id)
            return self._fail(session, InternalError(f"{type(e).__name__}: {e}"))

    def _run_single(self, session: UploadSession) -> UploadOutcome:
        """Single put for files that fit in one part."""
        part = session.plan.parts[0]
        attempts = 0
        while True:
            self._check_cancelled()
            self._emit(session, EventType.PART_STARTED, index=0, attempt=attempts + 1, length=part.length)
            data, digest = read_part(session.file_path, part.offset, part.length)
            try:
                descriptor = self._transport.put_single(session.target, data, digest)
                break
            except IntegrityError as e:
                attempts += 1
                if attempts > self.settings.part_retries:
                    raise
                logger.warning("Single put of %s failed integrity check, retrying: %s", session.session_id, e)

        self._emit(
            session,
            EventType.PART_COMPLETED,
            index=0,
            bytes_uploaded=part.length,
            parts_completed=1,
        )
        self._transition(session, SessionState.VERIFYING)
        self._verify(session, descriptor, b64_digest(digest))
        return self._complete(session, descriptor, b64_digest(digest))

    def _upload_parts(self, session: UploadSession) -> None:
        """
        Upload every pending part with at most settings.concurrency in flight.

        The first part failure stops the remaining parts from starting; parts
        already in flight finish and are recorded.
        """
        pending = session.pending_parts()
        if not pending:
            return
        logger.info(
            "Uploading %d of %d parts (%d workers)",
            len(pending),
            session.plan.part_count,
            self.settings.concurrency,
        )

        halt = threading.Event()
        errors: List[BaseException] = []
        pool = ThreadPoolExecutor(
            max_workers=self.settings.concurrency, thread_name_prefix="pdrive-part"
        )
        try:
            futures: Dict[Future, ChunkSpec] = {
                pool.submit(self._upload_part_or_halt, session, part, halt): part
                for part in pending
            }
            for future in as_completed(futures):
                error = future.exception()
                if error is not None and not errors:
                    logger.error("Part %d failed: %s", futures[future].part_number, error)
                    errors.append(error)
                    halt.set()
        except KeyboardInterrupt:
            self.cancel()
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        if errors:
            raise errors[0]
        self._check_cancelled()
        if session.pending_parts():
            raise InconsistentStateError(
                f"{len(session.pending_parts())} parts still pending after upload loop"
            )

    def _upload_part_or_halt(
        self, session: UploadSession, part: ChunkSpec, halt: threading.Event
    ) -> None:
        try:
            self._upload_part(session, part, halt)
        except BaseException:
            # Stop queued parts before the collector sees this failure
            halt.set()
            raise

    def _upload_part(self, session: UploadSession, part: ChunkSpec, halt: threading.Event) -> None:
        """Worker: read, hash and upload one part, retrying integrity failures."""
        attempts = 0
        while True:
            if halt.is_set() or self._cancel.is_set():
                return
            self._emit(
                session,
                EventType.PART_STARTED,
                index=part.index,
                attempt=attempts + 1,
                length=part.length,
            )
            data, digest = read_part(session.file_path, part.offset, part.length)
            try:
                result = self._transport.upload_part(
                    session.target, session.upload_id, part.index, data, digest
                )
                break
            except IntegrityError as e:
                attempts += 1
                if attempts > self.settings.part_retries:
                    raise
                logger.warning(
                    "Part %d failed integrity check (attempt %d), re-uploading: %s",
                    part.part_number,
                    attempts,
                    e,
                )

        with self._lock:
            session.completed_parts[part.index] = result
            session.updated_at = datetime.now(timezone.utc)
            self._store.save(session)
            parts_completed = len(session.completed_parts)
            bytes_uploaded = session.bytes_completed

        logger.debug("Part %d done (%d/%d)", part.part_number, parts_completed, session.plan.part_count)
        self._emit(
            session,
            EventType.PART_COMPLETED,
            index=part.index,
            bytes_uploaded=bytes_uploaded,
            parts_completed=parts_completed,
        )

    def _verify(self, session: UploadSession, descriptor: ObjectDescriptor, digest: str) -> None:
        if descriptor.size != session.file_size:
            raise InconsistentStateError(
                f"Remote object is {descriptor.size} bytes, local file is {session.file_size}"
            )
        if descriptor.checksum and descriptor.checksum != digest:
            raise IntegrityError(
                f"Remote checksum {descriptor.checksum} does not match local {digest}"
            )

    # ==================== Terminal states ====================

    def _complete(
        self, session: UploadSession, descriptor: ObjectDescriptor, digest: str
    ) -> UploadOutcome:
        self._transition(session, SessionState.COMPLETED)
        self._store.delete(session.session_id)
        outcome = UploadOutcome(
            session_id=session.session_id,
            state=SessionState.COMPLETED,
            descriptor=descriptor,
            digest=digest,
            parts_uploaded=len(session.completed_parts) or 1,
        )
        self._record(outcome)
        logger.info("Upload %s completed: %s (%d bytes)", session.session_id, descriptor.key, descriptor.size)
        self._emit(session, EventType.UPLOAD_COMPLETED, key=descriptor.key, size=descriptor.size, digest=digest)
        return outcome

    def _fail(self, session: UploadSession, error: PDriveError, resumable: bool = False) -> UploadOutcome:
        session.last_error = f"{error.kind}: {error}"
        if resumable:
            # Remote upload stays open; the record keeps its in_progress/verifying state
            with self._lock:
                self._store.save(session)
            logger.error(
                "Upload %s failed, resume with session id %s: %s",
                session.session_id,
                session.session_id,
                error,
            )
        else:
            self._transition(session, SessionState.FAILED)
            if session.upload_id:
                self._transport.abort_multipart(session.target, session.upload_id)
            self._store.delete(session.session_id)
            logger.error("Upload %s failed: %s", session.session_id, error)

        outcome = UploadOutcome(
            session_id=session.session_id,
            state=SessionState.FAILED,
            error_kind=error.kind,
            error_message=str(error),
            resumable=resumable,
            parts_uploaded=len(session.completed_parts),
        )
        if not resumable:
            self._record(outcome)
        self._emit(
            session,
            EventType.UPLOAD_FAILED,
            error_kind=error.kind,
            error=str(error),
            resumable=resumable,
        )
        return outcome

    def _abort(self, session: UploadSession) -> UploadOutcome:
        self._transition(session, SessionState.ABORTED)
        if session.upload_id:
            self._transport.abort_multipart(session.target, session.upload_id)
        self._store.delete(session.session_id)
        outcome = UploadOutcome(
            session_id=session.session_id,
            state=SessionState.ABORTED,
            parts_uploaded=len(session.completed_parts),
        )
        self._record(outcome)
        logger.warning("Upload %s aborted", session.session_id)
        self._emit(session, EventType.UPLOAD_ABORTED)
        return outcome

    def _preflight_failure(self, session_id: str, error: PDriveError) -> UploadOutcome:
        """Failure before a session exists (unreadable or unplannable file)."""
        logger.error("Upload %s not started: %s", session_id, error)
        outcome = UploadOutcome(
            session_id=session_id,
            state=SessionState.FAILED,
            error_kind=error.kind,
            error_message=str(error),
        )
        self._reporter.on_event(
            ProgressEvent(
                type=EventType.UPLOAD_FAILED,
                session_id=session_id,
                payload={"error_kind": error.kind, "error": str(error), "resumable": False},
            )
        )
        return outcome

    # ==================== Helpers ====================

    def _transition(self, session: UploadSession, state: SessionState) -> None:
        logger.debug("Session %s: %s -> %s", session.session_id, session.state.value, state.value)
        session.state = state
        session.updated_at = datetime.now(timezone.utc)

    def _persist(self, session: UploadSession) -> None:
        with self._lock:
            self._store.save(session)

    def _record(self, outcome: UploadOutcome) -> None:
        self._outcomes[outcome.session_id] = outcome
        self._store.save_outcome(outcome)

    def _cached_outcome(self, session_id: str) -> Optional[UploadOutcome]:
        return self._outcomes.get(session_id) or self._store.load_outcome(session_id)

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise UploadCancelled()

    def _check_file_unchanged(self, session: UploadSession) -> None:
        try:
            stat = Path(session.file_path).stat()
        except OSError as e:
            raise InconsistentStateError(f"File {session.file_path} is no longer readable: {e}") from e
        if stat.st_size != session.file_size or stat.st_mtime != session.file_mtime:
            raise InconsistentStateError(
                f"File {session.file_path} changed since the upload started"
            )

    def _emit(self, session: UploadSession, event_type: EventType, **payload: Any) -> None:
        payload.setdefault("total_bytes", session.file_size)
        payload.setdefault("total_parts", session.plan.part_count)
        self._reporter.on_event(
            ProgressEvent(type=event_type, session_id=session.session_id, payload=payload)
        )
