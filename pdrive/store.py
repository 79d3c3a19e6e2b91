"""
Session persistence.

Each upload session is a JSON record keyed by session id. Records are written
atomically (temp file + rename) while holding a per-record file lock, so a
crash never leaves a partial record behind. A separate long-lived lock marks
the session as owned by a running upload.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Union

from filelock import FileLock, Timeout
from pydantic import ValidationError

from pdrive.exceptions import InconsistentStateError, SessionLockedError, SessionNotFoundError
from pdrive.models import UploadOutcome, UploadSession

logger = logging.getLogger(__name__)

SESSION_SUFFIX = ".json"
OUTCOME_SUFFIX = ".outcome.json"


def atomic_write_text(dest: Path, text: str, encoding: str = "utf-8") -> None:
    """Write text to dest atomically via temp file + rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, dest)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


class SessionStore:
    """
    Directory of persisted upload sessions.

    Layout:
        <id>.json          live session record (removed on terminal state)
        <id>.outcome.json  terminal outcome, kept so a finished session can be
                           resumed again as a no-op
        <id>.lock          ownership lock held while an upload runs, removed
                           once the session is finished

    Outcome records are kept until prune_outcomes() removes them.
    """

    def __init__(self, directory: Union[str, Path], lock_timeout: float = 10.0) -> None:
        self.directory = Path(directory)
        self.lock_timeout = lock_timeout

    def __repr__(self) -> str:
        return f"SessionStore(directory={str(self.directory)!r})"

    def _session_path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or ".." in session_id:
            raise SessionNotFoundError(f"Invalid session id: {session_id!r}")
        return self.directory / f"{session_id}{SESSION_SUFFIX}"

    def _outcome_path(self, session_id: str) -> Path:
        return self._session_path(session_id).with_name(f"{session_id}{OUTCOME_SUFFIX}")

    def _write_lock(self, path: Path) -> FileLock:
        self.directory.mkdir(parents=True, exist_ok=True)
        return FileLock(str(path) + ".wlock", timeout=self.lock_timeout)

    # ==================== Session records ====================

    def save(self, session: UploadSession) -> None:
        path = self._session_path(session.session_id)
        with self._write_lock(path):
            atomic_write_text(path, session.model_dump_json(indent=2))
        logger.debug(
            "Saved session %s (%d/%d parts)",
            session.session_id,
            len(session.completed_parts),
            session.plan.part_count,
        )

    def load(self, session_id: str) -> UploadSession:
        """
        Load a persisted session.

        Raises:
            SessionNotFoundError: If no record exists
            InconsistentStateError: If the record cannot be parsed
        """
        path = self._session_path(session_id)
        if not path.exists():
            raise SessionNotFoundError(f"No persisted session {session_id}")
        with self._write_lock(path):
            text = path.read_text(encoding="utf-8")
        try:
            return UploadSession.model_validate_json(text)
        except ValidationError as e:
            raise InconsistentStateError(f"Corrupt session record {path}: {e}") from e

    def exists(self, session_id: str) -> bool:
        return self._session_path(session_id).exists()

    def delete(self, session_id: str) -> None:
        path = self._session_path(session_id)
        with self._write_lock(path):
            path.unlink(missing_ok=True)
        Path(str(path) + ".wlock").unlink(missing_ok=True)
        logger.debug("Deleted session %s", session_id)

    def list_sessions(self) -> List[UploadSession]:
        """All live session records, oldest first. Unreadable records are skipped."""
        if not self.directory.exists():
            return []
        sessions = []
        for path in sorted(self.directory.glob(f"*{SESSION_SUFFIX}")):
            if path.name.endswith(OUTCOME_SUFFIX):
                continue
            session_id = path.name[: -len(SESSION_SUFFIX)]
            try:
                sessions.append(self.load(session_id))
            except InconsistentStateError as e:
                logger.warning("Skipping session %s: %s", session_id, e)
        return sorted(sessions, key=lambda s: s.created_at)

    # ==================== Outcomes ====================

    def save_outcome(self, outcome: UploadOutcome) -> None:
        path = self._outcome_path(outcome.session_id)
        atomic_write_text(path, outcome.model_dump_json(indent=2))

    def load_outcome(self, session_id: str) -> Optional[UploadOutcome]:
        path = self._outcome_path(session_id)
        if not path.exists():
            return None
        try:
            return UploadOutcome.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            logger.warning("Ignoring corrupt outcome record %s: %s", path, e)
            return None

    # ==================== Ownership ====================

    def lock(self, session_id: str) -> FileLock:
        """
        Acquire exclusive ownership of a session.

        Returns the held lock; release it (or use it as a context manager)
        when the upload finishes.

        Raises:
            SessionLockedError: If another process owns the session
        """
        self._session_path(session_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.directory / f"{session_id}.lock"), timeout=0)
        try:
            lock.acquire()
        except Timeout as e:
            raise SessionLockedError(f"Session {session_id} is in use by another process") from e
        return lock

    def release(self, session_id: str, lock: FileLock) -> None:
        """
        Release ownership taken with lock().

        The lock file is removed once the session record is gone, since a
        finished session is never locked again.
        """
        lock.release()
        if not self.exists(session_id):
            Path(lock.lock_file).unlink(missing_ok=True)

    # ==================== Pruning ====================

    def prune_outcomes(self, max_age: float) -> List[str]:
        """
        Delete outcome records older than max_age seconds.

        Returns:
            Ids of the sessions whose outcomes were removed
        """
        if not self.directory.exists():
            return []
        cutoff = time.time() - max_age
        pruned = []
        for path in self.directory.glob(f"*{OUTCOME_SUFFIX}"):
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            pruned.append(path.name[: -len(OUTCOME_SUFFIX)])
        if pruned:
            logger.info("Pruned %d finished session(s) from %s", len(pruned), self.directory)
        return sorted(pruned)
