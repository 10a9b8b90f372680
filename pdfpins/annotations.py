"""Per-document pin store with batched write-back.

Every mutation lands in memory at once and only marks the note dirty. A timer
thread calls `AnnotationSession.flush` once per interval; a flush writes each
dirty note once, in parallel, and waits for all writes. Deletes go to the
backend immediately.

A note whose write is still in flight is left out of the next batch, so two
writes for the same note never overlap. A failed write puts the note back in
the dirty set until it has failed `max_write_attempts` times in a row.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Protocol, Set, Tuple

from .errors import NoteNotFound, SessionClosed, ValidationError
from .models import Note, new_id, utcnow

log = logging.getLogger(__name__)


class NoteBackend(Protocol):
    def save_note(self, note: Note) -> None: ...

    def list_notes(self, file_id: str, user_id: str) -> List[Note]: ...

    def delete_note(self, note_id: str, user_id: str) -> None: ...


def clamp_percent(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Coordinate must be a number, got {value!r}")
    if value != value:  # NaN
        raise ValidationError("Coordinate must be a number, got NaN")
    return max(0.0, min(100.0, value))


@dataclass
class FlushResult:
    written: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped_in_flight: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.written or self.failed)


class AnnotationSession:
    def __init__(
        self,
        file_id: str,
        user_id: str,
        backend: NoteBackend,
        interval: float = 1.0,
        max_workers: int = 8,
        max_write_attempts: int = 3,
    ) -> None:
        self.file_id = file_id
        self.user_id = user_id
        self.backend = backend
        self.interval = interval
        self.max_write_attempts = max(1, max_write_attempts)

        self._lock = threading.Lock()
        self._notes: Dict[str, Note] = {}
        self._dirty: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._pending_deletes: Set[str] = set()
        self._active_drag: Optional[str] = None

        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="note-flush")
        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None
        self._closed = False
        self._shut_down = False

    # ── lifecycle ────────────────────────────────────────────────────────────

    def open(self, start_timer: bool = True) -> "AnnotationSession":
        loaded = self.backend.list_notes(self.file_id, self.user_id)
        with self._lock:
            for note in loaded:
                self._notes[note.id] = note
        log.info("Opened %s for %s with %d notes", self.file_id, self.user_id, len(loaded))
        if start_timer:
            self._stop.clear()
            self._timer = threading.Thread(
                target=self._run_timer, name=f"flush-{self.file_id}", daemon=True
            )
            self._timer.start()
        return self

    def close(self) -> FlushResult:
        """Stop the timer, then write whatever is still dirty."""
        with self._lock:
            if self._closed:
                return FlushResult()
            self._closed = True
        self._stop.set()
        if self._timer is not None:
            self._timer.join()
            self._timer = None
        try:
            return self.flush()
        finally:
            with self._lock:
                self._shut_down = True
            self._pool.shutdown(wait=True)
            log.info("Closed %s for %s", self.file_id, self.user_id)

    def __enter__(self) -> "AnnotationSession":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def _run_timer(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.flush()
            except Exception:
                log.exception("Scheduled flush of %s failed", self.file_id)

    # ── reads ────────────────────────────────────────────────────────────────

    def notes(self, page: Optional[int] = None) -> List[Note]:
        with self._lock:
            rows = [replace(n) for n in self._notes.values() if page is None or n.page == page]
        rows.sort(key=lambda n: (n.created_at, n.id))
        return rows

    def get(self, note_id: str) -> Note:
        with self._lock:
            return replace(self._require(note_id))

    @property
    def dirty_ids(self) -> Set[str]:
        with self._lock:
            return set(self._dirty)

    @property
    def in_flight_ids(self) -> Set[str]:
        with self._lock:
            return set(self._in_flight)

    @property
    def active_drag_id(self) -> Optional[str]:
        return self._active_drag

    def _require(self, note_id: str) -> Note:
        note = self._notes.get(note_id)
        if note is None:
            raise NoteNotFound(f"Note {note_id} not found in {self.file_id}")
        return note

    def _require_open(self) -> None:
        if self._closed:
            raise SessionClosed(f"Session for {self.file_id} is closed")

    # ── mutations ────────────────────────────────────────────────────────────

    def place(self, page: int, x: float, y: float) -> Note:
        try:
            page = int(page)
        except (TypeError, ValueError):
            raise ValidationError(f"Page must be an integer, got {page!r}")
        if page < 1:
            raise ValidationError(f"Page must be >= 1, got {page}")
        now = utcnow()
        note = Note(
            id=new_id(),
            file_id=self.file_id,
            page=page,
            x=clamp_percent(x),
            y=clamp_percent(y),
            text="",
            user_id=self.user_id,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._require_open()
            self._notes[note.id] = note
            self._dirty.add(note.id)
        return replace(note)

    def begin_drag(self, note_id: str) -> None:
        with self._lock:
            self._require_open()
            self._require(note_id)
            self._active_drag = note_id

    def update_drag(self, note_id: str, x: float, y: float) -> Note:
        x, y = clamp_percent(x), clamp_percent(y)
        with self._lock:
            self._require_open()
            note = self._require(note_id)
            note.x, note.y = x, y
            note.updated_at = utcnow()
            self._dirty.add(note_id)
            return replace(note)

    def end_drag(self, note_id: str) -> None:
        with self._lock:
            self._require(note_id)
            if self._active_drag == note_id:
                self._active_drag = None

    def set_text(self, note_id: str, text: str) -> Note:
        with self._lock:
            self._require_open()
            note = self._require(note_id)
            note.text = text or ""
            note.updated_at = utcnow()
            self._dirty.add(note_id)
            return replace(note)

    def remove(self, note_id: str) -> None:
        """Delete now; if a write for the note is still running, delete again once it lands."""
        with self._lock:
            self._require_open()
            self._require(note_id)
            del self._notes[note_id]
            self._dirty.discard(note_id)
            self._failures.pop(note_id, None)
            if note_id in self._in_flight:
                self._pending_deletes.add(note_id)
            if self._active_drag == note_id:
                self._active_drag = None
        self.backend.delete_note(note_id, self.user_id)

    # ── write-back ───────────────────────────────────────────────────────────

    def flush(self) -> FlushResult:
        result = FlushResult()
        with self._lock:
            if self._shut_down or not self._dirty:
                return result
            busy = self._dirty & self._in_flight
            batch: List[Tuple[str, Note]] = [
                (nid, replace(self._notes[nid]))
                for nid in sorted(self._dirty - busy)
                if nid in self._notes
            ]
            self._dirty = set(busy)
            self._in_flight.update(nid for nid, _ in batch)
            # close() marks the pool shut down under this lock
            futures = {self._pool.submit(self.backend.save_note, note): nid for nid, note in batch}
        result.skipped_in_flight = sorted(busy)
        if not futures:
            return result
        wait(futures)

        late_deletes: List[str] = []
        with self._lock:
            for future, nid in futures.items():
                self._in_flight.discard(nid)
                if nid in self._pending_deletes:
                    self._pending_deletes.discard(nid)
                    late_deletes.append(nid)
                error = future.exception()
                if error is None:
                    self._failures.pop(nid, None)
                    result.written.append(nid)
                    continue
                result.failed.append(nid)
                attempts = self._failures.get(nid, 0) + 1
                if nid not in self._notes:
                    self._failures.pop(nid, None)
                    log.warning("Write for removed note %s failed: %s", nid, error)
                elif attempts < self.max_write_attempts:
                    self._failures[nid] = attempts
                    self._dirty.add(nid)
                    log.warning("Write for note %s failed (attempt %d): %s", nid, attempts, error)
                else:
                    self._failures.pop(nid, None)
                    log.error("Dropping write for note %s after %d attempts: %s", nid, attempts, error)

        # the write was already running when the note was removed
        for nid in late_deletes:
            try:
                self.backend.delete_note(nid, self.user_id)
            except Exception:
                log.exception("Delete of removed note %s failed", nid)
        result.written.sort()
        result.failed.sort()
        return result


class SessionRegistry:
    """Open annotation sessions keyed by (user, file)."""

    def __init__(self, backend: NoteBackend, interval: float = 1.0, max_write_attempts: int = 3) -> None:
        self.backend = backend
        self.interval = interval
        self.max_write_attempts = max_write_attempts
        self._lock = threading.Lock()
        self._sessions: Dict[Tuple[str, str], AnnotationSession] = {}

    def open(self, user_id: str, file_id: str) -> AnnotationSession:
        with self._lock:
            session = self._sessions.get((user_id, file_id))
            if session is None:
                session = AnnotationSession(
                    file_id, user_id, self.backend,
                    interval=self.interval,
                    max_write_attempts=self.max_write_attempts,
                ).open()
                self._sessions[(user_id, file_id)] = session
            return session

    def get(self, user_id: str, file_id: str) -> Optional[AnnotationSession]:
        with self._lock:
            return self._sessions.get((user_id, file_id))

    def close(self, user_id: str, file_id: str) -> Optional[FlushResult]:
        with self._lock:
            session = self._sessions.pop((user_id, file_id), None)
        return session.close() if session is not None else None

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
