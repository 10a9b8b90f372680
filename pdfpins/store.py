"""Record and blob backends.

`MemoryBackend` keeps every record kind in process memory behind one lock and
checks ownership on keyed access. Anything else with the same methods can be
passed where a backend is expected.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from werkzeug.utils import secure_filename

from .errors import FileNotFound, NotFound, QuotaExhausted, Unauthorized, ValidationError
from .models import AIUsage, FileItem, Note, StoredAnalysis, utcnow

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class MemoryBackend:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._files: Dict[str, FileItem] = {}
        self._notes: Dict[str, Note] = {}
        self._analyses: Dict[Tuple[str, int], StoredAnalysis] = {}
        self._usage: Dict[str, AIUsage] = {}

    # ── files ────────────────────────────────────────────────────────────────

    def add_file(self, item: FileItem) -> FileItem:
        with self._lock:
            self._files[item.id] = replace(item)
        return item

    def get_file(self, file_id: str, user_id: str) -> Optional[FileItem]:
        with self._lock:
            item = self._files.get(file_id)
            if item is None:
                return None
            if item.user_id != user_id:
                raise Unauthorized()
            return replace(item)

    def query_files(self, user_id: str, parent_id: Optional[str]) -> List[FileItem]:
        with self._lock:
            rows = [
                replace(f) for f in self._files.values()
                if f.user_id == user_id and f.parent_id == parent_id
            ]
        rows.sort(key=lambda f: (f.created_at, f.id), reverse=True)
        return rows

    def update_file(self, file_id: str, user_id: str, **fields) -> FileItem:
        with self._lock:
            item = self._files.get(file_id)
            if item is None:
                raise FileNotFound(f"File {file_id} not found")
            if item.user_id != user_id:
                raise Unauthorized()
            updated = replace(item, updated_at=utcnow(), **fields)
            self._files[file_id] = updated
            return replace(updated)

    def delete_file(self, file_id: str, user_id: str) -> None:
        with self._lock:
            item = self._files.get(file_id)
            if item is None:
                return
            if item.user_id != user_id:
                raise Unauthorized()
            del self._files[file_id]

    # ── notes ────────────────────────────────────────────────────────────────

    def save_note(self, note: Note) -> None:
        """Upsert text, position and updatedAt; createdAt is kept from the first write."""
        with self._lock:
            current = self._notes.get(note.id)
            if current is not None:
                if current.user_id != note.user_id:
                    raise Unauthorized()
                note = replace(note, created_at=current.created_at)
            self._notes[note.id] = replace(note)

    def list_notes(self, file_id: str, user_id: str) -> List[Note]:
        with self._lock:
            rows = [
                replace(n) for n in self._notes.values()
                if n.file_id == file_id and n.user_id == user_id
            ]
        rows.sort(key=lambda n: (n.created_at, n.id))
        return rows

    def delete_note(self, note_id: str, user_id: str) -> None:
        with self._lock:
            note = self._notes.get(note_id)
            if note is None:
                return
            if note.user_id != user_id:
                raise Unauthorized()
            del self._notes[note_id]

    def delete_notes_for_file(self, file_id: str, user_id: str) -> int:
        with self._lock:
            doomed = [
                k for k, n in self._notes.items()
                if n.file_id == file_id and n.user_id == user_id
            ]
            for key in doomed:
                del self._notes[key]
        return len(doomed)

    # ── analyses ─────────────────────────────────────────────────────────────

    def save_analysis(self, record: StoredAnalysis) -> StoredAnalysis:
        with self._lock:
            key = (record.file_id, record.page_number)
            current = self._analyses.get(key)
            if current is not None and current.user_id != record.user_id:
                raise Unauthorized()
            self._analyses[key] = record
        return record

    def get_analysis(self, file_id: str, page_number: int, user_id: str) -> Optional[StoredAnalysis]:
        with self._lock:
            record = self._analyses.get((file_id, page_number))
        if record is None:
            return None
        if record.user_id != user_id:
            raise Unauthorized()
        return record

    def delete_analyses_for_file(self, file_id: str, user_id: str) -> int:
        with self._lock:
            doomed = [
                k for k, a in self._analyses.items()
                if a.file_id == file_id and a.user_id == user_id
            ]
            for key in doomed:
                del self._analyses[key]
        return len(doomed)

    # ── AI usage quota ───────────────────────────────────────────────────────

    def get_usage(self, user_id: str) -> Optional[AIUsage]:
        with self._lock:
            usage = self._usage.get(user_id)
            return replace(usage) if usage else None

    def init_usage(self, user_id: str, quota: int) -> AIUsage:
        with self._lock:
            usage = self._usage.setdefault(user_id, AIUsage(user_id=user_id, remaining_quota=quota))
            return replace(usage)

    def decrement_usage(self, user_id: str) -> AIUsage:
        with self._lock:
            usage = self._usage.get(user_id)
            if usage is None:
                raise NotFound(f"No AI usage record for user {user_id}")
            if usage.remaining_quota <= 0:
                raise QuotaExhausted()
            usage.remaining_quota -= 1
            usage.updated_at = utcnow()
            return replace(usage)


class LocalBlobStore:
    """Blob storage on the local disk, keyed ``userId/filename``."""

    chunk_size = 64 * 1024

    def __init__(self, root: Path, url_prefix: str = "/api/blobs/") -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def make_key(user_id: str, filename: str) -> str:
        user = secure_filename(user_id)
        name = secure_filename(filename)
        if not user or not name:
            raise ValidationError(f"Cannot store {filename!r} for user {user_id!r}")
        return f"{user}/{name}"

    def _path(self, key: str) -> Path:
        user, _, name = key.partition("/")
        if not user or not name or secure_filename(user) != user or secure_filename(name) != name:
            raise ValidationError(f"Bad blob key {key!r}")
        return self.root / user / name

    def upload(self, key: str, data: bytes, progress: Optional[ProgressCallback] = None) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        total = len(data)
        sent = 0
        with open(path, "wb") as fh:
            while sent < total:
                chunk = data[sent:sent + self.chunk_size]
                fh.write(chunk)
                sent += len(chunk)
                if progress is not None:
                    progress(sent, total)
        if total == 0 and progress is not None:
            progress(0, 0)
        log.info("Stored blob %s (%d bytes)", key, total)
        return self.url(key)

    def read(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise NotFound(f"Blob {key} not found")
        return path.read_bytes()

    def url(self, key: str) -> str:
        return self.url_prefix + key

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            log.warning("Blob %s already gone", key)
