from __future__ import annotations

import threading
from typing import Dict, List

import fitz
import pytest

from pdfpins.app import create_app
from pdfpins.config import Settings
from pdfpins.models import Note, PageAnalysis
from pdfpins.store import LocalBlobStore, MemoryBackend


def make_pdf(pages: List[List[tuple]]) -> bytes:
    """Each page is a list of (x, y_from_top, text) runs."""
    doc = fitz.open()
    for runs in pages:
        page = doc.new_page(width=595, height=842)
        for x, y, text in runs:
            page.insert_text((x, y), text, fontsize=12, fontname="helv")
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def two_page_pdf() -> bytes:
    return make_pdf([
        [(72, 100, "Hello World"), (72, 130, "Second line")],
        [(72, 200, "Page two")],
    ])


class RecordingBackend:
    """Note backend that records writes and can be told to fail."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.saved: List[Note] = []
        self.deleted: List[str] = []
        self.records: Dict[str, Note] = {}
        self.fail_ids = set()
        self.preloaded: List[Note] = []

    def save_note(self, note: Note) -> None:
        if note.id in self.fail_ids:
            raise RuntimeError("backend down")
        with self.lock:
            self.saved.append(note)
            self.records[note.id] = note

    def list_notes(self, file_id: str, user_id: str) -> List[Note]:
        return list(self.preloaded)

    def delete_note(self, note_id: str, user_id: str) -> None:
        with self.lock:
            self.deleted.append(note_id)
            self.records.pop(note_id, None)

    def writes_for(self, note_id: str) -> int:
        with self.lock:
            return sum(1 for n in self.saved if n.id == note_id)


@pytest.fixture
def recording_backend() -> RecordingBackend:
    return RecordingBackend()


class FakeAnalyzer:
    def __init__(self) -> None:
        self.calls = []
        self.error = None

    def analyze(self, image_b64: str, page_number: int) -> PageAnalysis:
        self.calls.append((image_b64, page_number))
        if self.error is not None:
            raise self.error
        return PageAnalysis(
            core_summary=f"Summary of page {page_number}",
            easy_explanation="Simple words.",
            examples_or_analogies="Like a map.",
            exam_points=["Point A", "Point B"],
            term_definitions=["pin: a note anchored to a page"],
        )

    def check(self) -> bool:
        return True


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def blobs(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def app(tmp_path, backend, blobs, analyzer):
    settings = Settings(data_dir=tmp_path, flush_interval=60.0, ai_quota=2)
    flask_app = create_app(settings, backend=backend, blobs=blobs, analyzer=analyzer)
    flask_app.config["TESTING"] = True
    yield flask_app
    flask_app.extensions["pdfpins"]["sessions"].close_all()


@pytest.fixture
def client(app):
    return app.test_client()
