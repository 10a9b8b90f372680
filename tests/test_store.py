from __future__ import annotations

import pytest

from pdfpins.errors import NotFound, QuotaExhausted, Unauthorized, ValidationError
from pdfpins.models import FileItem, Note, PageAnalysis, StoredAnalysis


def note(note_id="n1", user="alice", text=""):
    return Note(id=note_id, file_id="f1", page=1, x=10, y=20, text=text, user_id=user)


def test_save_note_upserts_and_keeps_created_at(backend):
    first = note(text="draft")
    backend.save_note(first)
    later = note(text="final")
    backend.save_note(later)

    (stored,) = backend.list_notes("f1", "alice")
    assert stored.text == "final"
    assert stored.created_at == first.created_at


def test_notes_are_scoped_to_their_owner(backend):
    backend.save_note(note("n1", "alice"))
    assert backend.list_notes("f1", "bob") == []
    with pytest.raises(Unauthorized):
        backend.save_note(note("n1", "bob"))
    with pytest.raises(Unauthorized):
        backend.delete_note("n1", "bob")


def test_deleting_a_missing_note_is_a_noop(backend):
    backend.delete_note("nope", "alice")
    backend.save_note(note())
    backend.delete_note("n1", "alice")
    backend.delete_note("n1", "alice")
    assert backend.list_notes("f1", "alice") == []


def test_returned_records_are_copies(backend):
    backend.save_note(note(text="kept"))
    backend.list_notes("f1", "alice")[0].text = "mutated"
    assert backend.list_notes("f1", "alice")[0].text == "kept"


def test_file_ownership(backend):
    backend.add_file(FileItem(id="f1", name="a.pdf", type="file", parent_id=None, user_id="alice"))
    assert backend.get_file("missing", "alice") is None
    with pytest.raises(Unauthorized):
        backend.get_file("f1", "bob")
    with pytest.raises(Unauthorized):
        backend.update_file("f1", "bob", name="b.pdf")
    with pytest.raises(Unauthorized):
        backend.delete_file("f1", "bob")
    assert backend.update_file("f1", "alice", name="b.pdf").name == "b.pdf"


def test_analysis_records_are_keyed_by_page(backend):
    analysis = PageAnalysis("s", "e", "x", ["p"])
    backend.save_analysis(StoredAnalysis("f1", 1, "alice", analysis))
    assert backend.get_analysis("f1", 1, "alice").analysis.core_summary == "s"
    assert backend.get_analysis("f1", 2, "alice") is None
    with pytest.raises(Unauthorized):
        backend.get_analysis("f1", 1, "bob")
    assert backend.delete_analyses_for_file("f1", "alice") == 1


def test_quota_never_goes_negative(backend):
    with pytest.raises(NotFound):
        backend.decrement_usage("alice")
    backend.init_usage("alice", 2)
    assert backend.init_usage("alice", 50).remaining_quota == 2
    assert backend.decrement_usage("alice").remaining_quota == 1
    assert backend.decrement_usage("alice").remaining_quota == 0
    with pytest.raises(QuotaExhausted):
        backend.decrement_usage("alice")
    assert backend.get_usage("alice").remaining_quota == 0


def test_blob_upload_reports_progress(blobs):
    blobs.chunk_size = 4
    seen = []
    url = blobs.upload("alice/doc.pdf", b"0123456789", progress=lambda sent, total: seen.append((sent, total)))
    assert url == "/api/blobs/alice/doc.pdf"
    assert seen == [(4, 10), (8, 10), (10, 10)]
    assert blobs.read("alice/doc.pdf") == b"0123456789"


def test_blob_keys_are_sanitised(blobs):
    assert blobs.make_key("alice", "../../etc/passwd") == "alice/etc_passwd"
    with pytest.raises(ValidationError):
        blobs.read("../secret")
    with pytest.raises(ValidationError):
        blobs.make_key("alice", "..")


def test_blob_delete_and_missing_read(blobs):
    blobs.upload("alice/doc.pdf", b"x")
    blobs.delete("alice/doc.pdf")
    blobs.delete("alice/doc.pdf")
    with pytest.raises(NotFound):
        blobs.read("alice/doc.pdf")
