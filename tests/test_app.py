from __future__ import annotations

import atexit
import io

import pytest

from pdfpins.app import create_app
from pdfpins.config import Settings

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


def upload(client, pdf_bytes, name="lecture.pdf", parent_id=None, headers=ALICE):
    data = {"pdf": (io.BytesIO(pdf_bytes), name)}
    if parent_id:
        data["parentId"] = parent_id
    return client.post("/api/files", data=data, headers=headers, content_type="multipart/form-data")


@pytest.fixture
def pdf_id(client, two_page_pdf):
    res = upload(client, two_page_pdf)
    assert res.status_code == 201
    return res.get_json()["id"]


# ── /api/analyze-pdf ─────────────────────────────────────────────────────────

def test_analyze_pdf_requires_image_and_page(client):
    res = client.post("/api/analyze-pdf", json={"image": "data:image/jpeg;base64,QUJD"})
    assert res.status_code == 400
    assert res.get_json() == {"error": "An image and a page number are required."}
    assert client.post("/api/analyze-pdf", json={"pageNumber": 1}).status_code == 400


def test_analyze_pdf_returns_analysis(client, analyzer):
    res = client.post("/api/analyze-pdf", json={"image": "data:image/jpeg;base64,QUJD", "pageNumber": 3})
    assert res.status_code == 200
    body = res.get_json()
    assert body["core_summary"] == "Summary of page 3"
    assert body["exam_points"] == ["Point A", "Point B"]
    assert analyzer.calls == [("QUJD", 3)]


def test_analyze_pdf_hides_model_failures(client, analyzer):
    analyzer.error = RuntimeError("model exploded")
    res = client.post("/api/analyze-pdf", json={"image": "data:image/jpeg;base64,QUJD", "pageNumber": 1})
    assert res.status_code == 500
    assert res.get_json() == {"error": "PDF analysis failed."}


def test_check_ollama(client):
    assert client.get("/api/check_ollama").get_json() == {"ok": True}


# ── identity ─────────────────────────────────────────────────────────────────

def test_user_header_is_required(client):
    assert client.get("/api/files").status_code == 401


def test_other_users_cannot_read_files(client, pdf_id):
    assert client.get(f"/api/files/{pdf_id}", headers=BOB).status_code == 403
    assert client.post(f"/api/files/{pdf_id}/notes", json={"page": 1, "x": 1, "y": 1}, headers=BOB).status_code == 403


# ── files and folders ────────────────────────────────────────────────────────

def test_upload_list_and_download(client, two_page_pdf, pdf_id):
    files = client.get("/api/files", headers=ALICE).get_json()["files"]
    assert [f["id"] for f in files] == [pdf_id]
    assert files[0]["fileType"] == "application/pdf"
    assert files[0]["fileSize"] == len(two_page_pdf)

    assert client.get(f"/api/files/{pdf_id}/content", headers=ALICE).data == two_page_pdf
    blob_url = files[0]["fileUrl"]
    assert client.get(blob_url, headers=ALICE).data == two_page_pdf
    assert client.get(blob_url, headers=BOB).status_code == 403


def test_upload_rejects_broken_pdf(client):
    assert upload(client, b"definitely not a pdf").status_code == 400
    res = client.post("/api/files", data={}, headers=ALICE, content_type="multipart/form-data")
    assert res.status_code == 400


def test_folders_move_and_breadcrumb(client, two_page_pdf):
    res = client.post("/api/folders", json={"name": "Biology"}, headers=ALICE)
    assert res.status_code == 201
    folder_id = res.get_json()["id"]
    file_id = upload(client, two_page_pdf, parent_id=folder_id).get_json()["id"]

    listed = client.get(f"/api/files?parentId={folder_id}", headers=ALICE).get_json()["files"]
    assert [f["id"] for f in listed] == [file_id]

    path = client.get(f"/api/files/{file_id}/path", headers=ALICE).get_json()["path"]
    assert [p["name"] for p in path] == ["Biology", "lecture.pdf"]
    parent = client.get(f"/api/files/{file_id}/parent", headers=ALICE).get_json()["parent"]
    assert parent["id"] == folder_id

    moved = client.patch(f"/api/files/{file_id}", json={"parentId": None}, headers=ALICE)
    assert moved.get_json()["parentId"] is None
    assert client.patch(f"/api/files/{folder_id}", json={"parentId": folder_id}, headers=ALICE).status_code == 400
    assert client.patch(f"/api/files/{file_id}", json={}, headers=ALICE).status_code == 400
    assert client.post("/api/folders", json={"name": ""}, headers=ALICE).status_code == 400


def test_delete_file(client, pdf_id, backend):
    client.post(f"/api/files/{pdf_id}/notes", json={"page": 1, "x": 5, "y": 5}, headers=ALICE)
    assert client.delete(f"/api/files/{pdf_id}", headers=ALICE).status_code == 204
    assert client.get(f"/api/files/{pdf_id}", headers=ALICE).status_code == 404
    assert backend.list_notes(pdf_id, "alice") == []


def test_deleting_a_folder_closes_sessions_inside_it(client, app, two_page_pdf, backend):
    folder_id = client.post("/api/folders", json={"name": "Week 1"}, headers=ALICE).get_json()["id"]
    file_id = upload(client, two_page_pdf, parent_id=folder_id).get_json()["id"]
    client.post(f"/api/files/{file_id}/session", headers=ALICE)
    client.post(f"/api/files/{file_id}/notes", json={"page": 1, "x": 5, "y": 5, "text": "draft"}, headers=ALICE)

    assert client.delete(f"/api/files/{folder_id}", headers=ALICE).status_code == 204

    sessions = app.extensions["pdfpins"]["sessions"]
    assert sessions.get("alice", file_id) is None
    assert backend.list_notes(file_id, "alice") == []
    assert client.get(f"/api/files/{file_id}", headers=ALICE).status_code == 404


def test_create_app_registers_no_exit_hook(monkeypatch, tmp_path, backend, blobs, analyzer):
    hooks = []
    monkeypatch.setattr(atexit, "register", lambda fn, *a, **k: hooks.append(fn))
    create_app(Settings(data_dir=tmp_path), backend=backend, blobs=blobs, analyzer=analyzer)
    assert hooks == []


def test_page_text(client, pdf_id):
    body = client.get(f"/api/files/{pdf_id}/text", headers=ALICE).get_json()
    assert body["numPages"] == 2
    assert body["pageTexts"] == {"1": "Hello World\nSecond line", "2": "Page two"}

    one = client.get(f"/api/files/{pdf_id}/text?page=2", headers=ALICE).get_json()
    assert one["pageTexts"] == {"2": "Page two"}
    assert client.get(f"/api/files/{pdf_id}/text?page=7", headers=ALICE).status_code == 400
    assert client.get(f"/api/files/{pdf_id}/text?page=two", headers=ALICE).status_code == 400


# ── pins ─────────────────────────────────────────────────────────────────────

def test_pin_lifecycle(client, pdf_id, backend):
    opened = client.post(f"/api/files/{pdf_id}/session", headers=ALICE).get_json()
    assert opened["notes"] == []

    res = client.post(f"/api/files/{pdf_id}/notes", json={"page": 1, "x": 10, "y": 20, "text": "hi"}, headers=ALICE)
    assert res.status_code == 201
    note_id = res.get_json()["id"]
    # nothing reaches the backend before a flush
    assert backend.list_notes(pdf_id, "alice") == []

    for x, y in ((15, 25), (-5, 150)):
        moved = client.patch(f"/api/files/{pdf_id}/notes/{note_id}", json={"drag": "move", "x": x, "y": y}, headers=ALICE)
    assert (moved.get_json()["x"], moved.get_json()["y"]) == (0, 100)

    flushed = client.post(f"/api/files/{pdf_id}/notes/flush", headers=ALICE).get_json()
    assert flushed == {"written": [note_id], "failed": [], "skipped": []}
    (stored,) = backend.list_notes(pdf_id, "alice")
    assert (stored.text, stored.x, stored.y) == ("hi", 0, 100)

    page1 = client.get(f"/api/files/{pdf_id}/notes?page=1", headers=ALICE).get_json()["notes"]
    assert [n["id"] for n in page1] == [note_id]
    assert client.get(f"/api/files/{pdf_id}/notes?page=2", headers=ALICE).get_json()["notes"] == []

    assert client.delete(f"/api/files/{pdf_id}/notes/{note_id}", headers=ALICE).status_code == 204
    assert backend.list_notes(pdf_id, "alice") == []
    assert client.delete(f"/api/files/{pdf_id}/notes/{note_id}", headers=ALICE).status_code == 404


def test_text_edit_and_session_close(client, pdf_id, backend):
    note_id = client.post(f"/api/files/{pdf_id}/notes", json={"page": 2, "x": 1, "y": 1}, headers=ALICE).get_json()["id"]
    res = client.patch(f"/api/files/{pdf_id}/notes/{note_id}", json={"text": "edited"}, headers=ALICE)
    assert res.get_json()["text"] == "edited"
    assert client.patch(f"/api/files/{pdf_id}/notes/{note_id}", json={"drag": "spin"}, headers=ALICE).status_code == 400

    closed = client.delete(f"/api/files/{pdf_id}/session", headers=ALICE).get_json()
    assert closed["written"] == [note_id]
    assert backend.list_notes(pdf_id, "alice")[0].text == "edited"

    reopened = client.post(f"/api/files/{pdf_id}/session", headers=ALICE).get_json()
    assert [n["text"] for n in reopened["notes"]] == ["edited"]


def test_place_requires_coordinates(client, pdf_id):
    res = client.post(f"/api/files/{pdf_id}/notes", json={"page": 1}, headers=ALICE)
    assert res.status_code == 400
    res = client.post(f"/api/files/{pdf_id}/notes", json={"page": 0, "x": 1, "y": 1}, headers=ALICE)
    assert res.status_code == 400


def test_export_draws_pins(client, pdf_id):
    client.post(f"/api/files/{pdf_id}/notes", json={"page": 1, "x": 10, "y": 10, "text": "remember"}, headers=ALICE)
    res = client.get(f"/api/files/{pdf_id}/export", headers=ALICE)
    assert res.status_code == 200
    assert res.mimetype == "application/pdf"
    assert res.data.startswith(b"%PDF")
    assert "lecture_notes.pdf" in res.headers["Content-Disposition"]


# ── stored page analysis and quota ───────────────────────────────────────────

def test_page_analysis_consumes_quota(client, pdf_id, analyzer):
    assert client.get("/api/usage", headers=ALICE).get_json()["remainingQuota"] == 2

    for _ in range(2):
        res = client.post(f"/api/files/{pdf_id}/pages/1/analysis", headers=ALICE)
        assert res.status_code == 201
    assert res.get_json()["pageNumber"] == 1

    res = client.post(f"/api/files/{pdf_id}/pages/2/analysis", headers=ALICE)
    assert res.status_code == 429
    assert len(analyzer.calls) == 2
    assert client.get("/api/usage", headers=ALICE).get_json()["remainingQuota"] == 0


def test_saved_analysis(client, pdf_id):
    assert client.get(f"/api/files/{pdf_id}/pages/1/analysis", headers=ALICE).status_code == 404
    client.post(f"/api/files/{pdf_id}/pages/1/analysis", headers=ALICE)
    body = client.get(f"/api/files/{pdf_id}/pages/1/analysis", headers=ALICE).get_json()
    assert body["core_summary"] == "Summary of page 1"
    assert client.get(f"/api/files/{pdf_id}/pages/1/analysis", headers=BOB).status_code == 403


def test_missing_page_does_not_use_quota(client, pdf_id):
    assert client.post(f"/api/files/{pdf_id}/pages/9/analysis", headers=ALICE).status_code == 400
    assert client.get("/api/usage", headers=ALICE).get_json()["remainingQuota"] == 2
