"""HTTP boundary: files, pins, page text and AI page analysis."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

from .analysis import AnalysisService, PageAnalyzer
from .annotations import SessionRegistry
from .config import Settings
from .errors import PdfPinsError, Unauthenticated, Unauthorized, ValidationError
from .extraction import extract_page_texts, page_count, split_data_url
from .library import PDF_MIME, Library
from .render import render_notes_pdf
from .store import LocalBlobStore, MemoryBackend


def _user_id() -> str:
    user = (request.headers.get("X-User-Id") or "").strip()
    if not user:
        raise Unauthenticated("Sign in required")
    return user


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int_arg(value, name: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _parent_arg(value) -> Optional[str]:
    return value or None


def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[MemoryBackend] = None,
    blobs: Optional[LocalBlobStore] = None,
    analyzer: Optional[PageAnalyzer] = None,
) -> Flask:
    settings = settings or Settings.from_env()
    backend = backend or MemoryBackend()
    blobs = blobs or LocalBlobStore(Path(settings.blob_dir))
    analyzer = analyzer or PageAnalyzer(settings.ollama_host, settings.ollama_model, settings.ollama_timeout)

    library = Library(backend, blobs)
    sessions = SessionRegistry(backend, settings.flush_interval, settings.max_write_attempts)
    analysis = AnalysisService(backend, analyzer, library, settings.ai_quota, settings.render_dpi)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_mb * 1024 * 1024
    app.extensions["pdfpins"] = {
        "settings": settings,
        "backend": backend,
        "library": library,
        "sessions": sessions,
        "analysis": analysis,
    }

    @app.errorhandler(PdfPinsError)
    def handle_error(err: PdfPinsError):
        if err.status >= 500:
            app.logger.error("%s %s failed: %s", request.method, request.path, err.message)
        else:
            app.logger.info("%s %s rejected: %s", request.method, request.path, err.message)
        return jsonify({"error": err.message}), err.status

    # ── AI analysis ──────────────────────────────────────────────────────────

    @app.route("/api/analyze-pdf", methods=["POST"])
    def analyze_pdf():
        body = _json_body()
        image = body.get("image")
        page_number = body.get("pageNumber")
        if not image or not page_number:
            return jsonify({"error": "An image and a page number are required."}), 400
        try:
            _, payload = split_data_url(str(image))
            page_number = int(page_number)
        except (ValidationError, TypeError, ValueError) as e:
            return jsonify({"error": getattr(e, "message", str(e))}), 400
        try:
            result = analyzer.analyze(payload, page_number)
        except Exception:
            app.logger.exception("PDF analysis failed")
            return jsonify({"error": "PDF analysis failed."}), 500
        return jsonify(result.to_dict())

    @app.route("/api/check_ollama")
    def check_ollama():
        return jsonify({"ok": analyzer.check()})

    @app.route("/api/usage")
    def usage():
        return jsonify(analysis.usage(_user_id()).to_dict())

    @app.route("/api/files/<file_id>/pages/<int:page>/analysis", methods=["POST"])
    def analyze_file_page(file_id: str, page: int):
        record = analysis.analyze_page(file_id, page, _user_id())
        return jsonify(record.to_dict()), 201

    @app.route("/api/files/<file_id>/pages/<int:page>/analysis", methods=["GET"])
    def saved_analysis(file_id: str, page: int):
        record = analysis.saved_analysis(file_id, page, _user_id())
        if record is None:
            return jsonify({"error": f"No analysis for page {page}"}), 404
        return jsonify(record.to_dict())

    # ── Files & folders ──────────────────────────────────────────────────────

    @app.route("/api/files", methods=["GET"])
    def list_files():
        items = library.list(_parent_arg(request.args.get("parentId")), _user_id())
        return jsonify({"files": [f.to_dict() for f in items]})

    @app.route("/api/folders", methods=["POST"])
    def create_folder():
        body = _json_body()
        folder = library.create_folder(body.get("name", ""), _parent_arg(body.get("parentId")), _user_id())
        return jsonify(folder.to_dict()), 201

    @app.route("/api/files", methods=["POST"])
    def upload_file():
        user = _user_id()
        if "pdf" not in request.files:
            return jsonify({"error": "No PDF uploaded"}), 400
        f = request.files["pdf"]
        data = f.read()
        content_type = f.mimetype or PDF_MIME
        if content_type == PDF_MIME or (f.filename or "").lower().endswith(".pdf"):
            try:
                page_count(data)
            except Exception as e:
                return jsonify({"error": f"Not a readable PDF: {e}"}), 400
            content_type = PDF_MIME
        item = library.upload_file(
            f.filename or "document.pdf", data,
            _parent_arg(request.form.get("parentId")), user, content_type,
        )
        return jsonify(item.to_dict()), 201

    @app.route("/api/files/<file_id>", methods=["GET"])
    def get_file(file_id: str):
        return jsonify(library.get(file_id, _user_id()).to_dict())

    @app.route("/api/files/<file_id>", methods=["PATCH"])
    def move_file(file_id: str):
        body = _json_body()
        if "parentId" not in body:
            return jsonify({"error": "parentId is required"}), 400
        item = library.move(file_id, _parent_arg(body.get("parentId")), _user_id())
        return jsonify(item.to_dict())

    @app.route("/api/files/<file_id>", methods=["DELETE"])
    def delete_file(file_id: str):
        user = _user_id()
        # flush open pins first so nothing is written after the records go
        for item in library.walk(file_id, user):
            sessions.close(user, item.id)
        library.delete(file_id, user)
        return "", 204

    @app.route("/api/files/<file_id>/path")
    def file_path(file_id: str):
        return jsonify({"path": [f.to_dict() for f in library.path(file_id, _user_id())]})

    @app.route("/api/files/<file_id>/parent")
    def file_parent(file_id: str):
        parent = library.parent_of(file_id, _user_id())
        return jsonify({"parent": parent.to_dict() if parent else None})

    @app.route("/api/files/<file_id>/content")
    def file_content(file_id: str):
        user = _user_id()
        item = library.get(file_id, user)
        return send_file(io.BytesIO(library.read_pdf(file_id, user)),
                         mimetype=PDF_MIME, download_name=item.name)

    @app.route("/api/files/<file_id>/text")
    def file_text(file_id: str):
        user = _user_id()
        pdf_bytes = library.read_pdf(file_id, user)
        page = _int_arg(request.args.get("page"), "page")
        texts = extract_page_texts(
            pdf_bytes, [page] if page is not None else None,
            settings.y_tolerance, settings.layout_strategy,
        )
        return jsonify({"numPages": page_count(pdf_bytes),
                        "pageTexts": {str(k): v for k, v in texts.items()}})

    # ── Pins ─────────────────────────────────────────────────────────────────

    def _session(file_id: str, user: str):
        # the library lookup enforces ownership before a session exists
        item = library.get(file_id, user)
        if not item.is_pdf:
            raise ValidationError(f"{item.name} is not a PDF")
        return sessions.open(user, file_id)

    @app.route("/api/files/<file_id>/session", methods=["POST"])
    def open_session(file_id: str):
        session = _session(file_id, _user_id())
        return jsonify({"notes": [n.to_dict() for n in session.notes()]})

    @app.route("/api/files/<file_id>/session", methods=["DELETE"])
    def close_session(file_id: str):
        result = sessions.close(_user_id(), file_id)
        return jsonify({"written": result.written if result else [],
                        "failed": result.failed if result else []})

    @app.route("/api/files/<file_id>/notes", methods=["GET"])
    def list_notes(file_id: str):
        session = _session(file_id, _user_id())
        page = _int_arg(request.args.get("page"), "page")
        return jsonify({"notes": [n.to_dict() for n in session.notes(page)]})

    @app.route("/api/files/<file_id>/notes", methods=["POST"])
    def place_note(file_id: str):
        session = _session(file_id, _user_id())
        body = _json_body()
        if "page" not in body or "x" not in body or "y" not in body:
            return jsonify({"error": "page, x and y are required"}), 400
        note = session.place(body["page"], body["x"], body["y"])
        if body.get("text"):
            note = session.set_text(note.id, str(body["text"]))
        return jsonify(note.to_dict()), 201

    @app.route("/api/files/<file_id>/notes/<note_id>", methods=["PATCH"])
    def update_note(file_id: str, note_id: str):
        session = _session(file_id, _user_id())
        body = _json_body()
        drag = body.get("drag")
        if drag not in (None, "begin", "move", "end"):
            return jsonify({"error": "drag must be begin, move or end"}), 400
        if drag == "begin":
            session.begin_drag(note_id)
        if "x" in body and "y" in body:
            session.update_drag(note_id, body["x"], body["y"])
        if drag == "end":
            session.end_drag(note_id)
        if "text" in body:
            session.set_text(note_id, str(body["text"] or ""))
        return jsonify(session.get(note_id).to_dict())

    @app.route("/api/files/<file_id>/notes/<note_id>", methods=["DELETE"])
    def delete_note(file_id: str, note_id: str):
        session = _session(file_id, _user_id())
        session.remove(note_id)
        return "", 204

    @app.route("/api/files/<file_id>/notes/flush", methods=["POST"])
    def flush_notes(file_id: str):
        result = _session(file_id, _user_id()).flush()
        return jsonify({"written": result.written, "failed": result.failed,
                        "skipped": result.skipped_in_flight})

    @app.route("/api/files/<file_id>/export")
    def export_pdf(file_id: str):
        user = _user_id()
        item = library.get(file_id, user)
        session = sessions.get(user, file_id)
        notes = session.notes() if session else backend.list_notes(file_id, user)
        out_bytes = render_notes_pdf(library.read_pdf(file_id, user), notes)
        return send_file(
            io.BytesIO(out_bytes),
            mimetype=PDF_MIME,
            as_attachment=True,
            download_name=f"{Path(item.name).stem}_notes.pdf",
        )

    @app.route("/api/blobs/<user>/<name>")
    def blob(user: str, name: str):
        if user != secure_filename(_user_id()):
            raise Unauthorized()
        return send_file(io.BytesIO(blobs.read(f"{user}/{name}")), mimetype=PDF_MIME)

    return app
