"""pdfpins: PDF library with page pins, reading-order text and AI page notes."""

from .annotations import AnnotationSession, SessionRegistry
from .app import create_app
from .config import Settings
from .layout import group_lines, reconstruct_page_text
from .models import Note, TextFragment

__version__ = "0.1.0"

__all__ = [
    "AnnotationSession",
    "Note",
    "SessionRegistry",
    "Settings",
    "TextFragment",
    "create_app",
    "group_lines",
    "reconstruct_page_text",
]
