from __future__ import annotations

import base64
import io
import logging
from typing import Dict, Iterable, List, Optional, Tuple

import fitz  # pymupdf
import pdfplumber

from .errors import PageOutOfRange, ValidationError
from .layout import Y_TOLERANCE, reconstruct_page_text
from .models import TextFragment

log = logging.getLogger(__name__)

JPEG_DATA_URL_PREFIX = "data:image/jpeg;base64,"


def page_count(pdf_bytes: bytes) -> int:
    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        return len(pdf.pages)


def page_fragments(page: "pdfplumber.page.Page") -> List[TextFragment]:
    # pdfplumber measures from the top edge; flip to PDF space so the
    # baseline y grows upwards
    height = float(page.height)
    words = page.extract_words(keep_blank_chars=False, use_text_flow=False)
    return [
        TextFragment(text=w["text"], x=float(w["x0"]), y=height - float(w["bottom"]))
        for w in words
    ]


def extract_page_texts(
    pdf_bytes: bytes,
    pages: Optional[Iterable[int]] = None,
    tolerance: float = Y_TOLERANCE,
    strategy: str = "anchored",
) -> Dict[int, str]:
    """Reading-order text for the requested 1-based pages (all by default)."""
    texts: Dict[int, str] = {}
    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        total = len(pdf.pages)
        wanted = list(pages) if pages is not None else range(1, total + 1)
        for number in wanted:
            if number < 1 or number > total:
                raise PageOutOfRange(f"Page {number} is outside 1..{total}")
            fragments = page_fragments(pdf.pages[number - 1])
            texts[number] = reconstruct_page_text(fragments, tolerance, strategy)
            log.debug("page %d: %d fragments", number, len(fragments))
    return texts


def render_page_jpeg(pdf_bytes: bytes, page_number: int, dpi: int = 110) -> bytes:
    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        if page_number < 1 or page_number > len(doc):
            raise PageOutOfRange(f"Page {page_number} is outside 1..{len(doc)}")
        pix = doc[page_number - 1].get_pixmap(dpi=dpi)
        return pix.tobytes("jpeg")
    finally:
        doc.close()


def to_data_url(jpeg_bytes: bytes) -> str:
    return JPEG_DATA_URL_PREFIX + base64.b64encode(jpeg_bytes).decode("ascii")


def split_data_url(data_url: str) -> Tuple[str, str]:
    """``data:<mime>;base64,<payload>`` -> (mime, payload). Bare base64 is accepted."""
    if not data_url.startswith("data:"):
        return "image/jpeg", data_url.strip()
    header, sep, payload = data_url.partition(",")
    if not sep or not payload:
        raise ValidationError("Malformed image data URL")
    mime = header[5:].split(";", 1)[0] or "image/jpeg"
    return mime, payload.strip()
