from __future__ import annotations

import textwrap
from typing import Dict, Iterable, List

import fitz  # pymupdf

from .models import Note

PIN_ACCENT = (0.90, 0.65, 0.05)
PIN_FILL = (1.00, 0.97, 0.82)
TEXT_COLOR = (0.08, 0.10, 0.16)
META_COLOR = (0.28, 0.30, 0.40)


def _by_page(notes: Iterable[Note]) -> Dict[int, List[Note]]:
    by_page: Dict[int, List[Note]] = {}
    for note in sorted(notes, key=lambda n: (n.page, n.created_at, n.id)):
        by_page.setdefault(note.page, []).append(note)
    return by_page


def render_notes_pdf(pdf_bytes: bytes, notes: Iterable[Note]) -> bytes:
    """
    Draw a numbered pin where each note is anchored and a callout box with its
    text in the right margin. Returns the modified PDF as bytes.
    """
    doc = fitz.open(stream=pdf_bytes, filetype="pdf")

    for page_num, page_notes in _by_page(notes).items():
        pg_idx = page_num - 1
        if pg_idx < 0 or pg_idx >= len(doc):
            continue

        page = doc[pg_idx]
        pw = page.rect.width
        ph = page.rect.height

        # Margin strip: 23% of width, capped at 180pt
        margin_w = min(pw * 0.23, 180)
        sep_x = pw - margin_w - 2

        sh = page.new_shape()
        sh.draw_line(fitz.Point(sep_x, 14), fitz.Point(sep_x, ph - 14))
        sh.finish(color=(0.68, 0.72, 0.80), width=0.5, stroke_opacity=0.45)
        sh.commit()

        BOX_X = sep_x + 3
        BOX_W = margin_w - 5
        BOX_PAD = 4.0
        FS_LBL = 5.8
        FS_TX = 6.9
        LH_TX = FS_TX * 1.36
        PIN_R = 5.5
        CHARS = max(int(BOX_W / (FS_TX * 0.52)), 14)

        margin_y = 14.0

        for index, note in enumerate(page_notes, start=1):
            label = str(index)

            # ── Pin on the page ──────────────────────────────────────────────
            cx = pw * note.x / 100.0
            cy = ph * note.y / 100.0
            sh = page.new_shape()
            sh.draw_circle(fitz.Point(cx, cy), PIN_R)
            sh.finish(fill=PIN_ACCENT, color=(1, 1, 1), width=0.8, fill_opacity=0.95)
            sh.commit()
            page.insert_text(fitz.Point(cx - 1.8 * len(label), cy + 2.2),
                             label, fontname="helv", fontsize=6.5, color=(1, 1, 1))

            # ── Callout box in the margin ────────────────────────────────────
            text = note.text.strip() or "(empty note)"
            lines = []
            for para in text.splitlines():
                lines.extend(textwrap.wrap(para, width=CHARS) or [""])
            max_lines = max(int((ph - 26 - BOX_PAD * 2 - FS_LBL - 2.5) // LH_TX), 1)
            if len(lines) > max_lines:
                lines = lines[:max_lines - 1] + [lines[max_lines - 1][: CHARS - 1] + "…"]
            stamp = note.updated_at.strftime("%Y-%m-%d %H:%M")

            box_h = BOX_PAD * 2 + FS_LBL + 2.5 + len(lines) * LH_TX

            if margin_y + box_h > ph - 12:
                margin_y = 14.0

            box = fitz.Rect(BOX_X, margin_y, BOX_X + BOX_W, margin_y + box_h)

            sh = page.new_shape()
            sh.draw_rect(box)
            sh.finish(fill=PIN_FILL, color=PIN_ACCENT,
                      fill_opacity=0.90, stroke_opacity=0.82, width=0.65)
            sh.commit()

            bar = fitz.Rect(BOX_X, margin_y, BOX_X + 2.8, margin_y + box_h)
            sh = page.new_shape()
            sh.draw_rect(bar)
            sh.finish(fill=PIN_ACCENT, color=PIN_ACCENT, fill_opacity=1.0, stroke_opacity=0.0)
            sh.commit()

            tx = BOX_X + 5.0
            ty = margin_y + BOX_PAD

            page.insert_text(fitz.Point(tx, ty + FS_LBL),
                             f"#{label}  {stamp}", fontname="helv", fontsize=FS_LBL, color=META_COLOR)
            ty += FS_LBL + 2.5

            for ln in lines:
                page.insert_text(fitz.Point(tx, ty + FS_TX),
                                 ln, fontname="helv", fontsize=FS_TX, color=TEXT_COLOR)
                ty += LH_TX

            margin_y = box.y1 + 3.5

    out = doc.tobytes(garbage=4, deflate=True)
    doc.close()
    return out
