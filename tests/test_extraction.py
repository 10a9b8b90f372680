from __future__ import annotations

import base64

import pytest

from pdfpins.errors import PageOutOfRange, ValidationError
from pdfpins.extraction import (
    extract_page_texts,
    page_count,
    render_page_jpeg,
    split_data_url,
    to_data_url,
)


def test_page_count(two_page_pdf):
    assert page_count(two_page_pdf) == 2


def test_extracts_every_page_in_reading_order(two_page_pdf):
    texts = extract_page_texts(two_page_pdf)
    assert texts == {1: "Hello World\nSecond line", 2: "Page two"}


def test_extracts_selected_page(two_page_pdf):
    assert extract_page_texts(two_page_pdf, [2]) == {2: "Page two"}


def test_gap_strategy_agrees_on_simple_pages(two_page_pdf):
    assert extract_page_texts(two_page_pdf, strategy="gap") == extract_page_texts(two_page_pdf)


@pytest.mark.parametrize("page", [0, 3])
def test_page_out_of_range(two_page_pdf, page):
    with pytest.raises(PageOutOfRange):
        extract_page_texts(two_page_pdf, [page])
    with pytest.raises(PageOutOfRange):
        render_page_jpeg(two_page_pdf, page)


def test_render_page_jpeg(two_page_pdf):
    jpeg = render_page_jpeg(two_page_pdf, 1, dpi=40)
    assert jpeg[:3] == b"\xff\xd8\xff"
    url = to_data_url(jpeg)
    assert url.startswith("data:image/jpeg;base64,")
    mime, payload = split_data_url(url)
    assert mime == "image/jpeg"
    assert base64.b64decode(payload) == jpeg


def test_split_data_url_variants():
    assert split_data_url("data:image/png;base64,QUJD") == ("image/png", "QUJD")
    assert split_data_url("  QUJD ") == ("image/jpeg", "QUJD")
    with pytest.raises(ValidationError):
        split_data_url("data:image/png;base64,")
    with pytest.raises(ValidationError):
        split_data_url("data:image/png;base64")
