from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any, Dict, List, Optional

import requests

from .errors import QuotaExhausted, UpstreamError, ValidationError
from .extraction import render_page_jpeg
from .models import PageAnalysis, StoredAnalysis

log = logging.getLogger(__name__)


# ─── Prompt ──────────────────────────────────────────────────────────────────

SYSTEM_PROMPT = (
    "You are a friendly professor who explains lecture material. Explain the "
    "content so it is easy to understand, give the background knowledge a "
    "student needs, and point out what is especially important."
)


def build_prompt(page_number: int) -> str:
    return (
        f"Analyse page {page_number} of this lecture material (the attached image).\n\n"
        "Return ONE JSON object with EXACTLY these keys:\n"
        '  "core_summary"          : the key content of the page in 2-4 sentences\n'
        '  "easy_explanation"      : the same content explained simply, with background\n'
        '  "examples_or_analogies" : concrete examples or analogies that make it stick\n'
        '  "exam_points"           : array of short strings, what is likely to be examined\n'
        '  "term_definitions"      : array of strings formatted "term: definition", or []\n\n'
        "Rules:\n"
        "- Output ONLY the raw JSON object. No markdown. No code fences. No explanation.\n"
        "- No newlines inside string values.\n"
    )


# ─── Model output parsing ────────────────────────────────────────────────────

def repair_json(raw: str) -> Dict[str, Any]:
    """Try several strategies to get one JSON object out of model output."""
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    s = raw.find("{")
    e = raw.rfind("}")
    chunk = raw[s:e + 1] if s != -1 and e > s else raw

    candidates = [
        chunk,
        re.sub(r"```(?:json)?", "", chunk).strip(),
        re.sub(r'(?<=["\w,])\n(?=["\w ])', " ", chunk),
        re.sub(r",\s*([}\]])", r"\1", chunk),
    ]
    for c in candidates:
        try:
            parsed = json.loads(c)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed

    raise ValueError(f"JSON repair failed. Raw output: {raw[:300]!r}")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(str(v).strip() for v in value if str(v).strip())
    return str(value).replace("\n", " ").strip()


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [line.strip(" -•\t") for line in value.splitlines() if line.strip(" -•\t")]
    if isinstance(value, list):
        return [_as_text(v) for v in value if _as_text(v)]
    return [_as_text(value)]


def _as_definitions(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, dict):
        return [f"{_as_text(k)}: {_as_text(v)}" for k, v in value.items()]
    out = []
    for item in value if isinstance(value, list) else _as_list(value):
        if isinstance(item, dict):
            term = _as_text(item.get("term"))
            definition = _as_text(item.get("definition"))
            if term:
                out.append(f"{term}: {definition}")
        elif _as_text(item):
            out.append(_as_text(item))
    return out


def clean_analysis(raw: Dict[str, Any]) -> PageAnalysis:
    return PageAnalysis(
        core_summary=_as_text(raw.get("core_summary")),
        easy_explanation=_as_text(raw.get("easy_explanation")),
        examples_or_analogies=_as_text(raw.get("examples_or_analogies")),
        exam_points=_as_list(raw.get("exam_points")),
        term_definitions=_as_definitions(raw.get("term_definitions")),
    )


# ─── Model client ────────────────────────────────────────────────────────────

class PageAnalyzer:
    """Vision-capable model served by Ollama."""

    def __init__(self, host: str = "http://localhost:11434", model: str = "llava", timeout: float = 180.0) -> None:
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout

    def check(self) -> bool:
        try:
            requests.get(self.host + "/api/tags", timeout=4).raise_for_status()
            return True
        except requests.exceptions.RequestException as e:
            log.warning("Model host %s unreachable: %s", self.host, e)
            return False

    def analyze(self, image_b64: str, page_number: int) -> PageAnalysis:
        if not image_b64:
            raise ValidationError("Image is required")
        data = {
            "model": self.model,
            "system": SYSTEM_PROMPT,
            "prompt": build_prompt(page_number),
            "images": [image_b64],
            "format": "json",
            "stream": False,
            "options": {"temperature": 0.2, "num_predict": 1000},
        }
        raw = ""
        try:
            r = requests.post(self.host + "/api/generate", json=data, timeout=self.timeout)
            r.raise_for_status()
            raw = (r.json().get("response") or "").strip()
        except requests.exceptions.ConnectionError:
            raise UpstreamError("Cannot connect to Ollama. Run: ollama serve")
        except requests.exceptions.Timeout:
            raise UpstreamError("Ollama timed out. Try a faster/smaller model.")
        except (requests.exceptions.RequestException, ValueError) as ex:
            raise UpstreamError(f"Model request failed: {ex}")

        if not raw:
            raise UpstreamError("Model returned no output.")
        try:
            return clean_analysis(repair_json(raw))
        except ValueError as ex:
            log.warning("Unparseable analysis for page %d: %s", page_number, ex)
            raise UpstreamError(f"Could not parse model output: {raw[:200]}")


class AnalysisService:
    """Quota-checked page analysis for files in the library."""

    def __init__(self, backend, analyzer: PageAnalyzer, library, default_quota: int = 10, render_dpi: int = 110) -> None:
        self.backend = backend
        self.analyzer = analyzer
        self.library = library
        self.default_quota = default_quota
        self.render_dpi = render_dpi

    def usage(self, user_id: str):
        usage = self.backend.get_usage(user_id)
        if usage is None:
            usage = self.backend.init_usage(user_id, self.default_quota)
        return usage

    def consume_quota(self, user_id: str):
        self.usage(user_id)
        return self.backend.decrement_usage(user_id)

    def analyze_page(self, file_id: str, page_number: int, user_id: str) -> StoredAnalysis:
        pdf_bytes = self.library.read_pdf(file_id, user_id)
        image = render_page_jpeg(pdf_bytes, page_number, dpi=self.render_dpi)
        try:
            remaining = self.consume_quota(user_id).remaining_quota
        except QuotaExhausted:
            log.info("User %s is out of AI quota", user_id)
            raise
        log.info("Analysing %s page %d for %s (%d left)", file_id, page_number, user_id, remaining)

        analysis = self.analyzer.analyze(base64.b64encode(image).decode("ascii"), page_number)
        record = StoredAnalysis(file_id=file_id, page_number=page_number, user_id=user_id, analysis=analysis)
        return self.backend.save_analysis(record)

    def saved_analysis(self, file_id: str, page_number: int, user_id: str) -> Optional[StoredAnalysis]:
        self.library.get(file_id, user_id)
        return self.backend.get_analysis(file_id, page_number, user_id)
