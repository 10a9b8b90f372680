"""Records shared by the store, the annotation session and the HTTP layer."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


_id_lock = threading.Lock()
_last_id = 0


def new_id() -> str:
    """Millisecond timestamp id, strictly increasing within the process."""
    global _last_id
    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return str(candidate)


@dataclass
class TextFragment:
    text: str
    x: Optional[float]  # baseline x, PDF space
    y: Optional[float]  # baseline y, PDF space (origin bottom-left)

    @classmethod
    def from_mapping(cls, item: Mapping[str, Any]) -> "TextFragment":
        x = item.get("x", item.get("baselineX"))
        y = item.get("y", item.get("baselineY"))
        return cls(text=str(item.get("text") or ""), x=x, y=y)


@dataclass
class LineGroup:
    y: float
    fragments: List[TextFragment] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(f.text for f in self.fragments)


@dataclass
class Note:
    id: str
    file_id: str
    page: int
    x: float
    y: float
    text: str = ""
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fileId": self.file_id,
            "page": self.page,
            "x": self.x,
            "y": self.y,
            "text": self.text,
            "userId": self.user_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class FileItem:
    id: str
    name: str
    type: str  # "file" | "folder"
    parent_id: Optional[str]
    user_id: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    blob_key: Optional[str] = None

    @property
    def is_folder(self) -> bool:
        return self.type == "folder"

    @property
    def is_pdf(self) -> bool:
        return self.type == "file" and self.file_type == "application/pdf"

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "parentId": self.parent_id,
            "userId": self.user_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.type == "file":
            out.update(fileUrl=self.file_url, fileSize=self.file_size, fileType=self.file_type)
        return out


ANALYSIS_FIELDS = (
    "core_summary",
    "easy_explanation",
    "examples_or_analogies",
    "exam_points",
    "term_definitions",
)


@dataclass
class PageAnalysis:
    core_summary: str
    easy_explanation: str
    examples_or_analogies: str
    exam_points: List[str] = field(default_factory=list)
    term_definitions: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "core_summary": self.core_summary,
            "easy_explanation": self.easy_explanation,
            "examples_or_analogies": self.examples_or_analogies,
            "exam_points": list(self.exam_points),
        }
        if self.term_definitions is not None:
            out["term_definitions"] = list(self.term_definitions)
        return out


@dataclass
class StoredAnalysis:
    file_id: str
    page_number: int
    user_id: str
    analysis: PageAnalysis
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        out = self.analysis.to_dict()
        out.update(
            id=self.id,
            fileId=self.file_id,
            pageNumber=self.page_number,
            createdAt=_iso(self.created_at),
        )
        return out


@dataclass
class AIUsage:
    user_id: str
    remaining_quota: int
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "remainingQuota": self.remaining_quota,
            "updatedAt": _iso(self.updated_at),
        }
