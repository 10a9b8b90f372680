from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


@dataclass
class Settings:
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "llava"
    ollama_timeout: float = 180.0
    data_dir: Path = Path("data")
    flush_interval: float = 1.0
    max_write_attempts: int = 3
    y_tolerance: float = 5.0
    layout_strategy: str = "anchored"
    ai_quota: int = 10
    render_dpi: int = 110
    max_upload_mb: int = 100

    @property
    def blob_dir(self) -> Path:
        return self.data_dir / "blobs"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            ollama_host=os.environ.get("OLLAMA_HOST", cls.ollama_host),
            ollama_model=os.environ.get("OLLAMA_MODEL", cls.ollama_model),
            ollama_timeout=_env_float("OLLAMA_TIMEOUT", cls.ollama_timeout),
            data_dir=Path(os.environ.get("PDFPINS_DATA_DIR", str(cls.data_dir))),
            flush_interval=_env_float("PDFPINS_FLUSH_INTERVAL", cls.flush_interval),
            max_write_attempts=_env_int("PDFPINS_MAX_WRITE_ATTEMPTS", cls.max_write_attempts),
            y_tolerance=_env_float("PDFPINS_Y_TOLERANCE", cls.y_tolerance),
            layout_strategy=os.environ.get("PDFPINS_LAYOUT_STRATEGY", cls.layout_strategy),
            ai_quota=_env_int("PDFPINS_AI_QUOTA", cls.ai_quota),
            render_dpi=_env_int("PDFPINS_RENDER_DPI", cls.render_dpi),
            max_upload_mb=_env_int("PDFPINS_MAX_UPLOAD_MB", cls.max_upload_mb),
        )


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
