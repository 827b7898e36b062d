"""TOML configuration loader."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib
    except ImportError:
        tomllib = None  # type: ignore[assignment]


@dataclass
class CameraConfig:
    index: int = 0
    ideal_width: int = 1280
    ideal_height: int = 720
    jpeg_quality: int = 95
    long_press_ms: int = 800


@dataclass
class ImagingConfig:
    enhance: bool = False
    contrast: float = 1.25


@dataclass
class HttpClassifierConfig:
    endpoint: str = ""
    timeout: float = 60.0


@dataclass
class GeminiClassifierConfig:
    api_key: str = ""
    model: str = "gemini-2.5-flash"


@dataclass
class ClaudeClassifierConfig:
    api_key: str = ""
    model: str = "claude-sonnet-4-5-20250929"


@dataclass
class ClassifierConfig:
    backend: str = "http"
    http: HttpClassifierConfig = field(default_factory=HttpClassifierConfig)
    gemini: GeminiClassifierConfig = field(default_factory=GeminiClassifierConfig)
    claude: ClaudeClassifierConfig = field(default_factory=ClaudeClassifierConfig)


@dataclass
class EntitlementConfig:
    free_limit: int = 20
    supabase_url: str = ""
    supabase_anon_key: str = ""
    offline_unmetered: bool = False


@dataclass
class StorageConfig:
    db_path: str = "~/.config/halal-scan/state.db"
    quota_bytes: int = 5 * 1024 * 1024
    history_capacity: int = 30


@dataclass
class SessionConfig:
    language: str = "ar"
    max_images: int = 4
    progress_interval: float = 0.2


@dataclass
class ScanConfig:
    camera: CameraConfig = field(default_factory=CameraConfig)
    imaging: ImagingConfig = field(default_factory=ImagingConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    entitlement: EntitlementConfig = field(default_factory=EntitlementConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


def load_config(path: str | Path | None = None) -> ScanConfig:
    """Load configuration from a TOML file.

    Falls back to defaults if no path is given or the file doesn't exist.
    Secrets and endpoints can be supplied via environment variables; values
    in the file take precedence.
    """
    raw: dict = {}

    if path is not None:
        p = Path(path)
        if p.exists():
            if tomllib is None:
                raise ImportError(
                    "tomli is required on Python < 3.11: pip install tomli"
                )
            with open(p, "rb") as f:
                raw = tomllib.load(f)

    cam = raw.get("camera", {})
    img = raw.get("imaging", {})
    cls = raw.get("classifier", {})
    ent = raw.get("entitlement", {})
    sto = raw.get("storage", {})
    ses = raw.get("session", {})

    http_cfg = cls.get("http", {})
    gemini_cfg = cls.get("gemini", {})
    claude_cfg = cls.get("claude", {})

    # Resolve secrets and endpoints: config file → environment variable
    endpoint = http_cfg.get("endpoint", "") or os.environ.get("HALAL_SCAN_ENDPOINT", "")
    gemini_api_key = gemini_cfg.get("api_key", "") or os.environ.get(
        "GEMINI_API_KEY", ""
    )
    claude_api_key = claude_cfg.get("api_key", "") or os.environ.get(
        "ANTHROPIC_API_KEY", ""
    )
    supabase_url = ent.get("supabase_url", "") or os.environ.get("SUPABASE_URL", "")
    supabase_anon_key = ent.get("supabase_anon_key", "") or os.environ.get(
        "SUPABASE_ANON_KEY", ""
    )

    return ScanConfig(
        camera=CameraConfig(
            index=cam.get("index", 0),
            ideal_width=cam.get("ideal_width", 1280),
            ideal_height=cam.get("ideal_height", 720),
            jpeg_quality=cam.get("jpeg_quality", 95),
            long_press_ms=cam.get("long_press_ms", 800),
        ),
        imaging=ImagingConfig(
            enhance=img.get("enhance", False),
            contrast=img.get("contrast", 1.25),
        ),
        classifier=ClassifierConfig(
            backend=cls.get("backend", "http"),
            http=HttpClassifierConfig(
                endpoint=endpoint,
                timeout=http_cfg.get("timeout", 60.0),
            ),
            gemini=GeminiClassifierConfig(
                api_key=gemini_api_key,
                model=gemini_cfg.get("model", "gemini-2.5-flash"),
            ),
            claude=ClaudeClassifierConfig(
                api_key=claude_api_key,
                model=claude_cfg.get("model", "claude-sonnet-4-5-20250929"),
            ),
        ),
        entitlement=EntitlementConfig(
            free_limit=ent.get("free_limit", 20),
            supabase_url=supabase_url,
            supabase_anon_key=supabase_anon_key,
            offline_unmetered=ent.get("offline_unmetered", False),
        ),
        storage=StorageConfig(
            db_path=sto.get("db_path", "~/.config/halal-scan/state.db"),
            quota_bytes=sto.get("quota_bytes", 5 * 1024 * 1024),
            history_capacity=sto.get("history_capacity", 30),
        ),
        session=SessionConfig(
            language=ses.get("language", "ar"),
            max_images=ses.get("max_images", 4),
            progress_interval=ses.get("progress_interval", 0.2),
        ),
    )
