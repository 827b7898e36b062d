"""Tests for halal-scan config loading."""

import os
import tempfile
from unittest.mock import patch

from halalscan.config import ScanConfig, load_config


def test_load_config_defaults():
    """Loading with no path returns all defaults."""
    with patch.dict(os.environ, {}, clear=True):
        config = load_config()
    assert isinstance(config, ScanConfig)
    assert config.camera.index == 0
    assert config.camera.ideal_width == 1280
    assert config.camera.ideal_height == 720
    assert config.camera.jpeg_quality == 95
    assert config.camera.long_press_ms == 800
    assert config.imaging.enhance is False
    assert config.imaging.contrast == 1.25
    assert config.classifier.backend == "http"
    assert config.classifier.http.endpoint == ""
    assert config.entitlement.free_limit == 20
    assert config.entitlement.offline_unmetered is False
    assert config.storage.history_capacity == 30
    assert config.session.language == "ar"
    assert config.session.max_images == 4


def test_load_config_nonexistent_file():
    """Loading a nonexistent file returns defaults."""
    config = load_config("/nonexistent/path.toml")
    assert config.camera.index == 0


def test_load_config_from_toml():
    """Loading a valid TOML file populates config."""
    toml_content = b"""\
[camera]
index = 2
ideal_width = 1920
ideal_height = 1080

[imaging]
enhance = true
contrast = 1.5

[classifier]
backend = "gemini"

[classifier.gemini]
api_key = "test-key-123"
model = "gemini-pro"

[entitlement]
free_limit = 5
offline_unmetered = true

[storage]
db_path = "/var/lib/halal-scan/state.db"
history_capacity = 10

[session]
language = "en"
"""
    with tempfile.NamedTemporaryFile(suffix=".toml", delete=False) as f:
        f.write(toml_content)
        f.flush()
        config = load_config(f.name)

    os.unlink(f.name)

    assert config.camera.index == 2
    assert config.camera.ideal_width == 1920
    assert config.imaging.enhance is True
    assert config.imaging.contrast == 1.5
    assert config.classifier.backend == "gemini"
    assert config.classifier.gemini.api_key == "test-key-123"
    assert config.classifier.gemini.model == "gemini-pro"
    assert config.entitlement.free_limit == 5
    assert config.entitlement.offline_unmetered is True
    assert config.storage.db_path == "/var/lib/halal-scan/state.db"
    assert config.storage.history_capacity == 10
    assert config.session.language == "en"
    # Sections not in the file keep defaults
    assert config.session.max_images == 4


def test_env_fallback():
    """Secrets and endpoints fall back to environment variables."""
    env = {
        "HALAL_SCAN_ENDPOINT": "https://example.test/analyze",
        "GEMINI_API_KEY": "env-gemini",
        "ANTHROPIC_API_KEY": "env-claude",
        "SUPABASE_URL": "https://project.supabase.co",
        "SUPABASE_ANON_KEY": "anon",
    }
    with patch.dict(os.environ, env, clear=True):
        config = load_config()

    assert config.classifier.http.endpoint == "https://example.test/analyze"
    assert config.classifier.gemini.api_key == "env-gemini"
    assert config.classifier.claude.api_key == "env-claude"
    assert config.entitlement.supabase_url == "https://project.supabase.co"
    assert config.entitlement.supabase_anon_key == "anon"


def test_file_value_wins_over_env(tmp_path):
    """A value in the config file takes precedence over the environment."""
    path = tmp_path / "config.toml"
    path.write_text('[classifier.http]\nendpoint = "https://file.test/analyze"\n')

    with patch.dict(os.environ, {"HALAL_SCAN_ENDPOINT": "https://env.test"}, clear=True):
        config = load_config(path)

    assert config.classifier.http.endpoint == "https://file.test/analyze"
