"""Paths, environment variable names and project configuration."""

import json
import os
import sys
from pathlib import Path

from .errors import ConfigurationError


# --- Environment ---

MODE_ENV = "IIIFSITE_MODE"
WATCH_ENV = "IIIFSITE_WATCH"
LIBRARY_ENV = "IIIFSITE_LIBRARY"
DEBUG_ENV = "IIIFSITE_DEBUG"
DEV_ONCE_ENV = "IIIFSITE_DEV_ONCE"
LIFECYCLE_ENV = "npm_lifecycle_event"

CONFIG_FILE = Path("iiifsite.json")

TRUTHY = {"1", "true", "yes", "on"}


# --- Defaults ---

DEFAULT_LIBRARY = "iiifsite.site"

DEFAULTS = {
    "ui_dir": "ui",
    "package_name": "@iiifsite/app",
    "library": DEFAULT_LIBRARY,
    "assets_command": [sys.executable, "-m", "iiifsite.assets"],
    "content_dir": "content",
    "output_dir": "site",
    "templates_dir": "templates",
    "assets_dir": "assets",
    "port": 8000,
    "site_title": "IIIF Collection",
}


def load_config(path: Path = None) -> dict:
    """Load project configuration from iiifsite.json, falling back to defaults."""
    config_path = Path(path) if path else CONFIG_FILE
    config = dict(DEFAULTS)
    if not config_path.exists():
        return config
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            overrides = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {config_path}: {e}") from e
    if not isinstance(overrides, dict):
        raise ConfigurationError(f"{config_path} must contain a JSON object")
    config.update(overrides)
    return config


def is_truthy(value) -> bool:
    return str(value or "").strip().lower() in TRUTHY


def watch_enabled(env=None) -> bool:
    """Whether the asset pipeline should keep running in watch mode."""
    env = os.environ if env is None else env
    return is_truthy(env.get(WATCH_ENV))


# --- Asset layout ---

def ui_paths(config: dict) -> dict:
    """Locations of the UI sources and the artifacts built from them."""
    ui_dir = Path(config.get("ui_dir", DEFAULTS["ui_dir"])).resolve()
    styles_dir = ui_dir / "styles"
    return {
        'root': ui_dir,
        'package_root': ui_dir.parent,
        'client_entry': ui_dir / "index.js",
        'server_entry': ui_dir / "server.js",
        'dist': ui_dir / "dist",
        'styles_dir': styles_dir,
        'styles_source': styles_dir / "index.scss",
        'styles_output': styles_dir / "index.css",
    }
