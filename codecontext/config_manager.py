"""Configuration manager for codecontext using TOML files.

The file lives at ``~/.codecontext/config.toml`` and holds two sections::

    [embeddings]
    model = "ollama"
    endpoint = "http://127.0.0.1:11434"
    batch_size = 10
    batch_delay = 0.1

    [index]
    max_file_size = 5242880
    exclude = ["generated/*"]

Every reader falls back to defaults when the file is missing or broken.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import requests
import toml

from .config import (
    BASE_DIR,
    DEFAULT_BATCH_DELAY,
    DEFAULT_BATCH_SIZE,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_MAX_FILE_SIZE,
)

logger = logging.getLogger(__name__)

CONFIG_FILE = BASE_DIR / "config.toml"


# Default configurations for each embedding backend
DEFAULT_EMBEDDING_CONFIGS: Dict[str, Dict[str, Any]] = {
    "hash": {
        "model": "hash",
    },
    "ollama": {
        "model": "ollama",
        "endpoint": "http://127.0.0.1:11434",
        "name": "nomic-embed-text",
    },
    "gemini": {
        "model": "gemini",
        "name": "text-embedding-004",
        "api_key": "",
    },
}

DEFAULT_INDEX_CONFIG: Dict[str, Any] = {
    "max_file_size": DEFAULT_MAX_FILE_SIZE,
    "exclude": [],
}


def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", CONFIG_FILE, exc)
        return {}


def _save_full_config(config: Dict[str, Any]) -> bool:
    """Write entire config dict to TOML file, preserving all sections."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(CONFIG_FILE, "w") as f:
            toml.dump(config, f)
        return True
    except OSError as exc:
        logger.warning("Could not write config file %s: %s", CONFIG_FILE, exc)
        return False


# ------------------------------------------------------------------
# Embedding configuration
# ------------------------------------------------------------------

def load_embedding_config() -> Dict[str, Any]:
    """Load the ``[embeddings]`` section merged over the defaults.

    Returns:
        Dict with ``model``, ``batch_size`` and ``batch_delay`` keys plus any
        backend specific settings (``endpoint``, ``api_key``, ``name``).
    """
    section = load_full_config().get("embeddings", {})
    model_key = section.get("model", DEFAULT_EMBEDDING_MODEL)
    merged: Dict[str, Any] = {
        "batch_size": DEFAULT_BATCH_SIZE,
        "batch_delay": DEFAULT_BATCH_DELAY,
    }
    merged.update(DEFAULT_EMBEDDING_CONFIGS.get(model_key, {"model": model_key}))
    merged.update(section)
    return merged


def save_embedding_config(
    model_key: str,
    endpoint: str = "",
    api_key: str = "",
    name: str = "",
) -> bool:
    """Save embedding backend choice to config TOML.

    Preserves ``[index]`` and other sections.

    Args:
        model_key: One of ``hash``, ``ollama`` or ``gemini``.
        endpoint: Base URL of the embedding service (Ollama).
        api_key: API key for hosted services (Gemini).
        name: Remote model name, e.g. ``nomic-embed-text``.

    Returns:
        True if saved successfully.
    """
    config = load_full_config()
    previous = config.get("embeddings", {})
    section: Dict[str, Any] = {"model": model_key}
    for key in ("batch_size", "batch_delay"):
        if key in previous:
            section[key] = previous[key]
    if endpoint:
        section["endpoint"] = endpoint
    if api_key:
        section["api_key"] = api_key
    if name:
        section["name"] = name
    config["embeddings"] = section
    return _save_full_config(config)


def clear_embedding_config() -> bool:
    """Remove ``[embeddings]`` section from config, resetting to default."""
    config = load_full_config()
    config.pop("embeddings", None)
    return _save_full_config(config)


# ------------------------------------------------------------------
# Index configuration
# ------------------------------------------------------------------

def load_index_config() -> Dict[str, Any]:
    """Load the ``[index]`` section merged over the defaults."""
    merged = dict(DEFAULT_INDEX_CONFIG)
    merged.update(load_full_config().get("index", {}))
    return merged


def validate_ollama_connection(endpoint: str = "http://127.0.0.1:11434") -> bool:
    """Check if Ollama is running and accessible.

    Args:
        endpoint: Ollama endpoint URL

    Returns:
        True if Ollama is accessible, False otherwise
    """
    try:
        resp = requests.get(f"{endpoint.rstrip('/')}/api/tags", timeout=3)
        return resp.status_code == 200
    except requests.RequestException:
        return False
