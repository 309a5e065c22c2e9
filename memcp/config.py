"""
memcp Configuration

Configuration dataclasses for the store, the embedding model and retrieval
limits, plus load_config() which merges (highest priority first):

    1. Explicit arguments / environment variables
       MEMCP_STORAGE_DIR, MEMCP_SQLITE_PATH, MEMCP_MODEL, MEMCP_DEVICE
    2. <storage_dir>/config.json (nested sections, or the flat
       {"storageDir", "sqlitePath"} layout of earlier releases)
    3. Compiled defaults (~/.agent-memcp, memories.db, models/)

A missing or malformed config.json falls back silently to defaults.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from memcp.embedding import DEFAULT_MODEL, EMBEDDING_DIM

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = str(Path.home() / ".agent-memcp")
CONFIG_FILENAME = "config.json"
DB_FILENAME = "memories.db"
MODELS_DIRNAME = "models"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ""
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        if not self.db_path:
            return ["store.db_path: must not be empty"]
        return []


@dataclass
class EmbeddingConfig:
    """Embedding model configuration."""
    model_name: str = DEFAULT_MODEL
    dimension: int = EMBEDDING_DIM
    device: str = "cpu"
    cache_dir: Optional[str] = None
    batch_size: int = 32

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.model_name:
            errors.append("embedding.model_name: must not be empty")
        _check_range(errors, "embedding.dimension", self.dimension, 1, 65536, int)
        _check_range(errors, "embedding.batch_size", self.batch_size, 1, 4096, int)
        return errors


@dataclass
class RetrievalConfig:
    """Semantic retrieval limits."""
    default_limit: int = 20
    max_limit: int = 100

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "retrieval.max_limit", self.max_limit, 1, 10000, int)
        _check_range(errors, "retrieval.default_limit",
                     self.default_limit, 1, self.max_limit, int)
        return errors


@dataclass
class MemoryConfig:
    """Top-level memcp configuration."""
    storage_dir: str = DEFAULT_STORAGE_DIR
    store: StoreConfig = field(default_factory=StoreConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    def __post_init__(self):
        """Derive file locations from storage_dir when left unset."""
        if not self.store.db_path:
            self.store.db_path = str(Path(self.storage_dir) / DB_FILENAME)
        if self.embedding.cache_dir is None:
            self.embedding.cache_dir = str(Path(self.storage_dir) / MODELS_DIRNAME)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "storage_dir" in d:
            kwargs["storage_dir"] = d["storage_dir"]
        store = dict(d.get("store") or {})
        # Flat layout written by earlier releases: {"storageDir", "sqlitePath"}
        if d.get("sqlitePath") and "db_path" not in store:
            store["db_path"] = d["sqlitePath"]
        if store:
            kwargs["store"] = StoreConfig(**store)
        if "embedding" in d:
            kwargs["embedding"] = EmbeddingConfig(**d["embedding"])
        if "retrieval" in d:
            kwargs["retrieval"] = RetrievalConfig(**d["retrieval"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a nested JSON-safe dict."""
        return asdict(self)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.embedding.validate())
        errors.extend(self.retrieval.validate())
        return errors


def _read_file_config(storage_dir: str) -> Dict[str, Any]:
    path = Path(storage_dir) / CONFIG_FILENAME
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config %s: top level is not an object", path)
        return {}
    return data


def load_config(
    storage_dir: Optional[str] = None, *, strict: bool = False,
) -> MemoryConfig:
    """Load configuration for a storage directory.

    Args:
        storage_dir: Root data directory. Defaults to $MEMCP_STORAGE_DIR,
            then ~/.agent-memcp.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        MemoryConfig with absolute paths.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    root = storage_dir or os.environ.get("MEMCP_STORAGE_DIR") or DEFAULT_STORAGE_DIR
    root = str(Path(root).expanduser().resolve())

    data = _read_file_config(root)
    data["storage_dir"] = root
    try:
        cfg = MemoryConfig.from_dict(data)
    except (TypeError, ValueError, KeyError) as exc:
        logger.warning("Ignoring invalid config in %s: %s", root, exc)
        cfg = MemoryConfig(storage_dir=root)

    env_db = os.environ.get("MEMCP_SQLITE_PATH")
    if env_db:
        cfg.store.db_path = env_db
    env_model = os.environ.get("MEMCP_MODEL")
    if env_model:
        cfg.embedding.model_name = env_model
    env_device = os.environ.get("MEMCP_DEVICE")
    if env_device:
        cfg.embedding.device = env_device

    if cfg.store.db_path != ":memory:":
        cfg.store.db_path = str(Path(cfg.store.db_path).expanduser().resolve())

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg


def ensure_storage_dirs(cfg: MemoryConfig) -> None:
    """Create the storage directory if it doesn't exist."""
    Path(cfg.storage_dir).mkdir(parents=True, exist_ok=True)


def save_config(cfg: MemoryConfig) -> str:
    """Write cfg to <storage_dir>/config.json. Returns the file path."""
    ensure_storage_dirs(cfg)
    path = Path(cfg.storage_dir) / CONFIG_FILENAME
    with open(path, "w", encoding="utf-8") as f:
        json.dump(cfg.to_dict(), f, indent=2)
    return str(path)
