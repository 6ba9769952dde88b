#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Repository discovery and configuration loading for qsearch.

A repository is any directory holding a ``.qs`` folder. Configuration lives in
``.qs/config.json`` (JSON with comments allowed) and is merged over built-in
defaults.
"""
import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError, NotInRepositoryError

QS_DIR = ".qs"
CONFIG_FILENAME = "config.json"
MANIFEST_FILENAME = "manifest.db"
SHARD_DIRNAME = "shard"

_DEFAULTS: dict[str, Any] = {
    "embedding": {
        "model": "jinaai/jina-embeddings-v2-base-code",
        "dimension": 768,
        "batch_size": 32,
        "timeout_seconds": 120,
        "cache_dir": "~/.cache/qsearch/models",
        "offline": False,
    },
    "indexing": {
        "chunk_size": 2000,
        "chunk_overlap": 200,
        "max_file_size": 1024 * 1024,
        "include_extensions": [],
        "exclude_extensions": [],
        "ignore_paths": [],
        "parallel_workers": None,
        "checkpoint_interval_files": 100,
        "trust_mtime": False,
    },
    "search": {
        "top_k": 10,
        "context_lines": 2,
        "score_threshold": 0.0,
    },
    "logging": {
        "file": "qs.log",
        "max_size_mb": 10,
    },
}

_config_cache: dict[tuple[Path, int, int], dict[str, Any]] = {}


def _strip_jsonc_comments(text: str) -> str:
    """Remove // and /* */ comments from JSON text (JSONC format)."""
    result = []
    in_string = False
    escape_next = False
    i = 0
    while i < len(text):
        char = text[i]

        if escape_next:
            result.append(char)
            escape_next = False
            i += 1
            continue

        if char == '\\' and in_string:
            result.append(char)
            escape_next = True
            i += 1
            continue

        if char == '"':
            in_string = not in_string
            result.append(char)
            i += 1
            continue

        if not in_string:
            if text[i:i+2] == '//':
                while i < len(text) and text[i] != '\n':
                    i += 1
                continue
            if text[i:i+2] == '/*':
                i += 2
                while i + 1 < len(text) and text[i:i+2] != '*/':
                    i += 1
                i += 2
                continue

        result.append(char)
        i += 1

    return ''.join(result)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def find_root(start: Path | str | None = None) -> Path:
    """Walk up from ``start`` to the directory that contains ``.qs``.

    Raises:
        NotInRepositoryError: if no ancestor holds a ``.qs`` directory.
    """
    current = Path(start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / QS_DIR).is_dir():
            return candidate
    raise NotInRepositoryError(
        f"Not inside a qs repository (no {QS_DIR} found in {current} or any parent). "
        "Run 'qs init' first."
    )


def qs_dir(root: Path) -> Path:
    return root / QS_DIR


def config_path(root: Path) -> Path:
    return qs_dir(root) / CONFIG_FILENAME


def manifest_path(root: Path) -> Path:
    return qs_dir(root) / MANIFEST_FILENAME


def shard_dir(root: Path) -> Path:
    return qs_dir(root) / SHARD_DIRNAME


def init_repository(root: Path) -> bool:
    """Create ``.qs`` with a default config. Returns False if it already existed."""
    target = qs_dir(root)
    if target.is_dir():
        return False
    shard_dir(root).mkdir(parents=True)
    with open(config_path(root), "w", encoding="utf-8") as f:
        json.dump(_DEFAULTS, f, indent=2)
        f.write("\n")
    return True


def load_config(root: Path | None = None, config_file: Path | None = None) -> dict[str, Any]:
    """Load configuration with defaults merged in.

    Args:
        root: Repository root; its ``.qs/config.json`` is used.
        config_file: Explicit config file, overrides ``root`` and ``QS_CONFIG``.

    Returns:
        Configuration dictionary. Missing files yield the defaults.
    """
    path = config_file
    if path is None and os.environ.get("QS_CONFIG"):
        path = Path(os.environ["QS_CONFIG"])
    if path is None and root is not None:
        path = config_path(root)
    if path is None:
        return copy.deepcopy(_DEFAULTS)

    path = Path(path).resolve()
    if not path.exists():
        return copy.deepcopy(_DEFAULTS)

    # Keyed on mtime so edits to the file are picked up
    stat = path.stat()
    cache_key = (path, stat.st_mtime_ns, stat.st_size)
    if cache_key in _config_cache:
        return _config_cache[cache_key]

    with open(path, "r", encoding="utf-8") as f:
        text = f.read()

    try:
        user_config = json.loads(_strip_jsonc_comments(text))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
    if not isinstance(user_config, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    result = _deep_merge(copy.deepcopy(_DEFAULTS), user_config)
    _config_cache[cache_key] = result
    return result


def reload_config() -> None:
    """Clear cached configurations so the next load reads from disk."""
    _config_cache.clear()


def get(config: dict[str, Any], key: str, default: Any = None) -> Any:
    """Get a config value by dot-notation key.

    Example:
        >>> get(load_config(), 'search.top_k')
        10
    """
    value: Any = config
    for k in key.split("."):
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return default
    return value


def _normalize_extensions(values: list[str]) -> list[str]:
    return sorted({v.lower().lstrip(".") for v in values if v and v.strip(".")})


@dataclass
class IndexSettings:
    """Validated view over the configuration used by the indexing pipeline."""

    model: str
    dimension: int
    chunk_size: int
    chunk_overlap: int
    max_file_size: int
    embed_batch_size: int = 32
    embed_timeout: float = 120.0
    include_extensions: list[str] = field(default_factory=list)
    exclude_extensions: list[str] = field(default_factory=list)
    ignore_paths: list[str] = field(default_factory=list)
    parallel_workers: int | None = None
    checkpoint_interval_files: int = 100
    trust_mtime: bool = False

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "IndexSettings":
        emb = config.get("embedding", {})
        idx = config.get("indexing", {})
        try:
            settings = cls(
                model=str(emb["model"]),
                dimension=int(emb["dimension"]),
                chunk_size=int(idx["chunk_size"]),
                chunk_overlap=int(idx["chunk_overlap"]),
                max_file_size=int(idx["max_file_size"]),
                embed_batch_size=int(emb.get("batch_size", 32)),
                embed_timeout=float(emb.get("timeout_seconds", 120)),
                include_extensions=_normalize_extensions(idx.get("include_extensions") or []),
                exclude_extensions=_normalize_extensions(idx.get("exclude_extensions") or []),
                ignore_paths=list(idx.get("ignore_paths") or []),
                parallel_workers=idx.get("parallel_workers"),
                checkpoint_interval_files=int(idx.get("checkpoint_interval_files", 100)),
                trust_mtime=bool(idx.get("trust_mtime", False)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        if settings.dimension <= 0:
            raise ConfigError("embedding.dimension must be positive")
        if settings.chunk_size <= 0:
            raise ConfigError("indexing.chunk_size must be positive")
        if not 0 <= settings.chunk_overlap < settings.chunk_size:
            raise ConfigError("indexing.chunk_overlap must be >= 0 and smaller than chunk_size")
        if settings.embed_batch_size <= 0:
            raise ConfigError("embedding.batch_size must be positive")
        if settings.checkpoint_interval_files <= 0:
            raise ConfigError("indexing.checkpoint_interval_files must be positive")
        return settings

    def config_snapshot(self) -> dict[str, Any]:
        """Settings whose change invalidates some or all persisted state."""
        return {
            "model": self.model,
            "dimension": self.dimension,
            "chunk_size": self.chunk_size,
            "chunk_overlap": self.chunk_overlap,
            "include_extensions": self.include_extensions,
            "exclude_extensions": self.exclude_extensions,
        }
