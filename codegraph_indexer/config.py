"""Configuration for the CodeGraph indexer.

Settings come from ``~/.codegraph/config.toml`` (or ``$CODEGRAPH_HOME``)::

    [indexer]
    write_concurrency = 4
    debounce_seconds = 2.0
    relink_dependents = false

    [[providers]]
    name = "glm-4.7"
    kind = "anthropic"
    limit = 3

    [embeddings]
    model = "hash"

Anything missing falls back to the defaults below.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

logger = logging.getLogger(__name__)

BASE_DIR = Path(os.environ.get("CODEGRAPH_HOME", str(Path.home() / ".codegraph"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"
DEFAULT_DB_NAME = "graph.sqlite3"
DEFAULT_EMBEDDING_DIM = 256

# Anthropic-compatible endpoint and model pool used when nothing is configured.
DEFAULT_ENDPOINT = "https://api.z.ai/api/anthropic/v1/messages"
DEFAULT_PROVIDERS = (
    ("glm-4.7", 3),
    ("glm-4.6", 3),
    ("glm-4.5-air", 5),
    ("glm-4.5", 5),
)


@dataclass
class ProviderConfig:
    name: str
    limit: int = 1
    kind: str = "anthropic"
    model: Optional[str] = None
    endpoint: Optional[str] = None
    api_key: str = ""

    @property
    def model_name(self) -> str:
        return self.model or self.name


@dataclass
class IndexerConfig:
    home: Path = BASE_DIR
    db_path: Optional[Path] = None
    write_concurrency: int = 4
    debounce_seconds: float = 2.0
    relink_dependents: bool = False
    job_history: int = 100
    enrich: bool = True
    max_retries: int = 3
    backoff_unit: float = 1.0
    max_tokens: int = 150
    max_source_chars: int = 2000
    embedding_model: str = "hash"
    embedding_dim: int = DEFAULT_EMBEDDING_DIM
    embedding_endpoint: Optional[str] = None
    providers: List[ProviderConfig] = field(default_factory=list)

    @property
    def database(self) -> Path:
        return self.db_path or (self.home / DEFAULT_DB_NAME)

    @property
    def vector_dir(self) -> Path:
        return self.home / "lancedb"


def default_providers(api_key: str) -> List[ProviderConfig]:
    return [
        ProviderConfig(name=name, limit=limit, kind="anthropic",
                       endpoint=DEFAULT_ENDPOINT, api_key=api_key)
        for name, limit in DEFAULT_PROVIDERS
    ]


def _read_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}


def load_config(path: Optional[Path] = None, home: Optional[Path] = None) -> IndexerConfig:
    """Build an :class:`IndexerConfig` from the TOML file and environment.

    ``home`` defaults to ``$CODEGRAPH_HOME`` as seen at call time so tests and
    the CLI can point the indexer at a scratch directory.
    """
    if home is None:
        home = Path(os.environ.get("CODEGRAPH_HOME", str(BASE_DIR))).expanduser()
    raw = _read_toml(path or home / "config.toml")
    section = raw.get("indexer", {})
    emb = raw.get("embeddings", {})

    api_key = os.environ.get("CODEGRAPH_API_KEY", section.get("api_key", ""))
    cfg = IndexerConfig(home=home)
    for key in ("write_concurrency", "debounce_seconds", "relink_dependents",
                "job_history", "enrich", "max_retries", "backoff_unit",
                "max_tokens", "max_source_chars"):
        if key in section:
            setattr(cfg, key, type(getattr(cfg, key))(section[key]))
    if section.get("db_path"):
        cfg.db_path = Path(section["db_path"]).expanduser()

    cfg.embedding_model = emb.get("model", cfg.embedding_model)
    cfg.embedding_dim = int(emb.get("dim", cfg.embedding_dim))
    cfg.embedding_endpoint = emb.get("endpoint")

    providers = raw.get("providers")
    if providers:
        cfg.providers = [
            ProviderConfig(
                name=p["name"],
                limit=int(p.get("limit", 1)),
                kind=p.get("kind", "anthropic"),
                model=p.get("model"),
                endpoint=p.get("endpoint"),
                api_key=p.get("api_key", api_key),
            )
            for p in providers
        ]
    elif api_key:
        cfg.providers = default_providers(api_key)
    return cfg


def save_config(cfg: IndexerConfig, path: Optional[Path] = None) -> Path:
    """Write the tunable parts of *cfg* back to TOML."""
    target = path or cfg.home / "config.toml"
    target.parent.mkdir(parents=True, exist_ok=True)
    payload: Dict[str, Any] = {
        "indexer": {
            "write_concurrency": cfg.write_concurrency,
            "debounce_seconds": cfg.debounce_seconds,
            "relink_dependents": cfg.relink_dependents,
            "job_history": cfg.job_history,
            "enrich": cfg.enrich,
            "max_retries": cfg.max_retries,
        },
        "embeddings": {"model": cfg.embedding_model, "dim": cfg.embedding_dim},
        "providers": [
            {"name": p.name, "limit": p.limit, "kind": p.kind,
             **({"model": p.model} if p.model else {}),
             **({"endpoint": p.endpoint} if p.endpoint else {})}
            for p in cfg.providers
        ],
    }
    if cfg.embedding_endpoint:
        payload["embeddings"]["endpoint"] = cfg.embedding_endpoint
    with open(target, "w", encoding="utf-8") as f:
        toml.dump(payload, f)
    return target


def ensure_base_dirs(cfg: IndexerConfig) -> None:
    """Create the home directory for local storage if needed."""
    cfg.home.mkdir(parents=True, exist_ok=True)
    cfg.database.parent.mkdir(parents=True, exist_ok=True)
