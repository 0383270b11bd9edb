"""
RagMem Config -- environment-driven settings.

All knobs are read from ``RAGMEM_*`` environment variables once, at service
start, into an immutable ``Config``. Nothing else in the package reads the
environment for behaviour, except ``RAGMEM_SKIP_EMBEDDINGS`` which the
embedding service also honours directly (tests flip it per-case).
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from ragmem.errors import ValidationError

logger = logging.getLogger("ragmem.config")

SUPPORTED_DB_TYPES = ("sqlite", "postgresql")

DEFAULT_DATABASE = "ragmem"
DEFAULT_MAX_TOKENS = 200
DEFAULT_OVERLAP = 20
DEFAULT_GRAPH_DECAY = 0.7
DEFAULT_NEIGHBOR_CAP = 10


def _int(env: Mapping[str, str], key: str, default: int, min_val: int = 0) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{key} must be an integer, got {raw!r}")
    if value < min_val:
        raise ValidationError(f"{key} must be >= {min_val}, got {value}")
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{key} must be a number, got {raw!r}")


def _flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key, "").strip().lower()
    if not raw:
        return default
    return raw not in ("0", "false", "no", "off")


@dataclass(frozen=True)
class PostgresSettings:
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    sslmode: str = "prefer"

    def conninfo(self, dbname: str) -> str:
        """libpq keyword/value connection string for ``dbname``."""
        from psycopg.conninfo import make_conninfo

        return make_conninfo(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password or None,
            dbname=dbname,
            sslmode=self.sslmode,
        )


@dataclass(frozen=True)
class Config:
    home: Path
    db_type: str = "sqlite"
    database: str = DEFAULT_DATABASE
    postgres: PostgresSettings = field(default_factory=PostgresSettings)
    sqlite_busy_timeout_ms: int = 5000
    sqlite_wal: bool = True
    chunk_max_tokens: int = DEFAULT_MAX_TOKENS
    chunk_overlap: int = DEFAULT_OVERLAP
    graph_decay: float = DEFAULT_GRAPH_DECAY
    graph_neighbor_cap: int = DEFAULT_NEIGHBOR_CAP
    embed_batch_size: int = 32
    ready_timeout: float = 120.0
    health_interval: float = 30.0
    skip_embeddings: bool = False
    onnx_model_dir: Optional[str] = None
    log_level: str = "WARNING"
    rate_limit_global: int = 300
    rate_limit_write: int = 60
    idle_timeout: int = 3600

    @property
    def sqlite_dir(self) -> Path:
        return self.home / "databases"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if env is None else env

        home = Path(env.get("RAGMEM_HOME", str(Path.home() / ".ragmem"))).expanduser()

        db_type = env.get("RAGMEM_DB_TYPE", "sqlite").strip().lower() or "sqlite"
        if db_type == "postgres":
            db_type = "postgresql"
        if db_type not in SUPPORTED_DB_TYPES:
            logger.warning("Unknown RAGMEM_DB_TYPE %r, falling back to sqlite", db_type)
            db_type = "sqlite"

        decay = _float(env, "RAGMEM_GRAPH_DECAY", DEFAULT_GRAPH_DECAY)
        if not 0.0 < decay < 1.0:
            raise ValidationError(f"RAGMEM_GRAPH_DECAY must be in (0, 1), got {decay}")

        max_tokens = _int(env, "RAGMEM_CHUNK_MAX_TOKENS", DEFAULT_MAX_TOKENS, min_val=1)
        overlap = _int(env, "RAGMEM_CHUNK_OVERLAP", DEFAULT_OVERLAP)
        if overlap >= max_tokens:
            raise ValidationError(
                f"RAGMEM_CHUNK_OVERLAP ({overlap}) must be smaller than RAGMEM_CHUNK_MAX_TOKENS ({max_tokens})"
            )

        return cls(
            home=home,
            db_type=db_type,
            database=env.get("RAGMEM_DATABASE", DEFAULT_DATABASE).strip() or DEFAULT_DATABASE,
            postgres=PostgresSettings(
                host=env.get("RAGMEM_PG_HOST", "localhost"),
                port=_int(env, "RAGMEM_PG_PORT", 5432, min_val=1),
                user=env.get("RAGMEM_PG_USER", "postgres"),
                password=env.get("RAGMEM_PG_PASSWORD", ""),
                sslmode=env.get("RAGMEM_PG_SSLMODE", "prefer"),
            ),
            sqlite_busy_timeout_ms=_int(env, "RAGMEM_SQLITE_BUSY_TIMEOUT_MS", 5000),
            sqlite_wal=_flag(env, "RAGMEM_SQLITE_WAL", True),
            chunk_max_tokens=max_tokens,
            chunk_overlap=overlap,
            graph_decay=decay,
            graph_neighbor_cap=_int(env, "RAGMEM_GRAPH_NEIGHBOR_CAP", DEFAULT_NEIGHBOR_CAP, min_val=1),
            embed_batch_size=_int(env, "RAGMEM_EMBED_BATCH_SIZE", 32, min_val=1),
            ready_timeout=_float(env, "RAGMEM_READY_TIMEOUT", 120.0),
            health_interval=_float(env, "RAGMEM_HEALTH_INTERVAL", 30.0),
            skip_embeddings=env.get("RAGMEM_SKIP_EMBEDDINGS") == "1",
            onnx_model_dir=env.get("RAGMEM_ONNX_MODEL_DIR") or None,
            log_level=env.get("RAGMEM_LOG_LEVEL", "WARNING").upper(),
            rate_limit_global=_int(env, "RAGMEM_RATE_LIMIT_GLOBAL", 300, min_val=1),
            rate_limit_write=_int(env, "RAGMEM_RATE_LIMIT_WRITE", 60, min_val=1),
            idle_timeout=_int(env, "RAGMEM_IDLE_TIMEOUT", 3600),
        )
