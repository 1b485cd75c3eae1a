"""
Configuration for the localqa engine.

Each component has a dataclass config with defaults and a from_env()
constructor. AppConfig aggregates them and can also be loaded from a YAML
file, with environment variables applied on top.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigError


logger = logging.getLogger(__name__)

_DOTENV_LOADED = False


def _load_dotenv_if_present() -> None:
    """
    Load .env into process env for local runs.

    Existing shell environment variables take precedence.
    """
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return
    load_dotenv(override=False)
    _DOTENV_LOADED = True


def _env_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}")


def _env_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {value!r}")


def _env_str(key: str, default: str) -> str:
    value = os.environ.get(key)
    if value is None or value.strip() == "":
        return default
    return value


def default_data_dir() -> Path:
    """Per-user data directory for the store (LOCALQA_DATA_DIR overrides)."""
    override = os.environ.get("LOCALQA_DATA_DIR")
    if override:
        return Path(override)
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "localqa"


@dataclass
class RuntimeConfig:
    """
    Configuration for the supervised inference runtime.

    Attributes:
        host: Loopback host the daemon binds
        port: Daemon port
        model: Default generation model
        embed_model: Embedding model
        executable: Daemon executable name or path
        health_timeout_seconds: Timeout for a single liveness check
        startup_poll_attempts: Liveness checks after launch before giving up
        startup_poll_interval_seconds: Fixed pause between startup checks
        health_check_interval_seconds: Period of the background health check
        request_timeout_seconds: Timeout for generation requests
        termination_grace_seconds: Wait after SIGTERM before SIGKILL
        installer_min_bytes: Smallest plausible installer artifact
        installer_max_bytes: Largest plausible installer artifact
        installer_download_attempts: Download attempts before giving up
        max_stream_parse_errors: Consecutive malformed pull lines tolerated
    """
    host: str = "127.0.0.1"
    port: int = 11434
    model: str = "phi3:mini"
    embed_model: str = "nomic-embed-text"
    executable: str = "ollama"
    health_timeout_seconds: float = 2.0
    startup_poll_attempts: int = 10
    startup_poll_interval_seconds: float = 1.0
    health_check_interval_seconds: float = 15.0
    request_timeout_seconds: float = 60.0
    termination_grace_seconds: float = 5.0
    installer_min_bytes: int = 1024 * 1024
    installer_max_bytes: int = 500 * 1024 * 1024
    installer_download_attempts: int = 3
    max_stream_parse_errors: int = 10

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def validate(self) -> None:
        if self.startup_poll_attempts < 1:
            raise ConfigError("startup_poll_attempts must be at least 1")
        if self.health_timeout_seconds <= 0:
            raise ConfigError("health_timeout_seconds must be positive")
        if self.installer_min_bytes <= 0 or self.installer_max_bytes < self.installer_min_bytes:
            raise ConfigError("installer size bounds are inconsistent")

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        """Create config from environment variables."""
        _load_dotenv_if_present()
        defaults = cls()
        return cls(
            host=_env_str("OLLAMA_HOST_ADDR", defaults.host),
            port=_env_int("OLLAMA_PORT", defaults.port),
            model=_env_str("OLLAMA_MODEL", defaults.model),
            embed_model=_env_str("OLLAMA_EMBED_MODEL", defaults.embed_model),
            executable=_env_str("OLLAMA_EXECUTABLE", defaults.executable),
            health_timeout_seconds=_env_float("RUNTIME_HEALTH_TIMEOUT", defaults.health_timeout_seconds),
            startup_poll_attempts=_env_int("RUNTIME_STARTUP_ATTEMPTS", defaults.startup_poll_attempts),
            startup_poll_interval_seconds=_env_float(
                "RUNTIME_STARTUP_INTERVAL", defaults.startup_poll_interval_seconds
            ),
            health_check_interval_seconds=_env_float(
                "RUNTIME_HEALTH_INTERVAL", defaults.health_check_interval_seconds
            ),
            request_timeout_seconds=_env_float("RUNTIME_REQUEST_TIMEOUT", defaults.request_timeout_seconds),
        )


@dataclass
class ChunkingConfig:
    """
    Chunking policy. Sizes are counted in whitespace-delimited words.

    Attributes:
        chunk_size: Target words per chunk
        overlap: Words shared by consecutive chunks
        max_chunk_chars: Hard upper bound on chunk text length
        boundary_tolerance: Fraction of chunk_size at the window's end in
            which a paragraph break may end the chunk early
        max_chunks_per_document: Chunks kept per document
        min_chunk_chars: Shorter chunks are dropped (unless the only one)
        version: Policy version, part of every chunk ID
    """
    chunk_size: int = 300
    overlap: int = 50
    max_chunk_chars: int = 2048
    boundary_tolerance: float = 0.25
    max_chunks_per_document: int = 500
    min_chunk_chars: int = 1
    version: str = "1.0"

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ConfigError("chunk_size must be positive")
        if self.overlap < 0:
            raise ConfigError("overlap must be non-negative")
        if self.overlap >= self.chunk_size:
            raise ConfigError("overlap must be less than chunk_size")
        if self.max_chunk_chars <= 0:
            raise ConfigError("max_chunk_chars must be positive")
        if not 0 <= self.boundary_tolerance < 1:
            raise ConfigError("boundary_tolerance must be in [0, 1)")
        if self.max_chunks_per_document <= 0:
            raise ConfigError("max_chunks_per_document must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_env(cls) -> "ChunkingConfig":
        """Create config from environment variables."""
        _load_dotenv_if_present()
        defaults = cls()
        return cls(
            chunk_size=_env_int("INDEX_CHUNK_SIZE", defaults.chunk_size),
            overlap=_env_int("INDEX_CHUNK_OVERLAP", defaults.overlap),
            max_chunk_chars=_env_int("INDEX_MAX_CHUNK_CHARS", defaults.max_chunk_chars),
            max_chunks_per_document=_env_int(
                "INDEX_MAX_CHUNKS_PER_DOCUMENT", defaults.max_chunks_per_document
            ),
        )


@dataclass
class EmbeddingConfig:
    """Embedding settings: output dimension, batch size and call timeout."""
    dimension: int = 768
    batch_size: int = 10
    timeout_seconds: float = 30.0

    def validate(self) -> None:
        if self.dimension <= 0:
            raise ConfigError("dimension must be positive")
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be positive")

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        """Create config from environment variables."""
        _load_dotenv_if_present()
        defaults = cls()
        return cls(
            dimension=_env_int("EMBED_DIMENSION", defaults.dimension),
            batch_size=_env_int("EMBED_BATCH_SIZE", defaults.batch_size),
            timeout_seconds=_env_float("EMBED_TIMEOUT", defaults.timeout_seconds),
        )


@dataclass
class StoreConfig:
    """
    Chunk store settings.

    Attributes:
        path: SQLite database file
        retry_attempts: Attempts per operation under lock contention
        retry_base_delay_ms: First backoff delay
        retry_max_delay_ms: Backoff ceiling
        scan_page_size: Rows fetched per page by scan_all()
    """
    path: Path = field(default_factory=lambda: default_data_dir() / "localqa.db")
    retry_attempts: int = 5
    retry_base_delay_ms: float = 100.0
    retry_max_delay_ms: float = 2000.0
    scan_page_size: int = 256

    def validate(self) -> None:
        if self.retry_attempts < 1:
            raise ConfigError("retry_attempts must be at least 1")
        if self.scan_page_size < 1:
            raise ConfigError("scan_page_size must be at least 1")

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Create config from environment variables."""
        _load_dotenv_if_present()
        defaults = cls()
        path = os.environ.get("LOCALQA_STORE_PATH")
        return cls(
            path=Path(path) if path else defaults.path,
            retry_attempts=_env_int("STORE_RETRY_ATTEMPTS", defaults.retry_attempts),
            retry_base_delay_ms=_env_float("STORE_RETRY_BASE_MS", defaults.retry_base_delay_ms),
        )


@dataclass
class RetrievalConfig:
    """
    Hybrid retrieval settings.

    Attributes:
        semantic_weight: Weight of the normalised semantic score
        lexical_weight: Weight of the normalised lexical score
        per_document_cap: Most chunks one document may contribute
        candidate_multiplier: Each method returns limit * multiplier candidates
        default_limit: Results returned when the caller gives no limit
    """
    semantic_weight: float = 0.5
    lexical_weight: float = 0.5
    per_document_cap: int = 2
    candidate_multiplier: int = 2
    default_limit: int = 5

    def validate(self) -> None:
        if self.semantic_weight < 0 or self.lexical_weight < 0:
            raise ConfigError("fusion weights must be non-negative")
        if self.semantic_weight + self.lexical_weight == 0:
            raise ConfigError("at least one fusion weight must be positive")
        if self.per_document_cap < 1:
            raise ConfigError("per_document_cap must be at least 1")
        if self.candidate_multiplier < 1:
            raise ConfigError("candidate_multiplier must be at least 1")

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        """Create config from environment variables."""
        _load_dotenv_if_present()
        defaults = cls()
        return cls(
            semantic_weight=_env_float("RETRIEVAL_SEMANTIC_WEIGHT", defaults.semantic_weight),
            lexical_weight=_env_float("RETRIEVAL_LEXICAL_WEIGHT", defaults.lexical_weight),
            per_document_cap=_env_int("RETRIEVAL_PER_DOCUMENT_CAP", defaults.per_document_cap),
            default_limit=_env_int("RETRIEVAL_DEFAULT_LIMIT", defaults.default_limit),
        )


_SECTIONS = {
    "runtime": RuntimeConfig,
    "chunking": ChunkingConfig,
    "embedding": EmbeddingConfig,
    "store": StoreConfig,
    "retrieval": RetrievalConfig,
}


@dataclass
class AppConfig:
    """Aggregate configuration for the whole engine."""
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    def validate(self) -> None:
        """Validate every section, raising ConfigError on the first problem."""
        for name in _SECTIONS:
            getattr(self, name).validate()

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key, e.g. "retrieval.per_document_cap"."""
        value: Any = self
        for part in key.split("."):
            if not hasattr(value, part):
                return default
            value = getattr(value, part)
        return value if value is not None else default

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["store"]["path"] = str(self.store.path)
        return data

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create config from environment variables."""
        config = cls(
            runtime=RuntimeConfig.from_env(),
            chunking=ChunkingConfig.from_env(),
            embedding=EmbeddingConfig.from_env(),
            store=StoreConfig.from_env(),
            retrieval=RetrievalConfig.from_env(),
        )
        config.validate()
        return config

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "AppConfig":
        """
        Load configuration from an optional YAML file plus environment.

        Values from the file replace defaults; environment variables that are
        set replace file values.

        Args:
            config_path: Path to a YAML file with optional sections
                runtime, chunking, embedding, store, retrieval

        Returns:
            Validated AppConfig

        Raises:
            ConfigError: If the file is missing, malformed or out of range
        """
        if config_path is None:
            return cls.from_env()

        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}")

        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")

        env_config = cls.from_env()
        sections = {}
        for name, section_cls in _SECTIONS.items():
            values = raw.get(name) or {}
            if not isinstance(values, dict):
                raise ConfigError(f"Section '{name}' must be a mapping")
            unknown = set(values) - set(section_cls.__dataclass_fields__)
            if unknown:
                raise ConfigError(f"Unknown keys in section '{name}': {sorted(unknown)}")
            if name == "store" and "path" in values:
                values = dict(values, path=Path(values["path"]))
            base = section_cls(**values)
            sections[name] = _overlay_env(base, getattr(env_config, name), section_cls())

        config = cls(**sections)
        config.validate()
        return config


def _overlay_env(file_value: Any, env_value: Any, default_value: Any) -> Any:
    """Keep file values unless the environment changed a field from its default."""
    merged = {}
    for name in file_value.__dataclass_fields__:
        env_field = getattr(env_value, name)
        if env_field != getattr(default_value, name):
            merged[name] = env_field
        else:
            merged[name] = getattr(file_value, name)
    return type(file_value)(**merged)
