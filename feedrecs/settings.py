from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, fields, replace

import yaml

from .errors import ConfigError

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or os.environ.get("LOGLEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    # --------------------
    # Embedding provider
    # --------------------
    embed_backend: str = "openai"          # "openai" or "local"
    embed_api_url: str = "https://api.openai.com/v1/embeddings"
    embed_api_key: str | None = None
    embed_model: str = "text-embedding-3-small"
    embed_timeout: float = 20.0
    d_high: int = 1536

    # --------------------
    # Reducer
    # --------------------
    d_low: int = 128
    reducer_min_samples: int = 50
    reducer_sample_caps: dict = field(default_factory=lambda: {"article": 3000, "video": 2000})
    reducer_path: str = "artifacts/reducer.joblib"

    # --------------------
    # Profiles
    # --------------------
    profile_window_days: int = 30
    profile_max_items: int = 30
    profile_max_age: float = 24 * 3600.0
    retention_days: int = 90
    retry_base_seconds: float = 300.0
    retry_max_seconds: float = 6 * 3600.0
    batch_size: int = 25
    inter_batch_delay: float = 1.0
    update_concurrency: int = 8            # embedding calls in flight for profile updates

    # --------------------
    # Index / ranking
    # --------------------
    min_similarity: float = 0.1
    trending_max_age_days: int = 7
    candidate_pool: int = 200
    w_similarity: float = 0.6
    w_engagement: float = 0.25
    w_recency: float = 0.15
    dislike_penalty: float = 0.85
    per_source_cap: int = 2
    shuffle_band: float = 0.05
    feed_limit: int = 20

    # --------------------
    # Cache / warming
    # --------------------
    redis_url: str | None = None
    feed_ttl: int = 1800
    global_ttl: int = 7200
    warm_interval: float = 15 * 60.0
    active_window: float = 24 * 3600.0
    warm_concurrency: int = 10

    # --------------------
    # Schedules (seconds)
    # --------------------
    rebuild_every: float = 3600.0
    recompute_every: float = 15 * 60.0
    warm_every: float = 30 * 60.0
    engagement_every: float = 3600.0
    prune_every: float = 24 * 3600.0

    corpus_path: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            embed_backend=os.getenv("EMBED_BACKEND", "openai").strip().lower(),
            embed_api_url=os.getenv("EMBED_API_URL", cls.embed_api_url),
            embed_api_key=os.getenv("OPENAI_API_KEY") or None,
            embed_model=os.getenv("EMBED_MODEL", cls.embed_model),
            embed_timeout=_env_float("EMBED_TIMEOUT", cls.embed_timeout),
            d_high=_env_int("D_HIGH", cls.d_high),
            d_low=_env_int("D_LOW", cls.d_low),
            reducer_min_samples=_env_int("REDUCER_MIN_SAMPLES", cls.reducer_min_samples),
            reducer_path=os.getenv("REDUCER_PATH", cls.reducer_path),
            profile_window_days=_env_int("PROFILE_WINDOW_DAYS", cls.profile_window_days),
            profile_max_items=_env_int("PROFILE_MAX_ITEMS", cls.profile_max_items),
            retention_days=_env_int("RETENTION_DAYS", cls.retention_days),
            batch_size=_env_int("PROFILE_BATCH_SIZE", cls.batch_size),
            inter_batch_delay=_env_float("PROFILE_BATCH_DELAY", cls.inter_batch_delay),
            update_concurrency=_env_int("PROFILE_UPDATE_CONCURRENCY", cls.update_concurrency),
            min_similarity=_env_float("MIN_SIMILARITY", cls.min_similarity),
            candidate_pool=_env_int("CANDIDATE_POOL", cls.candidate_pool),
            per_source_cap=_env_int("PER_SOURCE_CAP", cls.per_source_cap),
            shuffle_band=_env_float("SHUFFLE_BAND", cls.shuffle_band),
            feed_limit=_env_int("FEED_LIMIT_DEFAULT", cls.feed_limit),
            redis_url=os.getenv("REDIS_URL") or None,
            feed_ttl=_env_int("FEED_TTL", cls.feed_ttl),
            global_ttl=_env_int("GLOBAL_TTL", cls.global_ttl),
            corpus_path=os.getenv("CORPUS_PATH") or None,
        )

    def validate(self) -> "Settings":
        if self.embed_backend not in ("openai", "local"):
            raise ConfigError(f"unknown embed backend: {self.embed_backend}")
        if self.embed_backend == "openai" and not self.embed_api_key:
            raise ConfigError("OPENAI_API_KEY is required for the openai embedding backend")
        if not 0 < self.d_low <= self.d_high:
            raise ConfigError(f"d_low must be in 1..d_high, got d_low={self.d_low} d_high={self.d_high}")
        if self.per_source_cap < 1:
            raise ConfigError("per_source_cap must be >= 1")
        if self.batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if self.update_concurrency < 1:
            raise ConfigError("update_concurrency must be >= 1")
        if self.feed_limit < 1:
            raise ConfigError("feed_limit must be >= 1")
        return self


def load_settings(path: str | None = None, base: Settings | None = None) -> Settings:
    """Environment settings, optionally overlaid with a YAML file."""
    settings = base or Settings.from_env()
    if not path:
        return settings
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"unknown settings in {path}: {', '.join(unknown)}")
    return replace(settings, **raw)
