"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "SCOPEMEM_"
DEFAULT_CONFIG_PATH = Path("~/.config/scope-memory/config.yaml")

ProviderName = Literal["openai", "gemini", "hashed"]

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "root_dir"): "root_dir",
    ("semantic", "enabled"): "semantic_enabled",
    ("semantic", "sync_interval_minutes"): "sync_interval_minutes",
    ("semantic", "similarity_threshold"): "similarity_threshold",
    ("semantic", "transcript_max_lines"): "transcript_max_lines",
    ("embeddings", "provider"): "embedding_provider",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dimensions"): "embedding_dimensions",
    ("embeddings", "fallback_provider"): "fallback_provider",
    ("embeddings", "batch_size"): "embed_batch_size",
    ("embeddings", "max_retries"): "embed_max_retries",
    ("embeddings", "backoff_ms"): "embed_backoff_ms",
    ("search", "vector_weight"): "vector_weight",
    ("search", "text_weight"): "text_weight",
    ("search", "rrf_k"): "rrf_k",
    ("search", "min_score"): "min_score",
    ("search", "recency_half_life_days"): "recency_half_life_days",
    ("search", "access_weight"): "access_weight",
}


class SearchConfig(BaseModel):
    """Fusion and ranking knobs for the search engine."""

    fusion_method: Literal["rrf"] = "rrf"
    vector_weight: float = 0.7
    text_weight: float = 0.3
    rrf_k: float = 60.0
    min_score: float = 0.005
    recency_half_life_days: float = 30.0
    access_weight: float = 0.1


class SemanticMemoryConfig(BaseModel):
    """Per-scope semantic memory configuration consumed by the facade."""

    enabled: bool = True
    embedding_provider: ProviderName = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = Field(default=1536, gt=0)
    fallback_provider: ProviderName | None = None
    embed_batch_size: int = Field(default=100, gt=0)
    embed_max_retries: int = Field(default=2, ge=0)
    embed_backoff_ms: int = Field(default=500, ge=0)
    similarity_threshold: float = 0.9
    transcript_max_lines: int = Field(default=200, gt=0)
    search: SearchConfig = Field(default_factory=SearchConfig)

    model_config = {"frozen": True}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    root_dir: Path = Field(default=Path.home() / ".scope-memory")
    semantic_enabled: bool = False
    embedding_provider: ProviderName = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    fallback_provider: ProviderName | None = None
    embed_batch_size: int = 100
    embed_max_retries: int = 2
    embed_backoff_ms: int = 500
    vector_weight: float = 0.7
    text_weight: float = 0.3
    rrf_k: float = 60.0
    min_score: float = 0.005
    recency_half_life_days: float = 30.0
    access_weight: float = 0.1
    similarity_threshold: float = 0.9
    transcript_max_lines: int = 200
    sync_interval_minutes: float = 15.0

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("root_dir", mode="before")
    @classmethod
    def _expand_root_dir(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("root_dir must be a path or string")

    def semantic_config(self) -> SemanticMemoryConfig:
        """Build the facade configuration from the flat settings."""
        return SemanticMemoryConfig(
            enabled=self.semantic_enabled,
            embedding_provider=self.embedding_provider,
            embedding_model=self.embedding_model,
            embedding_dimensions=self.embedding_dimensions,
            fallback_provider=self.fallback_provider,
            embed_batch_size=self.embed_batch_size,
            embed_max_retries=self.embed_max_retries,
            embed_backoff_ms=self.embed_backoff_ms,
            similarity_threshold=self.similarity_threshold,
            transcript_max_lines=self.transcript_max_lines,
            search=SearchConfig(
                vector_weight=self.vector_weight,
                text_weight=self.text_weight,
                rrf_k=self.rrf_k,
                min_score=self.min_score,
                recency_half_life_days=self.recency_half_life_days,
                access_weight=self.access_weight,
            ),
        )

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with SCOPEMEM_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor."""
    return Settings.from_yaml()


__all__ = ["SearchConfig", "SemanticMemoryConfig", "Settings", "get_settings"]
