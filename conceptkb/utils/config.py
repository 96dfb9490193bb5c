"""Configuration management using Pydantic for validation."""

from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseSettings):
    """LLM configuration."""

    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4.1-nano"
    temperature: float = 0.1
    max_tokens: int = 2000
    timeout: int = 60
    retry_attempts: int = 3
    base_url: str | None = None

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Temperature must be between 0 and 1")
        return v


class ChunkingConfig(BaseSettings):
    """Content chunking configuration (sizes are in characters)."""

    max_chunk_size: int = 3000
    min_chunk_size: int = 500
    overlap_size: int = 100
    preserve_structure: bool = True
    target_concepts_per_chunk: int = 5
    keywords_per_chunk: int = 15


class SimilarityConfig(BaseSettings):
    """Similarity checking configuration."""

    batch_size: int = Field(default=3, ge=1, le=10)
    pacing_delay_seconds: float = 1.0
    index_sample_size: int = 20
    min_similarity: float = Field(default=0.3, ge=0.0, le=1.0)
    max_matches: int = 3
    retry_attempts: int = Field(default=2, ge=1)


class DuplicationConfig(BaseSettings):
    """Duplicate detection thresholds (0-1)."""

    name_threshold: float = Field(default=0.92, ge=0.0, le=1.0)
    description_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    min_description_length: int = 20


class OrchestratorConfig(BaseSettings):
    """End-to-end extraction run configuration."""

    chunk_delay_seconds: float = 1.5
    similarity_batch_size: int = Field(default=3, ge=1, le=10)
    max_similarity_rounds: int = 500


class MergeConfig(BaseSettings):
    """Concept merge validation configuration."""

    max_difficulty_spread: int = Field(default=2, ge=0, le=5)


class CleanupConfig(BaseSettings):
    """Extraction session retention policy (days)."""

    archived_retention_days: int = Field(default=30, ge=1, le=365)
    stale_after_days: int = Field(default=7, ge=1, le=30)
    archive_reviewed_after_days: int = Field(default=90, ge=1, le=365)


class IndexConfig(BaseSettings):
    """Concept index snapshot configuration."""

    cache_ttl_seconds: float = 300.0


class CurationConfig(BaseSettings):
    """Curation configuration."""

    enable_audit_trail: bool = True
    audit_path: str = "logs/curation_audit.jsonl"


class StorageConfig(BaseSettings):
    """Document store configuration."""

    backend: Literal["memory", "json"] = "json"
    data_dir: Path = Field(default=Path("data/store"))


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "text"] = "text"
    file: str | None = "logs/conceptkb.log"
    max_size_mb: int = 100
    backup_count: int = 5


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    # Configuration sections
    llm: LLMConfig = Field(default_factory=LLMConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)
    duplication: DuplicationConfig = Field(default_factory=DuplicationConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    curation: CurationConfig = Field(default_factory=CurationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Environment variables
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    prompts_path: Path = Field(default=Path("config/concept_prompts.yaml"))

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win).

        This is used to apply environment-derived overrides on top of YAML defaults.
        """
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If the YAML root is not a mapping
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        # Only values that differ from the model defaults count as overrides,
        # otherwise every default would clobber the YAML file.
        env_overrides = cls().model_dump(exclude_defaults=True)
        merged = cls._deep_merge_dict(yaml_config, env_overrides)

        return cls(**merged)

    def validate_config(self) -> None:
        """Validate cross-section settings.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.chunking.max_chunk_size <= self.chunking.min_chunk_size:
            raise ValueError("chunking.max_chunk_size must be greater than min_chunk_size")
        if self.llm.provider == "anthropic" and not self.anthropic_api_key:
            raise ValueError("Anthropic API key required when using anthropic provider")
        if self.storage.backend == "json":
            self.storage.data_dir.mkdir(parents=True, exist_ok=True)


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        Loaded and validated Config instance
    """
    config = Config.from_yaml(yaml_path)
    config.validate_config()
    return config
