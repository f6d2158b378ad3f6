"""
Runtime configuration for the tracker, analyzer and store.

Defaults live as module constants; every setting can be overridden from an
EXPERIMENTS_* environment variable (e.g. EXPERIMENTS_FLUSH_SIZE=50).
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = ":memory:"

FLUSH_SIZE = 100
FLUSH_INTERVAL_SECONDS = 5.0
MAX_BATCH_SIZE = 100
MAX_BUFFER_SIZE = 10000
RETRY_BACKOFF_BASE_SECONDS = 0.5
RETRY_BACKOFF_MAX_SECONDS = 30.0

MINIMUM_SAMPLE_SIZE = 100
CONFIDENCE_LEVEL = 0.95
MONTE_CARLO_SAMPLES = 10000
LAUNCH_PROBABILITY = 0.95
DISAGREEMENT_PROBABILITY = 0.8


class StoreConfig(BaseSettings):
    """SQLite file used by the reference store (EXPERIMENTS_DB)."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    db_path: str = Field(default=DEFAULT_DB_PATH, validation_alias="EXPERIMENTS_DB")


def db_path_from_env() -> str:
    return StoreConfig().db_path


class TrackerConfig(BaseSettings):
    """Buffering and flush policy for the metrics tracker."""

    model_config = SettingsConfigDict(env_prefix="EXPERIMENTS_", extra="ignore")

    flush_size: int = Field(default=FLUSH_SIZE, gt=0)
    flush_interval: float = Field(default=FLUSH_INTERVAL_SECONDS, gt=0)  # seconds
    max_batch_size: int = Field(default=MAX_BATCH_SIZE, gt=0)
    max_buffer_size: int = Field(default=MAX_BUFFER_SIZE, gt=0)
    retry_backoff_base: float = Field(default=RETRY_BACKOFF_BASE_SECONDS, gt=0)
    retry_backoff_max: float = Field(default=RETRY_BACKOFF_MAX_SECONDS, gt=0)

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        return cls()


class AnalyzerConfig(BaseSettings):
    """Defaults for statistical analysis and the decision thresholds."""

    model_config = SettingsConfigDict(env_prefix="EXPERIMENTS_", extra="ignore")

    minimum_sample_size: int = Field(default=MINIMUM_SAMPLE_SIZE, ge=1)
    confidence_level: float = Field(default=CONFIDENCE_LEVEL, gt=0, lt=1)
    monte_carlo_samples: int = Field(default=MONTE_CARLO_SAMPLES, gt=0)
    prior_alpha: float = Field(default=1.0, gt=0)
    prior_beta: float = Field(default=1.0, gt=0)
    launch_probability: float = Field(default=LAUNCH_PROBABILITY, ge=0, le=1)
    disagreement_probability: float = Field(default=DISAGREEMENT_PROBABILITY, ge=0, le=1)

    @classmethod
    def from_env(cls) -> "AnalyzerConfig":
        return cls()
