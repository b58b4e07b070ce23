"""Configuration for the Crucible fine-tuning pipeline.

All tunables live on :class:`PipelineConfig` and are passed explicitly
into the components that need them. :meth:`PipelineConfig.from_env`
builds a config from environment variables and refuses to proceed
when the provider credential or database location is unusable.
"""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are an AI assistant that helps create invoices from natural language descriptions."
)

_PROVIDERS = ("openai", "mock")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass
class PipelineConfig:
    """Settings for one Crucible deployment.

    Attributes:
        provider: Provider backend name ('openai' or 'mock').
        api_key: Provider credential. Required for 'openai'.
        db_path: SQLite database file, or ':memory:'.
        min_batch_size: Unconsumed examples needed before a batch is submitted.
        base_model: Model the provider fine-tunes.
        suffix_prefix: Prefix of the per-submission model suffix.
        n_epochs: Optional epoch count sent as a hyperparameter.
        train_ratio: Fraction of a batch assigned to training.
        split_seed: Optional seed for a reproducible shuffle.
        system_instruction: System turn written into every training record.
        claim_ttl_seconds: Age after which an unfinished batch claim is abandoned.
        poll_workers: Thread pool size for status polling.
        cleanup_orphaned_files: Delete uploaded files when a submission aborts.
    """

    provider: str = "openai"
    api_key: str | None = None
    db_path: str = "data/crucible/crucible.db"
    min_batch_size: int = 50
    base_model: str = "gpt-3.5-turbo"
    suffix_prefix: str = "invoice-generator"
    n_epochs: int | None = None
    train_ratio: float = 0.8
    split_seed: int | None = None
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    claim_ttl_seconds: int = 3600
    poll_workers: int = 4
    cleanup_orphaned_files: bool = True

    def validate(self) -> None:
        """Check the configuration before any pipeline step runs.

        Raises:
            ConfigurationError: If any value is missing or out of range.
        """
        if self.provider not in _PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider '{self.provider}'. Expected one of: {', '.join(_PROVIDERS)}"
            )
        if self.provider == "openai" and not self.api_key:
            raise ConfigurationError("OPENAI_API_KEY environment variable not set")
        if not self.db_path:
            raise ConfigurationError("Database path must not be empty")
        if self.min_batch_size < 1:
            raise ConfigurationError("min_batch_size must be at least 1")
        if not 0.0 < self.train_ratio <= 1.0:
            raise ConfigurationError("train_ratio must be in (0, 1]")
        if math.floor(round(self.train_ratio * self.min_batch_size, 9)) < 1:
            raise ConfigurationError(
                f"train_ratio {self.train_ratio} leaves no training examples "
                f"in a batch of {self.min_batch_size}"
            )
        if self.n_epochs is not None and self.n_epochs < 1:
            raise ConfigurationError("n_epochs must be at least 1")
        if self.claim_ttl_seconds < 1:
            raise ConfigurationError("claim_ttl_seconds must be at least 1")
        if self.poll_workers < 1:
            raise ConfigurationError("poll_workers must be at least 1")
        if not self.base_model:
            raise ConfigurationError("base_model must not be empty")

    def ensure_db_dir(self) -> Path | None:
        """Create the database's parent directory if needed.

        Returns:
            The directory, or None for an in-memory database.

        Raises:
            ConfigurationError: If the directory cannot be created.
        """
        if self.db_path == ":memory:":
            return None
        parent = Path(self.db_path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"Cannot create database directory {parent}: {exc}") from exc
        return parent

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary, omitting the credential."""
        return {
            "provider": self.provider,
            "api_key_set": bool(self.api_key),
            "db_path": self.db_path,
            "min_batch_size": self.min_batch_size,
            "base_model": self.base_model,
            "suffix_prefix": self.suffix_prefix,
            "n_epochs": self.n_epochs,
            "train_ratio": self.train_ratio,
            "split_seed": self.split_seed,
            "claim_ttl_seconds": self.claim_ttl_seconds,
            "poll_workers": self.poll_workers,
            "cleanup_orphaned_files": self.cleanup_orphaned_files,
        }

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PipelineConfig:
        """Build and validate a config from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Returns:
            A validated PipelineConfig.

        Raises:
            ConfigurationError: If a value is missing or malformed.
        """
        env = os.environ if environ is None else environ
        config = cls(
            provider=env.get("CRUCIBLE_PROVIDER", "openai").strip().lower(),
            api_key=env.get("OPENAI_API_KEY") or None,
            db_path=env.get("CRUCIBLE_DB_PATH", cls.db_path),
            min_batch_size=_int_env(env, "CRUCIBLE_MIN_BATCH_SIZE", cls.min_batch_size),
            base_model=env.get("CRUCIBLE_BASE_MODEL", cls.base_model),
            suffix_prefix=env.get("CRUCIBLE_SUFFIX_PREFIX", cls.suffix_prefix),
            n_epochs=_optional_int_env(env, "CRUCIBLE_N_EPOCHS"),
            train_ratio=_float_env(env, "CRUCIBLE_TRAIN_RATIO", cls.train_ratio),
            split_seed=_optional_int_env(env, "CRUCIBLE_SPLIT_SEED"),
            system_instruction=env.get("CRUCIBLE_SYSTEM_INSTRUCTION", DEFAULT_SYSTEM_INSTRUCTION),
            claim_ttl_seconds=_int_env(env, "CRUCIBLE_CLAIM_TTL_SECONDS", cls.claim_ttl_seconds),
            poll_workers=_int_env(env, "CRUCIBLE_POLL_WORKERS", cls.poll_workers),
            cleanup_orphaned_files=_bool_env(
                env, "CRUCIBLE_CLEANUP_ORPHANED_FILES", cls.cleanup_orphaned_files
            ),
        )
        config.validate()
        return config


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    """Read an integer variable, falling back to *default* when unset."""
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _optional_int_env(env: Mapping[str, str], name: str) -> int | None:
    """Read an integer variable that may be left unset."""
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    return _int_env(env, name, 0)


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    """Read a float variable, falling back to *default* when unset."""
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    """Read a boolean variable such as 'true' or '0'."""
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")
