# src/hubflow/core/config.py
"""
Runtime configuration schema and loading.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Pipeline *definitions* are not settings: they are loaded with
load_definition() and validated by the compiler.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from hubflow.contracts.definition import PipelineDefinition


class LoggingSettings(BaseModel):
    """Log output configuration."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = Field(default=False, description="Emit JSON lines instead of console output")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class ExecutionSettings(BaseModel):
    """Run-level execution limits."""

    model_config = {"frozen": True}

    max_parallel_steps: int = Field(default=4, gt=0, description="Steps of one stage executed concurrently")
    run_workers: int = Field(default=4, gt=0, description="Runs executed concurrently by the service")
    default_retry_delay_ms: int = Field(default=1000, ge=0, description="Step retry delay when retryDelayMs is unset")
    cancel_poll_interval_ms: int = Field(default=50, gt=0)
    run_retention_seconds: float = Field(
        default=86_400.0,
        ge=0,
        description="How long finished runs stay queryable through the service; queue stats count them for completedToday",
    )


class ThroughputSettings(BaseModel):
    """Drain strategy tuning shared by all steps."""

    model_config = {"frozen": True}

    backoff_base_ms: int = Field(default=250, gt=0, description="First BACKOFF delay after the threshold is crossed")
    backoff_max_ms: int = Field(default=30_000, gt=0, description="Ceiling for BACKOFF delays")
    backoff_multiplier: float = Field(default=2.0, gt=1.0)
    queue_max_chunks: int = Field(default=1000, gt=0, description="Chunks a QUEUE-draining step may buffer")


class DeadLetterSettings(BaseModel):
    """Record error store configuration."""

    model_config = {"frozen": True}

    url: str = Field(default="sqlite://", description="SQLAlchemy database URL for record errors and retry audits")
    mask_fields: tuple[str, ...] = Field(
        default=(),
        description="Payload fields replaced with '***' when record errors are listed",
    )


class DryRunSettings(BaseModel):
    model_config = {"frozen": True}

    sample_size: int = Field(default=10, gt=0, description="Maximum records carried through a dry run")
    max_samples_per_step: int = Field(default=3, gt=0)


class ConsumerSettings(BaseModel):
    """Streaming consumer configuration."""

    model_config = {"frozen": True}

    poll_interval_seconds: float = Field(default=0.1, gt=0)
    max_batch: int = Field(default=100, gt=0, description="Messages drained into one run")
    stop_timeout_seconds: float = Field(default=30.0, gt=0)


class RuntimeSettings(BaseModel):
    """Top-level runtime settings.

    Example YAML:
        logging:
          level: DEBUG
          json_output: true
        execution:
          max_parallel_steps: 8
        dead_letter:
          url: sqlite:///./state/dead_letters.db
    """

    model_config = {"frozen": True}

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    throughput: ThroughputSettings = Field(default_factory=ThroughputSettings)
    dead_letter: DeadLetterSettings = Field(default_factory=DeadLetterSettings)
    dry_run: DryRunSettings = Field(default_factory=DryRunSettings)
    consumer: ConsumerSettings = Field(default_factory=ConsumerSettings)


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def load_settings(config_path: Path | None = None) -> RuntimeSettings:
    """Load settings from a YAML file with environment variable overrides.

    Precedence:
    1. Environment variables (HUBFLOW_*) - highest priority
    2. Config file
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: HUBFLOW_DEAD_LETTER__URL for nested keys.

    Args:
        config_path: Optional path to a YAML configuration file

    Returns:
        Validated RuntimeSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config_path is given but does not exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="HUBFLOW",
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): _lower_keys(v) for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _expand_env_vars(raw_config)
    known = RuntimeSettings.model_fields.keys()
    return RuntimeSettings(**{k: v for k, v in raw_config.items() if k in known})


def load_definition(path: Path) -> PipelineDefinition:
    """Load a pipeline definition from a YAML or JSON file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValidationError: If the document is not a structurally valid definition
    """
    if not path.exists():
        raise FileNotFoundError(f"Definition file not found: {path}")
    text = path.read_text(encoding="utf-8")
    data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    if data is None:
        data = {}
    return PipelineDefinition.model_validate(data)
