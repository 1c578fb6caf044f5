"""Pipeline definition loading and validation.

A pipeline definition is rejected as a whole before anything runs: the
loader turns YAML and Pydantic problems into ConfigValidationError, and
validate_pipeline_config() collects every semantic problem (duplicate
orders, missing health checks, non-positive timeouts) in a deterministic
order so validating the same definition twice yields the same errors.

Example:
    >>> config = load_pipeline_config(Path("pipeline.yaml"))
    >>> validate_pipeline_config(config)
    []
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, cast

import structlog
import yaml
from pydantic import ValidationError

from stageflow.errors import ConfigValidationError
from stageflow.schemas.pipeline import PipelineConfig

logger = structlog.get_logger(__name__)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file.

    Raises:
        ConfigValidationError: If the file is missing, unreadable or not a mapping.
    """
    if not path.exists():
        raise ConfigValidationError([f"File not found: {path}"])

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigValidationError([f"Invalid YAML syntax in {path.name}: {e}"]) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError([f"{path.name} must contain a mapping at the top level"])
    return cast(dict[str, Any], data)


def pipeline_config_from_dict(data: dict[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig from parsed data.

    Args:
        data: Parsed pipeline definition.

    Returns:
        The validated, immutable config.

    Raises:
        ConfigValidationError: Listing every field error as ``field.path: message``.
    """
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(loc) for loc in err.get('loc', ()))}: {err.get('msg', 'Invalid value')}"
            for err in e.errors()
        ]
        raise ConfigValidationError(errors or ["Validation failed"]) from e


def load_pipeline_config(path: Path | str) -> PipelineConfig:
    """Load a pipeline definition from YAML and validate it.

    Both structural (Pydantic) and semantic checks run; the returned config
    is ready to execute.

    Args:
        path: Path to the pipeline YAML file.

    Returns:
        Validated PipelineConfig.

    Raises:
        ConfigValidationError: If loading or any validation step fails.
    """
    path = Path(path)
    config = pipeline_config_from_dict(_load_yaml(path))
    ensure_valid(config)
    logger.debug(
        "pipeline_config_loaded",
        path=str(path),
        pipeline=config.name,
        environments=len(config.environments),
    )
    return config


def validate_pipeline_config(config: PipelineConfig) -> list[str]:
    """Collect every semantic problem with ``config``.

    Pure function; the result depends only on ``config``.

    Args:
        config: Pipeline definition to check.

    Returns:
        Error messages, empty when the config is valid.
    """
    errors: list[str] = []

    if not config.name:
        errors.append("Pipeline name is required")

    if not config.environments:
        errors.append("At least one environment is required")

    orders = [env.order for env in config.environments]
    if len(orders) != len(set(orders)):
        errors.append("Environment orders must be unique")

    names = [env.name.strip() for env in config.environments if env.name.strip()]
    if len(names) != len(set(names)):
        errors.append("Environment names must be unique")

    for index, env in enumerate(config.environments):
        label = env.name.strip()
        if not label:
            errors.append(f"Environment {index + 1} name is required")
            label = str(index + 1)
        if env.deployment_timeout_minutes <= 0:
            errors.append(f"Environment {label} deployment timeout must be positive")
        if env.rollback_timeout_minutes <= 0:
            errors.append(f"Environment {label} rollback timeout must be positive")
        if not env.health_checks:
            errors.append(f"Environment {label} must have at least one health check")

    policy = config.rollback_policy
    if policy.enabled and policy.automatic and not policy.conditions:
        errors.append("Rollback policy requires at least one condition when automatic")

    return errors


def ensure_valid(config: PipelineConfig) -> None:
    """Raise if ``config`` has any semantic problem.

    Raises:
        ConfigValidationError: With every problem found.
    """
    errors = validate_pipeline_config(config)
    if errors:
        logger.warning("pipeline_config_invalid", pipeline=config.name, errors=errors)
        raise ConfigValidationError(errors)


__all__ = [
    "ensure_valid",
    "load_pipeline_config",
    "pipeline_config_from_dict",
    "validate_pipeline_config",
]
