"""YAML configuration loading for the fetch layer."""

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from resilient_fetch.layer import LayerConfig
from resilient_fetch.settings.app import AppSettings, get_settings


logger = structlog.get_logger()


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, errors: list[dict[str, str]], file_path: str) -> None:
        """Initialize the error.

        Args:
            errors: List of validation error details.
            file_path: Path to the file that failed validation.
        """
        self.errors = errors
        self.file_path = file_path
        super().__init__(f"Validation failed for {file_path}: {len(errors)} errors")


def load_layer_config(path: Path | str) -> LayerConfig:
    """Load and validate a YAML layer configuration.

    The file holds optional `fetch` and `cache` sections whose keys mirror
    FetchConfig and CacheConfig. Omitted keys keep their defaults.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated LayerConfig.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed or fails validation.
    """
    file_path = Path(path)
    log = logger.bind(component="config", file_path=str(file_path))
    log.info("loading_config_file")

    try:
        parsed = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        errors = [{"loc": "", "msg": str(e), "type": "yaml_error"}]
        log.error("config_yaml_invalid", errors=errors)
        raise ConfigValidationError(errors, str(file_path)) from e

    if not isinstance(parsed, dict):
        errors = [
            {"loc": "", "msg": "top level must be a mapping", "type": "type_error"}
        ]
        log.error("config_validation_failed", errors=errors)
        raise ConfigValidationError(errors, str(file_path))

    try:
        config = LayerConfig.model_validate(parsed)
    except ValidationError as e:
        errors = [
            {
                "loc": ".".join(str(loc) for loc in err["loc"]),
                "msg": err["msg"],
                "type": err["type"],
            }
            for err in e.errors()
        ]
        log.error(
            "config_validation_failed",
            validation_error_count=len(errors),
            errors=errors,
        )
        raise ConfigValidationError(errors, str(file_path)) from e

    log.info("config_file_loaded")
    return config


def resolve_layer_config(
    config_path: Path | str | None = None,
    settings: AppSettings | None = None,
) -> LayerConfig:
    """Pick the layer configuration from a YAML file or the environment.

    Args:
        config_path: Optional YAML file; takes precedence when given.
        settings: Environment settings (read fresh when omitted).

    Returns:
        LayerConfig to run with.
    """
    if config_path is not None:
        return load_layer_config(config_path)
    return (settings or get_settings()).to_layer_config()
