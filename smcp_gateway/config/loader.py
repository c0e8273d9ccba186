"""Configuration file loading and validation.

Loads a YAML configuration file, expands ``${ENV_VAR}`` placeholders,
applies environment overrides and validates against the Pydantic models
in :mod:`smcp_gateway.config.schema`.

The public API is :func:`load_gateway_config`, which returns a validated
:class:`GatewayConfig`.  :func:`find_config_file` implements the search
order: explicit path, then ``SMCP_CONFIG``, then ``config.yaml`` /
``config.yml`` in the working directory.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from smcp_gateway.config.env import ENV_CONFIG_PATH, apply_env_overrides, expand_env_vars
from smcp_gateway.config.schema import GatewayConfig
from smcp_gateway.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Recognised config file extensions.
_YAML_EXTS = frozenset({".yaml", ".yml"})

_DEFAULT_FILENAMES = ("config.yaml", "config.yml")


def _read_config_file(cfg_fpath: str) -> Dict[str, Any]:
    """Read and parse a YAML config file from *cfg_fpath*.

    Raises :class:`ConfigurationError` on I/O or parse errors.  An empty
    file yields an empty mapping.
    """
    ext = os.path.splitext(cfg_fpath)[1].lower()
    if ext not in _YAML_EXTS:
        raise ConfigurationError(
            f"Unsupported config file extension '{ext}'. "
            "Only YAML files (.yaml, .yml) are supported."
        )

    try:
        with open(cfg_fpath, "r", encoding="utf-8") as f:
            raw_data = yaml.safe_load(f)
    except Exception as exc:
        raise ConfigurationError(f"Error reading configuration file: {cfg_fpath}\n  {exc}") from exc

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ConfigurationError(
            "Top-level configuration content must be a YAML mapping (dictionary)."
        )
    return raw_data


def _format_validation_errors(exc: ValidationError) -> str:
    """Format Pydantic validation errors into a readable multi-line string."""
    lines: List[str] = []
    for err in exc.errors():
        loc = " → ".join(str(part) for part in err["loc"])
        lines.append(f"  • {loc}: {err['msg']}")
    return "\n".join(lines)


def validate_config_data(raw_data: Dict[str, Any]) -> GatewayConfig:
    """Expand, override and validate an already-parsed mapping.

    Raises:
        ConfigurationError: On validation failures (all errors reported at once).
    """
    raw_data = expand_env_vars(raw_data)
    raw_data = apply_env_overrides(raw_data)
    try:
        return GatewayConfig.model_validate(raw_data)
    except ValidationError as exc:
        error_summary = _format_validation_errors(exc)
        raise ConfigurationError(
            f"Configuration validation failed ({len(exc.errors())} error(s)):\n" f"{error_summary}"
        ) from exc


# ── Public API ───────────────────────────────────────────────────────────


def find_config_file(explicit: Optional[str] = None) -> Optional[str]:
    """Return the configuration file to use, or ``None`` for defaults.

    An explicit path or ``SMCP_CONFIG`` must exist; the working-directory
    defaults are only used when present.
    """
    for candidate in (explicit, os.environ.get(ENV_CONFIG_PATH)):
        if candidate:
            if not os.path.exists(candidate):
                raise ConfigurationError(f"Configuration file does not exist: {candidate}")
            return candidate
    for name in _DEFAULT_FILENAMES:
        if os.path.exists(name):
            return os.path.abspath(name)
    return None


def load_gateway_config(cfg_fpath: Optional[str] = None) -> GatewayConfig:
    """Load, expand, validate and return the gateway configuration.

    Steps:
        1. Locate the file (:func:`find_config_file`)
        2. Read YAML
        3. Expand ``${VAR}`` references and apply environment overrides
        4. Validate against :class:`GatewayConfig` (Pydantic)

    Without a file the defaults are used, still with environment
    overrides applied.

    Raises:
        ConfigurationError: On file I/O errors, parse errors, or
            validation failures.
    """
    path = find_config_file(cfg_fpath)
    if path is None:
        logger.info("No configuration file found; using defaults.")
        return validate_config_data({})

    logger.debug("Loading configuration file: %s", path)
    config = validate_config_data(_read_config_file(path))
    logger.info(
        "Configuration '%s' loaded (v%s). %d seed tenant(s).",
        path,
        config.version,
        len(config.tenants.seed),
    )
    return config
