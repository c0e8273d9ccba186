"""Configuration loading and validation."""

from smcp_gateway.config.loader import find_config_file, load_gateway_config, validate_config_data
from smcp_gateway.config.schema import GatewayConfig

__all__ = [
    "GatewayConfig",
    "find_config_file",
    "load_gateway_config",
    "validate_config_data",
]
