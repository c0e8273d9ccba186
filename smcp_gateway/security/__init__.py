"""Crypto primitives and format validators."""

from smcp_gateway.security.crypto import (
    constant_time_compare,
    decrypt_data,
    encrypt_data,
    generate_api_key,
    generate_correlation_id,
    generate_secure_id,
    generate_session_id,
    hash_string,
)
from smcp_gateway.security.validators import (
    is_valid_api_key,
    is_valid_server_id,
    is_valid_session_id,
    is_valid_tenant_id,
    sanitize_input,
    validate_request,
)

__all__ = [
    "constant_time_compare",
    "decrypt_data",
    "encrypt_data",
    "generate_api_key",
    "generate_correlation_id",
    "generate_secure_id",
    "generate_session_id",
    "hash_string",
    "is_valid_api_key",
    "is_valid_server_id",
    "is_valid_session_id",
    "is_valid_tenant_id",
    "sanitize_input",
    "validate_request",
]
