"""Format validators.

Pure functions checking identifier syntax, plus :func:`validate_request`
which checks the request shape (method, content type, size, path) before
any credential is looked at.
"""

from __future__ import annotations

import re
from typing import Mapping, Optional

from smcp_gateway.constants import ALLOWED_METHODS, MAX_REQUEST_BYTES
from smcp_gateway.errors import ValidationError

_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{3,64}$")
_SESSION_ID_RE = re.compile(r"^sess_[a-zA-Z0-9_-]+_[a-f0-9]{48}$")
_API_KEY_RE = re.compile(r"^smcp_[a-zA-Z0-9_-]+_[a-f0-9]{64}$")
_SERVER_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

# <, >, quotes and backslash
_TAINTED_CHARS_RE = re.compile(r"[<>'\"\\]")


def is_valid_tenant_id(tenant_id: str) -> bool:
    return isinstance(tenant_id, str) and bool(_TENANT_ID_RE.fullmatch(tenant_id))


def is_valid_session_id(session_id: str) -> bool:
    return isinstance(session_id, str) and bool(_SESSION_ID_RE.fullmatch(session_id))


def is_valid_api_key(api_key: str) -> bool:
    return isinstance(api_key, str) and bool(_API_KEY_RE.fullmatch(api_key))


def is_valid_server_id(server_id: str) -> bool:
    return isinstance(server_id, str) and bool(_SERVER_ID_RE.fullmatch(server_id))


def sanitize_input(value: str) -> str:
    """Strip ``< > ' " \\`` and surrounding whitespace.

    Idempotent.  Callers compare the result with the original to detect
    tainted input and reject it; the sanitized value is not meant to be used.
    """
    return _TAINTED_CHARS_RE.sub("", value).strip()


def is_tainted(value: str) -> bool:
    """``True`` if :func:`sanitize_input` would change *value*."""
    return sanitize_input(value) != value


def tenant_id_from_credential(credential: str) -> Optional[str]:
    """Return the tenant embedded in a session id or API key.

    ``sess_<tenant>_<hex>`` / ``smcp_<tenant>_<hex>``; the tenant may itself
    contain underscores, so it is everything between the first and last ``_``.
    Returns ``None`` when the credential is not well formed.
    """
    if not (is_valid_session_id(credential) or is_valid_api_key(credential)):
        return None
    _prefix, _, rest = credential.partition("_")
    tenant_id, _, _secret = rest.rpartition("_")
    return tenant_id


def validate_request(
    method: str,
    path: str,
    headers: Mapping[str, str],
) -> None:
    """Check the request shape.

    Raises :class:`~smcp_gateway.errors.ValidationError` for a disallowed
    method, a missing JSON content type on POST/PUT, a body over 1 MiB, or
    a path containing tainted characters.
    """
    method = method.upper()
    headers = {k.lower(): v for k, v in headers.items()}
    if method not in ALLOWED_METHODS:
        raise ValidationError(f"Method {method} not allowed")

    if method in ("POST", "PUT"):
        content_type = headers.get("content-type", "")
        if "application/json" not in content_type:
            raise ValidationError("Content-Type must be application/json")

    content_length = headers.get("content-length")
    if content_length:
        try:
            size = int(content_length)
        except ValueError:
            raise ValidationError("Invalid Content-Length header") from None
        if size > MAX_REQUEST_BYTES:
            raise ValidationError("Request too large (max 1MB)")

    if is_tainted(path):
        raise ValidationError("Invalid characters in URL path")
