"""Environment variable handling for configuration values.

``${VAR}`` placeholders in string values are expanded from the process
environment, and a few settings can be overridden directly by variables.
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict

# Regex for ${VAR_NAME}, captures the variable name inside ${}
_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")

ENV_CONFIG_PATH = "SMCP_CONFIG"
ENV_JWT_SECRET = "SMCP_JWT_SECRET"


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` references in string values.

    - If the env var is not set, the placeholder is left unchanged.
    - Non-string leaves are returned as-is.
    - Dicts and lists are walked recursively.
    """
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def apply_env_overrides(raw_data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay settings taken straight from the environment.

    ``SMCP_JWT_SECRET`` replaces ``auth.jwt_secret`` so the secret never
    has to live in the file.
    """
    secret = os.environ.get(ENV_JWT_SECRET)
    if secret:
        auth = dict(raw_data.get("auth") or {})
        auth["jwt_secret"] = secret
        raw_data = {**raw_data, "auth": auth}
    return raw_data
