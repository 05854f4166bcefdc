"""Environment variable expansion for ralph.toml values.

Supports ``${VAR}`` (required) and ``${VAR:-default}`` (optional). This is
how a config file can say ``base_branch = "${RALPH_MAIN_BRANCH:-main}"``.
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict

# ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(:-([^}]*))?\}")


class EnvVarError(Exception):
    """A required environment variable is not set."""


def expand_env_vars(value: str) -> str:
    """Expand ``${VAR}`` / ``${VAR:-default}`` references in a string.

    Raises:
        EnvVarError: If a required variable is not set

    Examples:
        >>> os.environ["RALPH_MAIN_BRANCH"] = "develop"
        >>> expand_env_vars("${RALPH_MAIN_BRANCH:-main}")
        'develop'
    """

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(3)

        env_value = os.environ.get(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise EnvVarError(
            f"Required environment variable not set: {var_name}. "
            f"Either set {var_name} or use ${{{var_name}:-default}} syntax."
        )

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_config(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively expand every string value of a parsed TOML document.

    Raises:
        EnvVarError: If a required variable is not set
    """

    def expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return expand_env_vars(value)
        if isinstance(value, dict):
            return {k: expand_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [expand_value(item) for item in value]
        return value

    return expand_value(config_dict)
