"""
Configuration validation utilities.

Provides utilities for validating required environment variables with clear error messages.
"""

import os
from typing import List, Optional


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def require_env(name: str, description: Optional[str] = None) -> str:
    """
    Require an environment variable to be set.

    Args:
        name: Environment variable name
        description: Optional description of what the variable is used for

    Returns:
        The value of the environment variable

    Raises:
        ConfigurationError: If the environment variable is not set or empty
    """
    value = os.getenv(name)

    if not value:
        desc_msg = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {name}{desc_msg}\n"
            f"Please set {name} in your .env file or environment."
        )

    return value


def require_any_env(names: List[str], description: Optional[str] = None) -> str:
    """
    Return the first non-empty variable among ``names``.

    Raises:
        ConfigurationError: If none of the variables is set
    """
    for name in names:
        value = os.getenv(name)
        if value:
            return value

    desc_msg = f" ({description})" if description else ""
    raise ConfigurationError(
        f"Missing required environment variable: one of {', '.join(names)}{desc_msg}"
    )
