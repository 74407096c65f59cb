"""Security utilities for input validation and sanitization."""

from .validation import (
    normalize_email,
    sanitize_log_input,
    validate_cli_string_input,
    validate_environment_variable_name,
)

__all__ = [
    "normalize_email",
    "sanitize_log_input",
    "validate_cli_string_input",
    "validate_environment_variable_name",
]
