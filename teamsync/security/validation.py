"""Input validation and sanitization utilities."""

import re
from typing import Any, Optional

_ANSI_ESCAPE = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')


def sanitize_log_input(data: Any) -> Any:
    """Sanitize data before logging or printing to a terminal.

    Args:
        data: Data to be logged (string, dict, list, or other types)

    Returns:
        Sanitized data safe for logging
    """
    if data is None:
        return None

    if isinstance(data, str):
        sanitized = data.replace('\n', '\\n').replace('\r', '\\r')
        sanitized = sanitized.replace('\t', '\\t')
        sanitized = _ANSI_ESCAPE.sub('', sanitized)

        # Truncate extremely long strings
        if len(sanitized) > 1000:
            sanitized = sanitized[:997] + "..."

        return sanitized

    elif isinstance(data, dict):
        return {key: sanitize_log_input(value) for key, value in data.items()}

    elif isinstance(data, list):
        return [sanitize_log_input(item) for item in data]

    elif isinstance(data, (int, float, bool)):
        return data

    else:
        return sanitize_log_input(str(data))


def normalize_email(email: Optional[str]) -> str:
    """Return the identity key for an email address.

    Emails are compared case-insensitively after trimming surrounding
    whitespace. ``None`` normalizes to the empty string, which callers
    treat as "no resolvable email".
    """
    if not email:
        return ""
    return email.strip().lower()


def validate_cli_string_input(input_str: str, max_length: int = 255, allow_empty: bool = False) -> bool:
    """Validate a free-form CLI argument such as a team or org name.

    Args:
        input_str: String input to validate
        max_length: Maximum allowed length
        allow_empty: Whether empty strings are allowed

    Returns:
        True if input is valid, False otherwise
    """
    if not isinstance(input_str, str):
        return False

    if not allow_empty and not input_str.strip():
        return False

    if len(input_str) > max_length:
        return False

    # Control characters
    if re.search(r'[\x00-\x1F\x7F]', input_str):
        return False

    return True


def validate_environment_variable_name(var_name: str) -> bool:
    """Validate environment variable name format.

    Args:
        var_name: Environment variable name to validate

    Returns:
        True if variable name is valid, False otherwise
    """
    if not isinstance(var_name, str) or not var_name:
        return False

    # Letters, digits, and underscores only, cannot start with digit
    if not re.match(r'^[A-Za-z_][A-Za-z0-9_]*$', var_name):
        return False

    if len(var_name) > 255:
        return False

    reserved_names = {
        'PATH', 'HOME', 'USER', 'SHELL', 'TERM', 'PWD', 'OLDPWD',
        'IFS', 'PS1', 'PS2', 'HISTFILE', 'HISTSIZE', 'TMPDIR'
    }

    if var_name.upper() in reserved_names:
        return False

    return True
