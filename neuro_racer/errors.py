"""
neuro_racer/errors.py

Errors raised at construction time. Nothing in the runtime loop is fatal
once configuration has been validated.
"""


class ConfigurationError(ValueError):
    """Raised when a configuration value is out of bounds or inconsistent."""
