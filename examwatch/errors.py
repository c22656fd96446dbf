class ExamwatchError(Exception):
    """Base class for errors raised to callers of examwatch."""


class ConfigError(ExamwatchError):
    """A configuration or signature file could not be loaded."""
