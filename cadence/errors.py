from __future__ import annotations


class SchedulerError(Exception):
    """Base error for cadence."""


class ConfigError(SchedulerError):
    """Configuration lookup or validation error."""


class MissingConfigKeyError(ConfigError):
    """A required ${key} placeholder has no value in the config store."""

    def __init__(self, key: str):
        self.key = key
        leaf = key.split(".")[-1]
        super().__init__(
            f"Config key '{key}' not found and no default value provided.\n"
            "To fix this error, either:\n"
            f"  1. add the key to your config file ({leaf} = \"value\" under its section), or\n"
            f"  2. provide a default in the placeholder: ${{{key}:default_value}}\n"
            f"Example: ${{{key}:5s}} for a 5 second default"
        )


class PlaceholderFormatError(ConfigError):
    """Malformed ${...} placeholder caught at registration time."""


class ScheduleValueError(SchedulerError):
    """Invalid interval, delay, cron expression or zone for one task."""


class SchedulerStateError(SchedulerError):
    """Lifecycle method called in the wrong scheduler state."""
