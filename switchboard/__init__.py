"""switchboard - chat bot command dispatcher with runtime-editable commands."""

__version__ = "1.0.0"
