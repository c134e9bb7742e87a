"""Command framework for switchboard.

Provides the CommandDefinition data model, the BotContext dependency
container and the BaseCommandHandler ABC. The registry and the builtin
handler groups live in their own modules.
"""

from .base import (
    BaseCommandHandler,
    BotContext,
    CommandDefinition,
    CommandKind,
    Invocation,
    Payload,
    RichMessage,
)

__all__ = [
    "BaseCommandHandler",
    "BotContext",
    "CommandDefinition",
    "CommandKind",
    "Invocation",
    "Payload",
    "RichMessage",
]
