"""Turns inbound chat messages into command invocations.

Parsing rules:
    * The message is split on whitespace; double-quoted phrases stay
      together so ``-h "says hi"`` is one value.
    * The first token must start with the command prefix, otherwise the
      message is ordinary chat and is ignored.
    * Tokens starting with ``-`` or ``--`` are switches. The next token
      is the switch value unless it starts with ``-`` itself, in which
      case the switch is present with the value True.
    * Short switch names are resolved to their long names through the
      command's alias table before the handler sees them.

Each accepted message runs its handler in its own asyncio task so a
slow handler never holds up the next inbound message.

Key classes:
    InboundMessage: What the transport hands over.
    ParsedCommand: Prefix-stripped command name plus argument tokens.
    Dispatcher: Lookup, admin gate, and handler scheduling.
"""

import asyncio
import shlex
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

import structlog

from .commands.base import CommandDefinition, Invocation, Reply, RichMessage
from .permissions import mask

logger = structlog.get_logger("switchboard.dispatch")

NO_PERMISSION = "You do not have permission to use this command."

SwitchValue = Union[str, bool]


@dataclass
class InboundMessage:
    """One message delivered by the chat transport."""
    channel_id: str
    sender: Optional[str]
    text: str


@dataclass
class ParsedCommand:
    name: str
    tokens: List[str] = field(default_factory=list)


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("background_task_failed", error=str(exc), exc_type=type(exc).__name__)


def tokenize(text: str) -> List[str]:
    """Split on whitespace, keeping double-quoted phrases together.

    Single quotes are left alone so apostrophes in ordinary words work.
    Unbalanced double quotes fall back to a plain whitespace split.
    """
    lexer = shlex.shlex(text, posix=True)
    lexer.whitespace_split = True
    lexer.quotes = '"'
    lexer.escape = ""
    lexer.commenters = ""
    try:
        return list(lexer)
    except ValueError:
        return text.split()


def _is_switch(token: str) -> bool:
    return token.startswith("-") and token.strip("-") != ""


def parse_switches(
    tokens: List[str], aliases: Optional[Mapping[str, str]] = None
) -> Tuple[List[str], Dict[str, SwitchValue]]:
    """Separate positional tokens from switches.

    Args:
        tokens: Tokens after the command name.
        aliases: Short name -> long name, e.g. {"c": "category"}.

    Returns:
        (positional, switches). A switch given twice keeps its last value.
    """
    aliases = aliases or {}
    positional: List[str] = []
    switches: Dict[str, SwitchValue] = {}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if not _is_switch(token):
            positional.append(token)
            i += 1
            continue

        name = token.lstrip("-").lower()
        name = aliases.get(name, name)
        if i + 1 < len(tokens) and not tokens[i + 1].startswith("-"):
            switches[name] = tokens[i + 1]
            i += 2
        else:
            switches[name] = True
            i += 1
    return positional, switches


def parse_message(text: str, prefix: str) -> Optional[ParsedCommand]:
    """Extract the command name and argument tokens, or None for plain chat."""
    tokens = tokenize(text.strip())
    if not tokens:
        return None
    first = tokens[0]
    if not first.startswith(prefix):
        return None
    name = first[len(prefix):].lower()
    if not name:
        return None
    return ParsedCommand(name=name, tokens=tokens[1:])


def render_dynamic(definition: CommandDefinition) -> Optional[Reply]:
    """Reply for a dynamic command: rich when it has a title or image, else text."""
    payload = definition.payload
    if payload.is_empty:
        return None
    if payload.title or payload.image_url:
        return RichMessage(
            title=payload.title,
            description=payload.body,
            image_url=payload.image_url,
        )
    return payload.body


class Dispatcher:
    """Routes parsed commands to their handlers.

    Args:
        registry: CommandRegistry consulted for every message.
        permissions: PermissionManager for the admin gate.
        send_message: async (channel, reply) used for every reply.
        prefix: Command prefix, e.g. ``>``.
        handler_timeout: Seconds a single handler may run.
    """

    def __init__(
        self,
        registry,
        permissions,
        send_message: Callable[[str, Reply], Awaitable[None]],
        prefix: str = ">",
        handler_timeout: float = 60.0,
    ):
        self.registry = registry
        self.permissions = permissions
        self._send_message = send_message
        self.prefix = prefix
        self.handler_timeout = handler_timeout
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, message: InboundMessage) -> Optional[asyncio.Task]:
        """Schedule the handler for a message.

        Returns:
            The task running the handler, or None if the message was
            not a known command.
        """
        if not message.text:
            return None
        parsed = parse_message(message.text, self.prefix)
        if parsed is None:
            return None

        # One snapshot read; a concurrent refresh cannot tear it
        definition = self.registry.lookup(parsed.name)
        if definition is None:
            logger.debug("unknown_command_ignored", command=parsed.name)
            return None

        args, switches = parse_switches(parsed.tokens, definition.switch_aliases)
        invocation = Invocation(
            channel=message.channel_id,
            sender=message.sender,
            command=definition.name,
            args=args,
            switches=switches,
            raw=message.text,
        )
        logger.info(
            "command_dispatched",
            command=definition.name,
            kind=definition.kind.value,
            sender=mask(message.sender),
            args=len(args),
            switches=sorted(switches),
        )

        task = asyncio.create_task(self._execute(definition, invocation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(log_task_exception)
        return task

    async def _execute(self, definition: CommandDefinition, invocation: Invocation) -> None:
        if definition.requires_admin and not self.permissions.is_admin(invocation.sender):
            logger.warning(
                "admin_command_refused",
                command=definition.name,
                sender=mask(invocation.sender),
            )
            await self._send_message(invocation.channel, NO_PERMISSION)
            return

        if definition.is_builtin:
            try:
                reply = await asyncio.wait_for(
                    definition.handler(invocation), timeout=self.handler_timeout
                )
            except asyncio.TimeoutError:
                logger.error(
                    "handler_timeout",
                    command=definition.name,
                    timeout=self.handler_timeout,
                )
                await self._send_message(
                    invocation.channel, f"'{definition.name}' took too long and was stopped."
                )
                return
            except Exception as e:
                logger.error(
                    "handler_failed",
                    command=definition.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._send_message(
                    invocation.channel, f"Something went wrong running '{definition.name}'."
                )
                return
        else:
            reply = render_dynamic(definition)

        if reply is not None:
            await self._send_message(invocation.channel, reply)

    async def drain(self) -> None:
        """Wait for every in-flight handler to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
