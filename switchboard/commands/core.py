"""Core builtin commands: help and reload."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List

import structlog

from ..exceptions import StorageError
from ..permissions import mask
from .base import (
    BUILTIN_CATEGORY,
    BaseCommandHandler,
    CommandDefinition,
    Invocation,
    Reply,
    RichMessage,
)

logger = structlog.get_logger("switchboard.bot")

UNCATEGORIZED = "uncategorized"


class CoreCommandHandler(BaseCommandHandler):
    """Handles help and reload."""

    def get_commands(self) -> List[CommandDefinition]:
        return [
            CommandDefinition.builtin(
                "help",
                self.handle_help,
                help_text="List commands, or show help for a command or category",
            ),
            CommandDefinition.builtin(
                "reload",
                self.handle_reload,
                help_text="Reload dynamic commands from the database",
                requires_admin=True,
            ),
        ]

    @property
    def prefix(self) -> str:
        return self.ctx.config.command_prefix

    def _visible(self, inv: Invocation) -> List[CommandDefinition]:
        is_admin = self.ctx.permissions.is_admin(inv.sender)
        return sorted(
            (d for d in self.ctx.registry.snapshot.values() if is_admin or not d.requires_admin),
            key=lambda d: d.name,
        )

    async def handle_help(self, inv: Invocation) -> Reply:
        """Show available commands.

        Chat usage::

            >help
            >help <command>
            >help <category>
        """
        visible = self._visible(inv)
        if inv.args:
            return await self._help_for(inv.args[0].lower(), visible)

        groups: Dict[str, List[str]] = defaultdict(list)
        for definition in visible:
            groups[definition.category or UNCATEGORIZED].append(definition.name)

        try:
            categories = sorted(await self.ctx.registry.list_categories())
        except StorageError as e:
            logger.warning("help_categories_unavailable", error=str(e))
            categories = sorted(
                c for c in groups if c not in (BUILTIN_CATEGORY, UNCATEGORIZED)
            )

        msg = RichMessage(
            title="Commands",
            footer=f"{self.prefix}help <command> for details",
        )
        for category in [BUILTIN_CATEGORY, *categories, UNCATEGORIZED]:
            names = groups.get(category)
            if names:
                msg.add_field(category.capitalize(), ", ".join(names))
        return msg

    async def _help_for(self, topic: str, visible: List[CommandDefinition]) -> Reply:
        for definition in visible:
            if definition.name == topic:
                line = f"{self.prefix}{definition.name}"
                if definition.help_text:
                    line += f" - {definition.help_text}"
                if definition.requires_admin:
                    line += " (admin only)"
                return line

        in_category = [
            d for d in visible if (d.category or UNCATEGORIZED).lower() == topic
        ]
        if in_category:
            msg = RichMessage(title=f"Commands in {topic}")
            for definition in in_category:
                msg.add_field(f"{self.prefix}{definition.name}", definition.help_text or "-")
            return msg

        return f"No command or category named '{topic}'."

    async def handle_reload(self, inv: Invocation) -> str:
        """Rebuild the registry from the database."""
        if not await self.ctx.registry.refresh():
            return "⚠️ Could not read the command database, keeping the current commands."
        registry = self.ctx.registry
        builtins = len(registry.builtin_commands())
        dynamic = len(registry.dynamic_commands())
        logger.info("registry_reloaded", sender=mask(inv.sender), dynamic=dynamic)
        return f"Reloaded {builtins + dynamic} commands ({builtins} builtin, {dynamic} dynamic)."
