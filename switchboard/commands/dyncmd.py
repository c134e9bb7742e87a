"""The ``dyncmd`` builtin: create, edit and delete dynamic commands.

Chat usage::

    >dyncmd set <name> [-a|--admin true|false] [-c|--category X]
                       [-h|--helptext X] [-t|--title X] [-b|--body X]
                       [-i|--imageurl X]
    >dyncmd del <name>

``set`` starts from the stored definition (or a blank one), applies
each recognized switch, and saves through the registry. Unrecognized
or unusable switches produce a warning line but do not stop the
others from being applied.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional, Union

import structlog

from ..exceptions import BuiltinCollisionError
from ..permissions import mask
from ..store import parse_bool
from .base import BaseCommandHandler, CommandDefinition, Invocation, Reply, RichMessage

logger = structlog.get_logger("switchboard.admin")

OK = "✅"
WARN = "⚠️"

SWITCH_ALIASES = {
    "a": "admin",
    "c": "category",
    "h": "helptext",
    "t": "title",
    "b": "body",
    "i": "imageurl",
}

BUILTIN_COLLISION = "You cannot create a dynamic command with the same name as a builtin command."

# switch -> (definition attribute, payload attribute, confirmation label)
_TEXT_SWITCHES = {
    "category": ("category", None, "New Category"),
    "helptext": ("help_text", None, "New Help Text"),
    "title": (None, "title", "New Title"),
    "body": (None, "body", "New Body"),
    "imageurl": (None, "image_url", "New Image URL"),
}


def usage() -> RichMessage:
    msg = RichMessage(title="DynCmd Usage")
    msg.add_field("Create/Modify", "dyncmd set <name> [options]")
    msg.add_field("Delete", "dyncmd del <name>")
    msg.add_field(
        "Options",
        "-a, --admin <true|false>\n"
        "-c, --category <category>\n"
        "-h, --helptext <help text>\n"
        "-t, --title <title>\n"
        "-b, --body <body>\n"
        "-i, --imageurl <image URL>",
    )
    return msg


class DynCmdHandler(BaseCommandHandler):
    """Admin entry point for changing dynamic commands."""

    def get_commands(self) -> List[CommandDefinition]:
        return [
            CommandDefinition.builtin(
                "dyncmd",
                self.handle_dyncmd,
                help_text="Add, change or delete a dynamic command",
                requires_admin=True,
                switch_aliases=SWITCH_ALIASES,
            ),
        ]

    async def handle_dyncmd(self, inv: Invocation) -> Reply:
        if len(inv.args) < 2:
            return usage()

        sub_command = inv.args[0].lower()
        name = inv.args[1].lower()

        if sub_command == "set":
            return await self.handle_set(name, inv.switches, inv.sender)
        if sub_command == "del":
            return await self.handle_del(name, inv.sender)
        return usage()

    async def handle_set(
        self,
        name: str,
        switches: Dict[str, Union[str, bool]],
        sender: Optional[str] = None,
    ) -> str:
        """Create ``name`` or update its fields from switches.

        Returns:
            One confirmation or warning line per switch, plus the outcome.
        """
        registry = self.ctx.registry
        if registry.is_builtin(name) or (
            registry.is_command(name) and not registry.is_dynamic_command(name)
        ):
            logger.warning("dyncmd_builtin_collision", command=name, sender=mask(sender))
            return BUILTIN_COLLISION

        existing = registry.lookup(name)
        definition = existing if existing is not None else CommandDefinition.dynamic(name)
        changes: Dict[str, object] = {}
        payload_changes: Dict[str, object] = {}
        results: List[str] = []

        for switch_name, value in switches.items():
            if switch_name == "admin":
                try:
                    admin = parse_bool(value)
                except ValueError:
                    results.append(f"{WARN} Admin must be true or false, got {value}")
                    continue
                changes["requires_admin"] = admin
                results.append(f"{OK} Requires Admin Privileges: {str(admin).lower()}")
            elif switch_name in _TEXT_SWITCHES:
                attr, payload_attr, label = _TEXT_SWITCHES[switch_name]
                if value is True:
                    results.append(f"{WARN} Switch {switch_name} needs a value")
                    continue
                if attr:
                    changes[attr] = value
                else:
                    payload_changes[payload_attr] = value
                results.append(f"{OK} {label}: {value}")
            else:
                results.append(
                    f"{WARN} Unrecognized switch {switch_name} with value {value}"
                )

        if payload_changes:
            changes["payload"] = replace(definition.payload, **payload_changes)
        definition = replace(definition, **changes)

        try:
            saved = await registry.add_or_replace(definition)
        except BuiltinCollisionError:
            return BUILTIN_COLLISION

        if saved:
            logger.info(
                "dyncmd_saved",
                command=name,
                created=existing is None,
                fields=sorted(changes),
                sender=mask(sender),
            )
            verb = "Created" if existing is None else "Saved"
            results.append(f"{OK} {verb} command '{name}'")
        else:
            logger.error("dyncmd_save_failed", command=name, sender=mask(sender))
            results.append(f"{WARN} Could not save command '{name}', nothing was changed")
        return "\n".join(results)

    async def handle_del(self, name: str, sender: Optional[str] = None) -> str:
        registry = self.ctx.registry
        if registry.is_builtin(name):
            return f"{WARN} No command found with name '{name}'"

        if await registry.remove(name):
            logger.info("dyncmd_deleted", command=name, sender=mask(sender))
            return f"{OK} Deleted command '{name}'"
        # Rows skipped as malformed are absent from the snapshot but still deletable
        if not registry.is_dynamic_command(name):
            return f"{WARN} No command found with name '{name}'"
        logger.error("dyncmd_delete_failed", command=name, sender=mask(sender))
        return f"{WARN} Could not delete command '{name}'"
