"""In-memory command index.

The registry maps lower-case command names to CommandDefinitions. It
is always rebuilt wholesale from the builtin set plus the rows of the
command store: refresh() builds a new dict off to the side and swaps
it in with one attribute assignment, so a dispatch running during a
refresh sees either the old snapshot or the new one, never a mix.

A dispatch that looked a command up just before a refresh may still
run the old definition. That is accepted; writes are rare and admin
only.

All writes go through add_or_replace() / update_field() / remove(),
which hold a single asyncio.Lock across the store write and the
refresh that follows it.
"""

from __future__ import annotations

import asyncio
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import structlog

from ..exceptions import BuiltinCollisionError, StorageError
from .base import BaseCommandHandler, CommandDefinition

logger = structlog.get_logger("switchboard.registry")


class CommandRegistry:
    """Authoritative name -> CommandDefinition mapping.

    Args:
        store: CommandStore holding dynamic commands.
        builtins: Builtin definitions known up front. Handler groups add
            theirs with register().
    """

    def __init__(self, store, builtins: Iterable[CommandDefinition] = ()):
        self.store = store
        self._builtins: Dict[str, CommandDefinition] = {}
        self._rows: Tuple[CommandDefinition, ...] = ()
        self._snapshot: Mapping[str, CommandDefinition] = MappingProxyType({})
        self._write_lock = asyncio.Lock()
        for definition in builtins:
            self._add_builtin(definition, source="init")
        self._snapshot = self._build(self._rows)

    # ------------------------------------------------------------------
    # Builtins
    # ------------------------------------------------------------------

    def register(self, handler: BaseCommandHandler) -> None:
        """Add every builtin a handler group provides.

        The new names are visible immediately, alongside the dynamic
        commands from the last successful refresh.
        """
        for definition in handler.get_commands():
            self._add_builtin(definition, source=type(handler).__name__)
        self._snapshot = self._build(self._rows)

    def _add_builtin(self, definition: CommandDefinition, source: str) -> None:
        if not definition.is_builtin:
            raise ValueError(f"{definition.name} is not a builtin definition")
        name = definition.name.lower()
        if name in self._builtins:
            logger.warning("command_handler_conflict", command=name, handler=source)
        self._builtins[name] = definition

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def _build(self, rows: Iterable[CommandDefinition]) -> Mapping[str, CommandDefinition]:
        mapping: Dict[str, CommandDefinition] = dict(self._builtins)
        for definition in rows:
            name = definition.name.lower()
            if name in self._builtins:
                logger.warning("dynamic_shadows_builtin_skipped", command=name)
                continue
            if name in mapping:
                logger.warning("duplicate_dynamic_command", command=name)
            mapping[name] = definition
        return MappingProxyType(mapping)

    async def refresh(self) -> bool:
        """Rebuild the whole mapping from builtins plus the store.

        Returns:
            True if a new snapshot was installed. False if the store could
            not be read; the previous snapshot is kept.
        """
        try:
            rows = await asyncio.to_thread(self.store.list_all)
        except StorageError as e:
            logger.error("registry_refresh_failed", error=str(e))
            return False

        snapshot = self._build(rows)
        self._rows = tuple(rows)
        self._snapshot = snapshot
        logger.info(
            "registry_refreshed",
            builtins=len(self._builtins),
            dynamic=len(snapshot) - len(self._builtins),
        )
        return True

    # ------------------------------------------------------------------
    # Reads (lock-free; the snapshot is immutable)
    # ------------------------------------------------------------------

    def lookup(self, name: str) -> Optional[CommandDefinition]:
        return self._snapshot.get(name.lower())

    def is_command(self, name: str) -> bool:
        return name.lower() in self._snapshot

    def is_dynamic_command(self, name: str) -> bool:
        definition = self._snapshot.get(name.lower())
        return definition is not None and definition.is_dynamic

    def is_builtin(self, name: str) -> bool:
        return name.lower() in self._builtins

    @property
    def snapshot(self) -> Mapping[str, CommandDefinition]:
        return self._snapshot

    @property
    def command_names(self) -> frozenset:
        """All currently registered command names."""
        return frozenset(self._snapshot.keys())

    def builtin_commands(self) -> List[CommandDefinition]:
        return [d for d in self._snapshot.values() if d.is_builtin]

    def dynamic_commands(self) -> List[CommandDefinition]:
        return [d for d in self._snapshot.values() if d.is_dynamic]

    async def list_categories(self) -> Set[str]:
        """Distinct dynamic command categories from the store.

        Raises:
            StorageError: if the store cannot be read.
        """
        return await asyncio.to_thread(self.store.list_categories)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_or_replace(self, definition: CommandDefinition) -> bool:
        """Persist a dynamic command, then refresh.

        Returns:
            True only if the store write and the refresh both succeeded.

        Raises:
            BuiltinCollisionError: the name belongs to a builtin.
        """
        name = definition.name.lower()
        if name in self._builtins or not definition.is_dynamic:
            raise BuiltinCollisionError(name)

        async with self._write_lock:
            ok = await asyncio.to_thread(self.store.upsert, definition)
            if not ok:
                return False
            return await self.refresh()

    async def update_field(self, name: str, field_name: str, value: Any) -> bool:
        """Set one stored field of a dynamic command, then refresh.

        Raises:
            UnknownFieldError: field_name is not mutable.
            ValueError: admin value is not a boolean.
        """
        if self.is_builtin(name):
            return False
        async with self._write_lock:
            ok = await asyncio.to_thread(self.store.update, name, field_name, value)
            if not ok:
                return False
            return await self.refresh()

    async def remove(self, name: str) -> bool:
        """Delete a dynamic command, then refresh. Builtins are never removed.

        The store is asked even when the name is missing from the snapshot,
        so rows skipped as malformed can still be deleted.
        """
        if self.is_builtin(name):
            return False
        async with self._write_lock:
            ok = await asyncio.to_thread(self.store.delete, name)
            if not ok:
                return False
            return await self.refresh()
