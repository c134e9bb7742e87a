"""Tests for the dyncmd set/del protocol."""

import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from switchboard.commands.base import BotContext, Invocation, RichMessage
from switchboard.commands.core import CoreCommandHandler
from switchboard.commands.dyncmd import BUILTIN_COLLISION, DynCmdHandler
from switchboard.commands.registry import CommandRegistry
from switchboard.dispatcher import Dispatcher, InboundMessage
from switchboard.permissions import PermissionManager
from switchboard.store import TABLE, CommandStore

ADMIN = "+15550001111"
USER = "+15550002222"


class _Harness:
    """Real store, registry and dispatcher with a recording send_message."""

    def __init__(self, tmp_path):
        self.store = CommandStore(tmp_path / "commands.db")
        self.store.initialize()
        self.registry = CommandRegistry(self.store)
        self.permissions = PermissionManager(superuser=ADMIN)
        self.send = AsyncMock()
        config = MagicMock()
        config.command_prefix = ">"
        self.ctx = BotContext(
            config=config,
            store=self.store,
            registry=self.registry,
            permissions=self.permissions,
            send_message=self.send,
        )
        self.dyncmd = DynCmdHandler(self.ctx)
        self.registry.register(CoreCommandHandler(self.ctx))
        self.registry.register(self.dyncmd)
        self.dispatcher = Dispatcher(
            registry=self.registry,
            permissions=self.permissions,
            send_message=self.send,
            prefix=">",
        )

    async def say(self, text, sender=ADMIN, channel="chan"):
        self.send.reset_mock()
        task = self.dispatcher.dispatch(InboundMessage(channel, sender, text))
        if task is not None:
            await task
        return task

    @property
    def last_reply(self):
        return self.send.await_args.args[1]

    def close(self):
        self.store.close()


@pytest.fixture
def harness(tmp_path):
    h = _Harness(tmp_path)
    yield h
    h.close()


def _inv(*args, **switches):
    return Invocation(channel="chan", sender=ADMIN, command="dyncmd",
                      args=list(args), switches=switches)


@pytest.mark.asyncio
async def test_greet_scenario_end_to_end(harness):
    await harness.say('>dyncmd set greet -h "says hi" -b "Hello!"')
    reply = harness.last_reply
    assert "New Help Text: says hi" in reply
    assert "New Body: Hello!" in reply

    definition = harness.registry.lookup("greet")
    assert definition.is_dynamic
    assert definition.help_text == "says hi"
    assert definition.payload.body == "Hello!"

    await harness.say(">greet", sender=USER)
    harness.send.assert_awaited_once_with("chan", "Hello!")


@pytest.mark.asyncio
async def test_set_new_command_uses_defaults(harness):
    reply = await harness.dyncmd.handle_dyncmd(_inv("set", "Blank"))
    assert "Created command 'blank'" in reply

    definition = harness.registry.lookup("blank")
    assert definition.requires_admin is False
    assert definition.help_text == ""
    assert definition.category is None
    assert definition.payload.title is None
    assert definition.payload.body is None
    assert definition.payload.image_url is None


@pytest.mark.asyncio
async def test_set_applies_only_supplied_switches(harness):
    await harness.dyncmd.handle_dyncmd(_inv("set", "greet", helptext="says hi", body="Hello!"))
    await harness.dyncmd.handle_dyncmd(_inv("set", "greet", category="social"))

    definition = harness.registry.lookup("greet")
    assert definition.category == "social"
    assert definition.help_text == "says hi"
    assert definition.payload.body == "Hello!"


@pytest.mark.asyncio
async def test_set_twice_second_value_wins(harness):
    await harness.dyncmd.handle_dyncmd(_inv("set", "greet", body="one"))
    reply = await harness.dyncmd.handle_dyncmd(_inv("set", "greet", body="two"))
    assert "Saved command 'greet'" in reply
    assert harness.registry.lookup("greet").payload.body == "two"
    assert harness.store.get("greet").payload.body == "two"


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["help", "HELP", "dyncmd", "reload"])
async def test_set_builtin_name_rejected(harness, name):
    reply = await harness.dyncmd.handle_dyncmd(_inv("set", name, body="hijack"))
    assert reply == BUILTIN_COLLISION
    assert harness.store.list_all() == []
    assert harness.registry.lookup(name).is_builtin


@pytest.mark.asyncio
async def test_set_partial_success_with_bad_switches(harness):
    reply = await harness.dyncmd.handle_dyncmd(
        _inv("set", "greet", colour="red", admin="perhaps", title=True, body="Hello!")
    )
    lines = reply.splitlines()
    assert any("Unrecognized switch colour with value red" in line for line in lines)
    assert any("Admin must be true or false" in line for line in lines)
    assert any("title needs a value" in line for line in lines)
    assert any("New Body: Hello!" in line for line in lines)

    definition = harness.registry.lookup("greet")
    assert definition.payload.body == "Hello!"
    assert definition.payload.title is None
    assert definition.requires_admin is False


@pytest.mark.asyncio
async def test_set_admin_flag_variants(harness):
    await harness.say(">dyncmd set secret -a TRUE -b shh")
    assert "Requires Admin Privileges: true" in harness.last_reply
    assert harness.registry.lookup("secret").requires_admin is True

    await harness.say(">dyncmd set secret --admin false")
    assert harness.registry.lookup("secret").requires_admin is False

    # Bare switch means present
    await harness.say(">dyncmd set secret --admin")
    assert harness.registry.lookup("secret").requires_admin is True


@pytest.mark.asyncio
async def test_set_all_switches_with_short_aliases(harness):
    await harness.say(
        '>dyncmd set rules -c faq -h "server rules" -t Rules -b "Be nice" -i http://img/r.png'
    )
    definition = harness.registry.lookup("rules")
    assert definition.category == "faq"
    assert definition.help_text == "server rules"
    assert definition.payload.title == "Rules"
    assert definition.payload.body == "Be nice"
    assert definition.payload.image_url == "http://img/r.png"

    await harness.say(">rules", sender=USER)
    reply = harness.last_reply
    assert isinstance(reply, RichMessage)
    assert reply.title == "Rules"


@pytest.mark.asyncio
async def test_set_store_failure_reports_warning(harness):
    harness.registry.store = MagicMock()
    harness.registry.store.upsert.return_value = False

    reply = await harness.dyncmd.handle_dyncmd(_inv("set", "greet", body="Hello!"))
    assert "Could not save command 'greet'" in reply
    assert not harness.registry.is_command("greet")


@pytest.mark.asyncio
async def test_del_dynamic(harness):
    await harness.dyncmd.handle_dyncmd(_inv("set", "greet", body="Hello!"))
    reply = await harness.dyncmd.handle_dyncmd(_inv("del", "GREET"))
    assert "Deleted command 'greet'" in reply
    assert not harness.registry.is_command("greet")
    assert harness.store.get("greet") is None


@pytest.mark.asyncio
async def test_del_missing_reports_not_found(harness):
    reply = await harness.dyncmd.handle_dyncmd(_inv("del", "ghost"))
    assert "No command found with name 'ghost'" in reply


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["help", "dyncmd", "reload"])
async def test_del_builtin_never_removes_it(harness, name):
    reply = await harness.dyncmd.handle_dyncmd(_inv("del", name))
    assert "No command found" in reply
    assert harness.registry.lookup(name).is_builtin


@pytest.mark.asyncio
@pytest.mark.parametrize("args", [(), ("set",), ("frob", "greet")])
async def test_usage_on_bad_arguments(harness, args):
    reply = await harness.dyncmd.handle_dyncmd(_inv(*args))
    assert isinstance(reply, RichMessage)
    assert reply.title == "DynCmd Usage"


@pytest.mark.asyncio
async def test_non_admin_cannot_run_dyncmd(harness):
    await harness.say(">dyncmd set greet -b Hello!", sender=USER)
    assert "permission" in harness.last_reply
    assert not harness.registry.is_command("greet")


def _create_legacy(path, rows):
    conn = sqlite3.connect(str(path))
    conn.execute(
        "CREATE TABLE commands (name TEXT PRIMARY KEY, helpText TEXT, admin BOOLEAN, "
        "title TEXT, body TEXT, imageUrl TEXT)"
    )
    conn.executemany("INSERT INTO commands VALUES (?, ?, ?, ?, ?, ?)", rows)
    conn.commit()
    conn.close()


@pytest.mark.asyncio
async def test_mixed_case_legacy_row_can_be_set_and_deleted(tmp_path):
    _create_legacy(tmp_path / "commands.db", [("Greet", "hi", 0, None, "Hello", None)])
    h = _Harness(tmp_path)
    await h.registry.refresh()
    assert h.registry.is_dynamic_command("greet")

    reply = await h.dyncmd.handle_dyncmd(_inv("set", "greet", body="Howdy"))
    assert "Saved command 'greet'" in reply
    assert h.registry.lookup("greet").payload.body == "Howdy"
    assert len(h.store.list_all()) == 1

    reply = await h.dyncmd.handle_dyncmd(_inv("del", "greet"))
    assert "Deleted command 'greet'" in reply
    assert h.store.get("Greet") is None
    assert not h.registry.is_command("greet")
    h.close()


@pytest.mark.asyncio
async def test_set_repairs_row_skipped_as_malformed(harness):
    harness.store.conn.execute(f"INSERT INTO {TABLE} (name, admin) VALUES ('oops', 'yes')")
    await harness.registry.refresh()
    assert not harness.registry.is_command("oops")

    reply = await harness.dyncmd.handle_dyncmd(_inv("set", "oops", admin="false", body="fixed"))
    assert "command 'oops'" in reply
    assert "Could not save" not in reply

    definition = harness.registry.lookup("oops")
    assert definition.is_dynamic
    assert definition.requires_admin is False
    assert definition.payload.body == "fixed"


@pytest.mark.asyncio
async def test_del_removes_row_skipped_as_malformed(harness):
    harness.store.conn.execute(f"INSERT INTO {TABLE} (name, admin) VALUES ('oops', 'yes')")
    await harness.registry.refresh()

    reply = await harness.dyncmd.handle_dyncmd(_inv("del", "oops"))
    assert "Deleted command 'oops'" in reply
    count = harness.store.conn.execute(f"SELECT COUNT(*) FROM {TABLE}").fetchone()[0]
    assert count == 0


@pytest.mark.asyncio
async def test_set_with_unopened_store_reports_warning(harness):
    harness.store.close()

    reply = await harness.dyncmd.handle_dyncmd(_inv("set", "greet", body="Hello!"))
    assert "Could not save command 'greet'" in reply
    reply = await harness.dyncmd.handle_dyncmd(_inv("del", "greet"))
    assert "No command found with name 'greet'" in reply
