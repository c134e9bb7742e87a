"""Tests for message parsing and dispatch."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from switchboard.commands.base import CommandDefinition, CommandKind, Payload, RichMessage
from switchboard.dispatcher import (
    NO_PERMISSION,
    Dispatcher,
    InboundMessage,
    parse_message,
    parse_switches,
    render_dynamic,
    tokenize,
)
from switchboard.permissions import PermissionManager

ADMIN = "+15550001111"
USER = "+15550002222"

DYNCMD_ALIASES = {"a": "admin", "c": "category", "h": "helptext",
                  "t": "title", "b": "body", "i": "imageurl"}


# --- tokenize ---

def test_tokenize_plain_whitespace():
    assert tokenize(">help   me\tnow") == [">help", "me", "now"]


def test_tokenize_keeps_double_quoted_phrases():
    assert tokenize('>dyncmd set greet -h "says hi" -b "Hello!"') == [
        ">dyncmd", "set", "greet", "-h", "says hi", "-b", "Hello!",
    ]


def test_tokenize_leaves_apostrophes_alone():
    assert tokenize(">say it's fine") == [">say", "it's", "fine"]


def test_tokenize_unbalanced_quote_falls_back():
    assert tokenize('>say "oops') == [">say", '"oops']


# --- parse_switches ---

def test_parse_switches_short_and_long_with_aliases():
    positional, switches = parse_switches(["-a", "true", "--category", "memes"], DYNCMD_ALIASES)
    assert positional == []
    assert switches == {"admin": "true", "category": "memes"}


def test_parse_switches_trailing_bare_switch_is_true():
    positional, switches = parse_switches(["--admin"], DYNCMD_ALIASES)
    assert switches == {"admin": True}


def test_parse_switches_switch_followed_by_switch():
    _, switches = parse_switches(["-a", "-c", "memes"], DYNCMD_ALIASES)
    assert switches == {"admin": True, "category": "memes"}


def test_parse_switches_keeps_positionals():
    positional, switches = parse_switches(["set", "greet", "-b", "Hello!", "extra"], DYNCMD_ALIASES)
    assert positional == ["set", "greet", "extra"]
    assert switches == {"body": "Hello!"}


def test_parse_switches_lowercases_names_and_keeps_unknown():
    _, switches = parse_switches(["--Colour", "red"], DYNCMD_ALIASES)
    assert switches == {"colour": "red"}


def test_parse_switches_lone_dashes_are_positional():
    positional, switches = parse_switches(["-", "--"])
    assert positional == ["-", "--"]
    assert switches == {}


# --- parse_message ---

def test_parse_message_requires_prefix():
    assert parse_message("hello there", ">") is None
    assert parse_message("help >me", ">") is None
    assert parse_message("", ">") is None
    assert parse_message(">", ">") is None


def test_parse_message_strips_prefix_and_lowercases():
    parsed = parse_message(">HeLp dyncmd", ">")
    assert parsed.name == "help"
    assert parsed.tokens == ["dyncmd"]


def test_parse_message_multi_char_prefix():
    parsed = parse_message("!!greet", "!!")
    assert parsed.name == "greet"


# --- render_dynamic ---

def test_render_dynamic_body_only_is_plain_text():
    definition = CommandDefinition(name="greet", kind=CommandKind.DYNAMIC,
                                   payload=Payload(body="Hello!"))
    assert render_dynamic(definition) == "Hello!"


def test_render_dynamic_with_title_is_rich():
    definition = CommandDefinition(
        name="rules", kind=CommandKind.DYNAMIC,
        payload=Payload(title="Rules", body="Be nice", image_url="http://img/r.png"),
    )
    reply = render_dynamic(definition)
    assert isinstance(reply, RichMessage)
    assert reply.title == "Rules"
    assert reply.description == "Be nice"
    assert "http://img/r.png" in reply.render()


def test_render_dynamic_empty_payload():
    assert render_dynamic(CommandDefinition.dynamic("blank")) is None


# --- Dispatcher ---

def _make_dispatcher(definitions, timeout=5.0):
    snapshot = {d.name: d for d in definitions}
    registry = MagicMock()
    registry.lookup.side_effect = lambda name: snapshot.get(name.lower())
    send = AsyncMock()
    dispatcher = Dispatcher(
        registry=registry,
        permissions=PermissionManager(superuser=ADMIN),
        send_message=send,
        prefix=">",
        handler_timeout=timeout,
    )
    return dispatcher, send


@pytest.mark.asyncio
async def test_dispatch_ignores_non_commands():
    dispatcher, send = _make_dispatcher([])
    assert dispatcher.dispatch(InboundMessage("chan", USER, "just chatting")) is None
    assert dispatcher.dispatch(InboundMessage("chan", USER, "")) is None
    send.assert_not_called()


@pytest.mark.asyncio
async def test_dispatch_unknown_command_is_silent():
    dispatcher, send = _make_dispatcher([])
    assert dispatcher.dispatch(InboundMessage("chan", USER, ">nope")) is None
    send.assert_not_called()


@pytest.mark.asyncio
async def test_dispatch_builtin_gets_args_and_switches():
    seen = {}

    async def handler(inv):
        seen["inv"] = inv
        return "done"

    definition = CommandDefinition.builtin("dyncmd", handler, switch_aliases=DYNCMD_ALIASES)
    dispatcher, send = _make_dispatcher([definition])

    task = dispatcher.dispatch(
        InboundMessage("chan", ADMIN, '>DYNCMD set greet -h "says hi" --body Hello!')
    )
    await task

    inv = seen["inv"]
    assert inv.channel == "chan"
    assert inv.sender == ADMIN
    assert inv.command == "dyncmd"
    assert inv.args == ["set", "greet"]
    assert inv.switches == {"helptext": "says hi", "body": "Hello!"}
    send.assert_awaited_once_with("chan", "done")


@pytest.mark.asyncio
async def test_dispatch_dynamic_sends_payload():
    definition = CommandDefinition(name="greet", kind=CommandKind.DYNAMIC,
                                   payload=Payload(body="Hello!"))
    dispatcher, send = _make_dispatcher([definition])
    await dispatcher.dispatch(InboundMessage("chan", USER, ">greet"))
    send.assert_awaited_once_with("chan", "Hello!")


@pytest.mark.asyncio
async def test_dispatch_admin_gate():
    handler = AsyncMock(return_value="secret")
    definition = CommandDefinition.builtin("reload", handler, requires_admin=True)
    dispatcher, send = _make_dispatcher([definition])

    await dispatcher.dispatch(InboundMessage("chan", USER, ">reload"))
    handler.assert_not_called()
    send.assert_awaited_once_with("chan", NO_PERMISSION)

    send.reset_mock()
    await dispatcher.dispatch(InboundMessage("chan", ADMIN, ">reload"))
    handler.assert_awaited_once()
    send.assert_awaited_once_with("chan", "secret")


@pytest.mark.asyncio
async def test_dispatch_admin_gate_for_dynamic_and_anonymous_sender():
    definition = CommandDefinition(name="mods", kind=CommandKind.DYNAMIC,
                                   requires_admin=True, payload=Payload(body="mod stuff"))
    dispatcher, send = _make_dispatcher([definition])
    await dispatcher.dispatch(InboundMessage("chan", None, ">mods"))
    send.assert_awaited_once_with("chan", NO_PERMISSION)


@pytest.mark.asyncio
async def test_dispatch_does_not_block_on_slow_handler():
    release = asyncio.Event()

    async def slow(inv):
        await release.wait()
        return "slow done"

    async def fast(inv):
        return "fast done"

    dispatcher, send = _make_dispatcher([
        CommandDefinition.builtin("slow", slow),
        CommandDefinition.builtin("fast", fast),
    ])

    slow_task = dispatcher.dispatch(InboundMessage("chan", USER, ">slow"))
    fast_task = dispatcher.dispatch(InboundMessage("chan", USER, ">fast"))
    await fast_task
    assert not slow_task.done()
    send.assert_awaited_once_with("chan", "fast done")

    release.set()
    await slow_task
    assert send.await_count == 2


@pytest.mark.asyncio
async def test_dispatch_handler_timeout():
    async def stuck(inv):
        await asyncio.sleep(10)

    dispatcher, send = _make_dispatcher([CommandDefinition.builtin("stuck", stuck)], timeout=0.05)
    await dispatcher.dispatch(InboundMessage("chan", USER, ">stuck"))
    send.assert_awaited_once()
    assert "took too long" in send.await_args.args[1]


@pytest.mark.asyncio
async def test_dispatch_handler_exception_is_contained():
    async def broken(inv):
        raise RuntimeError("boom")

    dispatcher, send = _make_dispatcher([CommandDefinition.builtin("broken", broken)])
    await dispatcher.dispatch(InboundMessage("chan", USER, ">broken"))
    send.assert_awaited_once()
    assert "boom" not in send.await_args.args[1]


@pytest.mark.asyncio
async def test_drain_waits_for_pending_tasks():
    async def handler(inv):
        await asyncio.sleep(0.01)
        return "ok"

    dispatcher, send = _make_dispatcher([CommandDefinition.builtin("x", handler)])
    dispatcher.dispatch(InboundMessage("chan", USER, ">x"))
    dispatcher.dispatch(InboundMessage("chan", USER, ">x"))
    await dispatcher.drain()
    assert send.await_count == 2
    assert dispatcher.pending == 0
