"""Signal transport for switchboard.

Connects to the Signal CLI REST API via WebSocket, turns envelopes
into InboundMessages and hands them to the Dispatcher. Owns the
lifecycle of the command store, the registry and the HTTP session.

Key classes:
    SignalBot: Wires store, registry, builtin handlers and dispatcher
        together and runs the receive loop.
"""

import asyncio
import base64
import hashlib
import json
import time as _time
from collections import OrderedDict
from typing import Optional

import aiohttp
import structlog

from .commands.base import BotContext, Reply, render_reply
from .commands.core import CoreCommandHandler
from .commands.dyncmd import DynCmdHandler
from .commands.registry import CommandRegistry
from .config import Config
from .dispatcher import Dispatcher, InboundMessage
from .exceptions import StorageError, TransportError
from .permissions import PermissionManager, mask
from .store import CommandStore

logger = structlog.get_logger("switchboard.bot")

MAX_MESSAGE_LENGTH = 4000
DEDUP_WINDOW_SECONDS = 60


def group_channel(group_id: str) -> str:
    """Recipient id the REST API expects for a group's internal id."""
    return "group." + base64.b64encode(group_id.encode()).decode()


class SignalBot:
    """Chat bot that dispatches prefixed messages to commands.

    Initialization happens in two phases: __init__ builds every
    component (no I/O), start() opens the database, migrates legacy
    rows, loads the registry and connects to the Signal API.

    Args:
        config: Loaded Config.
        store: Optional CommandStore, mainly for tests.
    """

    def __init__(self, config: Config, store: Optional[CommandStore] = None):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        self.running = False
        self.account: Optional[str] = config.signal_account
        self._processed_messages = OrderedDict()  # Dedup: msg_hash -> timestamp

        self.store = store or CommandStore(config.database_path)
        self.permissions = PermissionManager.from_config(config)
        self.registry = CommandRegistry(self.store)

        self._bot_context = BotContext(
            config=config,
            store=self.store,
            registry=self.registry,
            permissions=self.permissions,
            send_message=self.send_message,
        )
        self.registry.register(CoreCommandHandler(self._bot_context))
        self.registry.register(DynCmdHandler(self._bot_context))

        self.dispatcher = Dispatcher(
            registry=self.registry,
            permissions=self.permissions,
            send_message=self.send_message,
            prefix=config.command_prefix,
            handler_timeout=config.handler_timeout,
        )

    async def load_commands(self) -> None:
        """Create/migrate the schema and build the registry.

        Storage failures are logged; the bot keeps running with its
        builtins so the problem can be fixed and ``reload`` issued.
        """
        try:
            migrated = await asyncio.to_thread(self.store.initialize)
            if migrated:
                logger.info("legacy_commands_migrated", rows=migrated)
        except StorageError as e:
            logger.error("command_store_unavailable", error=str(e))
            return
        await self.registry.refresh()

    async def start(self):
        """Start the bot: load commands, open the HTTP session, find the account."""
        await self.load_commands()
        self.session = aiohttp.ClientSession()
        self.running = True
        if not self.account:
            await self._get_account()
        if not self.account:
            raise TransportError("No Signal account available", url=self.config.signal_api_url)
        logger.info(
            "bot_started",
            account=self.account,
            prefix=self.config.command_prefix,
            commands=len(self.registry.command_names),
        )

    async def stop(self):
        """Stop receiving, let running handlers finish, release resources."""
        if not self.running:
            return
        self.running = False
        try:
            await asyncio.wait_for(self.dispatcher.drain(), timeout=10)
        except asyncio.TimeoutError:
            logger.warning("handlers_still_running", pending=self.dispatcher.pending)
        if self.session:
            await self.session.close()
        await asyncio.to_thread(self.store.close)
        logger.info("bot_stopped")

    async def _get_account(self):
        """Get the registered Signal account with retry."""
        max_attempts = 12
        base_delay = 5
        max_delay = 15

        for attempt in range(1, max_attempts + 1):
            try:
                url = f"{self.config.signal_api_url}/v1/accounts"
                async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                    if resp.status == 200:
                        accounts = await resp.json()
                        if accounts:
                            acct = accounts[0]
                            self.account = acct if isinstance(acct, str) else acct.get("number")
                            logger.info("account_found", account=self.account)
                        else:
                            logger.warning("no_accounts_registered")
                        return
                    logger.warning("account_request_failed", status=resp.status)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                delay = min(base_delay * attempt, max_delay)
                logger.warning(
                    "account_request_error", error=str(e),
                    attempt=attempt, retry_delay=delay,
                )
                if attempt < max_attempts:
                    await asyncio.sleep(delay)

        logger.error("account_request_failed_all_attempts", attempts=max_attempts)

    async def send_message(self, channel: str, content: Reply):
        """Send a reply to a phone number, UUID or ``group.`` id.

        Failures are logged and never raised; the next send is tried
        normally.
        """
        if self.session is None:
            logger.warning("send_without_session", channel=mask(channel))
            return
        text = render_reply(content)
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[:MAX_MESSAGE_LENGTH - 3] + "..."
        payload = {
            "message": text,
            "number": self.account,
            "recipients": [channel],
        }
        try:
            url = f"{self.config.signal_api_url}/v2/send"
            async with self.session.post(
                url, json=payload, timeout=aiohttp.ClientTimeout(total=30)
            ) as resp:
                if resp.status != 201:
                    body = await resp.text()
                    logger.warning("send_failed", status=resp.status, body=body[:200])
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("send_error", error=str(e), channel=mask(channel))

    async def poll_messages(self):
        """Connect via WebSocket to receive messages (json-rpc mode)."""
        ws_base = self.config.signal_api_url.replace(
            "http://", "ws://"
        ).replace("https://", "wss://")
        ws_url = f"{ws_base}/v1/receive/{self.account}"

        reconnect_delay = 5
        MAX_RECONNECT_DELAY = 300

        while self.running:
            try:
                logger.info("websocket_connecting", url=ws_url)
                async with self.session.ws_connect(ws_url, heartbeat=30) as ws:
                    logger.info("websocket_connected")
                    reconnect_delay = 5
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                data = json.loads(msg.data)
                            except json.JSONDecodeError:
                                logger.warning("invalid_json", data=msg.data[:100])
                                continue
                            self.handle_envelope(data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.error("websocket_error", error=str(ws.exception()))
                            break
                        elif msg.type == aiohttp.WSMsgType.CLOSED:
                            logger.info("websocket_closed")
                            break

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("websocket_exception", error=str(e))
                await asyncio.sleep(reconnect_delay)
                reconnect_delay = min(reconnect_delay * 2, MAX_RECONNECT_DELAY)

    def to_inbound(self, msg: dict) -> Optional[InboundMessage]:
        """Extract (channel, sender, text) from a Signal envelope, or None."""
        envelope = msg.get("envelope", {})
        source = (
            envelope.get("source")
            or envelope.get("sourceNumber")
            or envelope.get("sourceUuid")
        )
        data_message = envelope.get("dataMessage")
        if not data_message or not source:
            return None
        text = data_message.get("message") or ""
        if not text.strip():
            return None

        group_info = data_message.get("groupInfo") or {}
        group_id = group_info.get("groupId")
        channel = group_channel(group_id) if group_id else source
        return InboundMessage(channel_id=channel, sender=source, text=text)

    def _is_duplicate(self, msg: dict, text: str) -> bool:
        timestamp = msg.get("envelope", {}).get("timestamp", 0)
        msg_hash = hashlib.sha256(f"{timestamp}:{text.strip()}".encode()).hexdigest()
        if msg_hash in self._processed_messages:
            logger.debug("duplicate_message_skipped", timestamp=timestamp)
            return True
        now = _time.time()
        self._processed_messages[msg_hash] = now

        cutoff = now - DEDUP_WINDOW_SECONDS
        while self._processed_messages:
            oldest_key, oldest_time = next(iter(self._processed_messages.items()))
            if oldest_time < cutoff:
                self._processed_messages.pop(oldest_key)
            else:
                break
        return False

    def handle_envelope(self, msg: dict) -> Optional[asyncio.Task]:
        """Turn one Signal event into a dispatch. Never raises."""
        try:
            inbound = self.to_inbound(msg)
            if inbound is None or self._is_duplicate(msg, inbound.text):
                return None
            if not self.permissions.is_allowed(inbound.sender):
                return None
            return self.dispatcher.dispatch(inbound)
        except Exception as e:
            logger.error("message_handling_error", error=str(e), msg=str(msg)[:200])
            return None

    async def run(self):
        """Main run loop: start, poll messages, stop on exit."""
        await self.start()

        try:
            await self.poll_messages()
        finally:
            await self.stop()
