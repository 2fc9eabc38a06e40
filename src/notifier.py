#!/usr/bin/env python3
"""
Notification fan-out.

A Notifier holds a set of SocialChannel instances (at most one per
identifier) and broadcasts each message to all of them. Channel records are
persisted in the key-value store under ``social_bots``.
"""

import html
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

import duckdb
import requests

from config_manager import ConfigError
from keepers import ReadWriteLock
from kv_store import DatabaseLockError

logger = logging.getLogger(__name__)

SOCIAL_BOTS_KEY = "social_bots"
TELEGRAM_API_URL = "https://api.telegram.org"
DELIVERY_TIMEOUT_S = 10
DISCORD_CONTENT_LIMIT = 2000

_TAG_RE = re.compile(r'<a href="([^"]*)">(.*?)</a>|<[^>]+>', re.DOTALL)


class BroadcastError(Exception):
    """Raised after a broadcast in which at least one channel failed"""

    def __init__(self, failures: List[tuple]):
        self.failures = failures
        identifier, first = failures[0]
        super().__init__(f"{len(failures)} channel(s) failed, first {identifier}: {first}")

    @property
    def first_error(self) -> Exception:
        return self.failures[0][1]


class ChannelNotFoundError(KeyError):
    """Raised when unregistering a channel that is not registered"""
    pass


class SocialChannel:
    """Base class for a notification destination"""

    kind = "base"

    @property
    def identifier(self) -> str:
        raise NotImplementedError

    def send_message(self, message: str) -> None:
        raise NotImplementedError

    def to_record(self) -> Dict[str, Any]:
        raise NotImplementedError


class TelegramChannel(SocialChannel):
    """Telegram Bot API chat"""

    kind = "telegram"

    def __init__(self, token: str, chat_id: int, api_url: str = TELEGRAM_API_URL):
        if not token:
            raise ValueError("Telegram channel requires a bot token")
        self.token = token
        self.chat_id = int(chat_id)
        self.api_url = api_url.rstrip('/')

    @property
    def identifier(self) -> str:
        return f"telegram:{self.chat_id}"

    def send_message(self, message: str) -> None:
        response = requests.post(
            f"{self.api_url}/bot{self.token}/sendMessage",
            json={
                "chat_id": self.chat_id,
                "text": message,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            },
            timeout=DELIVERY_TIMEOUT_S,
        )
        response.raise_for_status()

    def to_record(self) -> Dict[str, Any]:
        return {"type": self.kind, "token": self.token, "chat_id": self.chat_id}


def html_to_markdown(message: str) -> str:
    """Render the small HTML subset used in messages as Discord markdown"""
    def replace(match):
        if match.group(1) is not None:
            return f"[{match.group(2)}]({match.group(1)})"
        tag = match.group(0).lower()
        if tag in ('<b>', '</b>'):
            return '**'
        if tag in ('<code>', '</code>'):
            return '`'
        return ''
    return html.unescape(_TAG_RE.sub(replace, message))


class DiscordWebhookChannel(SocialChannel):
    """Discord channel webhook"""

    kind = "discord"

    def __init__(self, webhook_url: str):
        if not webhook_url:
            raise ValueError("Discord channel requires a webhook URL")
        self.webhook_url = webhook_url

    @property
    def identifier(self) -> str:
        return f"discord:{self.webhook_url.rstrip('/').rsplit('/', 2)[-2]}"

    def send_message(self, message: str) -> None:
        payload = {"content": html_to_markdown(message)[:DISCORD_CONTENT_LIMIT]}
        response = requests.post(self.webhook_url, json=payload, timeout=DELIVERY_TIMEOUT_S)
        response.raise_for_status()

    def to_record(self) -> Dict[str, Any]:
        return {"type": self.kind, "webhook_url": self.webhook_url}


def channel_from_record(record: Dict[str, Any]) -> SocialChannel:
    if not isinstance(record, dict):
        raise TypeError(f"channel record must be a mapping, got {type(record).__name__}")
    kind = record.get("type", TelegramChannel.kind)
    if kind == TelegramChannel.kind:
        return TelegramChannel(record["token"], record["chat_id"])
    if kind == DiscordWebhookChannel.kind:
        return DiscordWebhookChannel(record["webhook_url"])
    raise ValueError(f"Unknown channel type: {kind}")


class Notifier:
    """Broadcasts messages to every registered channel"""

    def __init__(self, channels: Iterable[SocialChannel] = (), logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._channels: List[SocialChannel] = []
        self._lock = ReadWriteLock()
        for channel in channels:
            self.register_channel(channel)

    def channels(self) -> List[SocialChannel]:
        with self._lock.read_locked():
            return list(self._channels)

    def register_channel(self, channel: SocialChannel) -> None:
        """Add a channel, replacing any channel with the same identifier"""
        with self._lock.write_locked():
            for i, existing in enumerate(self._channels):
                if existing.identifier == channel.identifier:
                    self._channels[i] = channel
                    return
            self._channels.append(channel)

    def unregister_channel(self, identifier: str) -> SocialChannel:
        with self._lock.write_locked():
            for i, existing in enumerate(self._channels):
                if existing.identifier == identifier:
                    return self._channels.pop(i)
        raise ChannelNotFoundError(identifier)

    def broadcast(self, message: str) -> None:
        """
        Deliver message to all channels.

        Every channel is attempted once; if any failed, BroadcastError is
        raised afterwards carrying the failures in channel order.
        """
        failures = []
        for channel in self.channels():
            try:
                channel.send_message(message)
            except Exception as e:
                self.logger.warning(f"Failed to deliver message to {channel.identifier}: {e}")
                failures.append((channel.identifier, e))
        if failures:
            raise BroadcastError(failures)


def channels_from_config(config_manager) -> List[SocialChannel]:
    """Channels defined directly in the active configuration profile"""
    channels: List[SocialChannel] = []
    telegram = config_manager.get_telegram_config()
    if telegram:
        channels.append(TelegramChannel(telegram['token'], telegram['chat_id']))
    webhook = config_manager.get_discord_webhook_url()
    if webhook:
        channels.append(DiscordWebhookChannel(webhook))
    return channels


def _stored_channels(store, log: logging.Logger) -> List[SocialChannel]:
    try:
        records = store.get(SOCIAL_BOTS_KEY)
    except KeyError:
        log.info(f"No stored channels under '{SOCIAL_BOTS_KEY}', using configured channels")
        return []
    except (TypeError, ValueError, DatabaseLockError, duckdb.Error) as e:
        log.warning(f"Stored channels unreadable ({e}), using configured channels")
        return []

    if not isinstance(records, list):
        log.warning(f"Stored channels unreadable (expected a list, got {type(records).__name__}), "
                    f"using configured channels")
        return []

    channels: List[SocialChannel] = []
    for record in records:
        try:
            channels.append(channel_from_record(record))
        except (KeyError, TypeError, ValueError) as e:
            log.warning(f"Skipping unreadable channel record: {e}")
    return channels


def load_channels(store, fallback: Iterable[SocialChannel] = (), logger: Optional[logging.Logger] = None) -> List[SocialChannel]:
    """
    Read persisted channel records, falling back to configured channels.

    A missing store (None), a missing key or an unreadable value all fall
    back. Raises ConfigError when neither source yields a channel.
    """
    log = logger or logging.getLogger(__name__)
    channels: List[SocialChannel] = []
    if store is None:
        log.warning("Channel store unavailable, using configured channels")
    else:
        channels = _stored_channels(store, log)

    if not channels:
        channels = list(fallback)
    if not channels:
        raise ConfigError("No notification channels stored or configured")
    return channels


def load_configured_channels(config_manager, logger: Optional[logging.Logger] = None) -> List[SocialChannel]:
    """Stored channels of the active profile, or its configured ones when the store cannot be opened"""
    log = logger or logging.getLogger(__name__)
    try:
        store = config_manager.create_kv_store()
    except (DatabaseLockError, duckdb.Error) as e:
        log.warning(f"Cannot open channel store: {e}")
        store = None
    return load_channels(store, channels_from_config(config_manager), logger=log)


def save_channels(store, channels: Iterable[SocialChannel]) -> None:
    store.set(SOCIAL_BOTS_KEY, [channel.to_record() for channel in channels])
