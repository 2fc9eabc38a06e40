"""
Channel CLI Commands for Stake Watcher

Manages the notification channels persisted in the key-value store:
- List stored channels
- Add a Telegram chat or Discord webhook
- Remove a channel by identifier
- Send a test message
"""

import logging
import sys

from config_manager import get_config_manager
from notifier import (
    Notifier,
    TelegramChannel,
    DiscordWebhookChannel,
    ChannelNotFoundError,
    BroadcastError,
    SOCIAL_BOTS_KEY,
    channel_from_record,
    load_configured_channels,
    save_channels,
)

logger = logging.getLogger(__name__)


def _stored_notifier(store) -> Notifier:
    """Notifier holding only the channels persisted in the store"""
    try:
        records = store.get(SOCIAL_BOTS_KEY)
    except KeyError:
        records = []
    return Notifier(channel_from_record(record) for record in records)


def cmd_channels_list(args):
    """List persisted channels for active configuration"""
    try:
        config_manager = get_config_manager()
        store = config_manager.create_kv_store()
        channels = _stored_notifier(store).channels()

        print(f"📣 Channels for: {config_manager.get_display_name()}")
        if not channels:
            print("  (none stored, configured channels will be used)")
        for channel in channels:
            print(f"  • {channel.identifier} [{channel.kind}]")

    except Exception as e:
        print(f"❌ Failed to list channels: {e}")
        sys.exit(1)


def cmd_channels_add(args):
    """Add (or replace) a persisted channel"""
    try:
        if args.type == 'telegram':
            if not args.token or args.chat_id is None:
                print("❌ Telegram channels need --token and --chat-id")
                sys.exit(1)
            channel = TelegramChannel(args.token, args.chat_id)
        else:
            if not args.webhook_url:
                print("❌ Discord channels need --webhook-url")
                sys.exit(1)
            channel = DiscordWebhookChannel(args.webhook_url)

        store = get_config_manager().create_kv_store()
        notifier = _stored_notifier(store)
        notifier.register_channel(channel)
        save_channels(store, notifier.channels())

        print(f"✅ Channel {channel.identifier} saved")

    except ValueError as e:
        print(f"❌ Invalid channel: {e}")
        sys.exit(1)


def cmd_channels_remove(args):
    """Remove a persisted channel by identifier"""
    store = get_config_manager().create_kv_store()
    notifier = _stored_notifier(store)
    try:
        notifier.unregister_channel(args.identifier)
    except ChannelNotFoundError:
        print(f"❌ No stored channel with identifier {args.identifier}")
        sys.exit(1)

    save_channels(store, notifier.channels())
    print(f"🗑️  Channel {args.identifier} removed")


def cmd_channels_test(args):
    """Send a test message to stored (or configured) channels"""
    notifier = Notifier(load_configured_channels(get_config_manager()))

    print(f"🧪 Sending test message to {len(notifier.channels())} channel(s)...")
    try:
        notifier.broadcast(args.message)
    except BroadcastError as e:
        for identifier, error in e.failures:
            print(f"  ❌ {identifier}: {error}")
        sys.exit(1)
    print("✅ Test message delivered")


# channel command registry
CHANNEL_COMMANDS = {
    'list': {
        'func': cmd_channels_list,
        'help': 'List stored notification channels',
        'args': []
    },
    'add': {
        'func': cmd_channels_add,
        'help': 'Add or replace a notification channel',
        'args': [
            (['type'], {'choices': ['telegram', 'discord'], 'help': 'Channel type'}),
            (['--token'], {'help': 'Telegram bot token'}),
            (['--chat-id'], {'type': int, 'help': 'Telegram chat id'}),
            (['--webhook-url'], {'help': 'Discord webhook URL'})
        ]
    },
    'remove': {
        'func': cmd_channels_remove,
        'help': 'Remove a notification channel',
        'args': [
            (['identifier'], {'help': 'Channel identifier as shown by "channels list"'})
        ]
    },
    'test': {
        'func': cmd_channels_test,
        'help': 'Send a test message to every channel',
        'args': [
            (['--message'], {'default': 'stake watcher test message', 'help': 'Message text'})
        ]
    }
}
