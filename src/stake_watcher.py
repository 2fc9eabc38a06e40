#!/usr/bin/env python3
"""
Stake Watcher - Staking Contract Event Relay

Watches the staking contract and relays qualifying events to the configured
notification channels:
1. created validators
2. delegations / undelegations
3. stake lockups / unlocks
4. reward claims
5. large plain FTM transfers (swept from recent blocks)

Each category runs under its own WatchSupervisor that resubscribes forever.

Usage:
    stakewatch start [--no-notify] [--shift-blocks 5]
    stakewatch channels list|add|remove|test
    stakewatch config list|show|validate
"""

import argparse
import asyncio
import functools
import logging
import signal
import sys
from typing import Any, Callable, List, Optional

from logger_utils import setup_logging, shutdown_logging
from amount_utils import parse_quantity
from config_manager import ConfigError, ConfigManager, reset_config_manager_instance
from channels_cli import CHANNEL_COMMANDS
from fetchers import build_fetchers
from keepers import ValidatorRegistry, DelegateHistory, UndelegateHistory, RewardHistory
from messages import MessageFormatter
from notifier import Notifier, load_configured_channels
from rpc_failover import EVMProviderPool
from sfc_client import SFCClient, NEW_HEAD
from watch_supervisor import WatchCategory, WatchSupervisor, above_threshold

logger = logging.getLogger("stake_watcher")


class InitialSyncError(Exception):
    """Raised when no poll source could provide the validator list"""
    pass


class StakeWatcher:
    def __init__(
        self,
        config_manager: ConfigManager,
        sfc_client: SFCClient,
        fetchers: List[Any],
        notifier: Notifier,
        validators: Optional[ValidatorRegistry] = None,
        delegates: Optional[DelegateHistory] = None,
        undelegates: Optional[UndelegateHistory] = None,
        rewards: Optional[RewardHistory] = None,
        notify_enabled: bool = True,
        shift_blocks: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config_manager = config_manager
        self.sfc_client = sfc_client
        self.fetchers = list(fetchers)
        self.notifier = notifier
        self.validators = validators if validators is not None else ValidatorRegistry()
        self.delegates = delegates if delegates is not None else DelegateHistory()
        self.undelegates = undelegates if undelegates is not None else UndelegateHistory()
        self.rewards = rewards if rewards is not None else RewardHistory()
        self.notify_enabled = notify_enabled
        self.logger = logger or logging.getLogger("stake_watcher")

        # thresholds are read eagerly so a bad config fails at startup
        self.min_staking_amount = config_manager.get_min_staking_amount()
        self.min_claim_amount = config_manager.get_min_claim_amount()
        self.min_transfer_amount = config_manager.get_min_transfer_amount()
        self.backoff_seconds = config_manager.get_backoff_seconds()
        if shift_blocks is None:
            shift_blocks = config_manager.get_shift_blocks()
        self.shift_blocks = max(0, int(shift_blocks))

        self.formatter = MessageFormatter(
            config_manager.get_explorer_url(),
            validators=self.validators,
            contact_book=config_manager.get_contact_book(),
            validator_book=config_manager.get_validator_book(),
        )
        self.supervisors: List[WatchSupervisor] = []

    def init_fetch_validators(self) -> int:
        """Load the validator list from the first fetcher that returns one"""
        for fetcher in self.fetchers:
            name = getattr(fetcher, 'name', type(fetcher).__name__)
            try:
                validators = fetcher.get_list_validators()
            except Exception as e:
                self.logger.warning(f"Fetching validators from {name} failed: {e}")
                continue
            if not validators:
                self.logger.warning(f"Fetcher {name} returned no validators")
                continue

            self.validators.add_batch(validators)
            self.logger.info(f"Loaded {len(validators)} validators from {name}")
            return len(validators)

        raise InitialSyncError("Unable to fetch the validator list from any source")

    def notify(self, message: str) -> None:
        if not self.notify_enabled:
            self.logger.info(f"Notification suppressed: {message}")
            return
        self.notifier.broadcast(message)

    def _decoder(self, category: str) -> Callable[[Any], Any]:
        async def collect(raw):
            return [self.sfc_client.decode_log(category, raw)]
        return collect

    async def collect_transfers(self, header: Any) -> List[Any]:
        """Plain transfers of the block shift_blocks behind the given head"""
        block_number = parse_quantity(header['number'])
        target = max(0, block_number - self.shift_blocks)
        for fetcher in self.fetchers:
            try:
                return await asyncio.to_thread(fetcher.get_transfers_by_block, target)
            except Exception as e:
                self.logger.debug(f"Fetching transfers of block {target} from {getattr(fetcher, 'name', fetcher)} failed: {e}")
        self.logger.warning(f"No source returned transfers for block {target}")
        return []

    def _log_category(self, name: str, fmt: Callable[[Any], str], **kwargs) -> WatchCategory:
        return WatchCategory(
            name=name,
            subscribe=functools.partial(self.sfc_client.subscribe, name),
            collect=self._decoder(name),
            format=fmt,
            **kwargs,
        )

    def build_categories(self) -> List[WatchCategory]:
        staking_amount = above_threshold(lambda item: item.amount, self.min_staking_amount)
        return [
            self._log_category(
                'created_validator', self.formatter.created_validator,
                record=self.validators.add,
            ),
            self._log_category(
                'delegate', self.formatter.delegate,
                accept=staking_amount, record=self.delegates.add,
            ),
            self._log_category(
                'undelegate', self.formatter.undelegate,
                accept=staking_amount, record=self.undelegates.add,
            ),
            self._log_category(
                'locked_stake', self.formatter.locked_stake,
                accept=staking_amount,
            ),
            self._log_category(
                'unlocked_stake', self.formatter.unlocked_stake,
                accept=staking_amount,
            ),
            self._log_category(
                'reward_claim', self.formatter.reward_claim,
                accept=above_threshold(lambda item: item.unlocked_reward, self.min_claim_amount),
                record=self.rewards.add,
            ),
            WatchCategory(
                name='transfer',
                subscribe=functools.partial(self.sfc_client.subscribe, NEW_HEAD),
                collect=self.collect_transfers,
                format=self.formatter.transfer,
                accept=above_threshold(lambda item: item.amount, self.min_transfer_amount),
            ),
        ]

    async def run(self, stop: asyncio.Event) -> None:
        await asyncio.to_thread(self.init_fetch_validators)

        self.supervisors = [
            WatchSupervisor(category, self.notify, backoff_seconds=self.backoff_seconds, logger=self.logger)
            for category in self.build_categories()
        ]
        tasks = [
            asyncio.create_task(supervisor.run(stop), name=f"watch-{supervisor.name}")
            for supervisor in self.supervisors
        ]

        try:
            try:
                await asyncio.to_thread(self.notify, self.formatter.startup(self.config_manager.get_display_name()))
            except Exception as e:
                self.logger.warning(f"Startup notification failed: {e}")
            self.logger.info(f"🚀 Watching {len(tasks)} event categories")
            await stop.wait()
        finally:
            stop.set()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for supervisor, result in zip(self.supervisors, results):
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    self.logger.error(f"Supervisor {supervisor.name} exited with error: {result!r}")
            self.logger.info("🛑 Stake watcher stopped")


def build_stake_watcher(config_manager: ConfigManager, no_notify: bool = False,
                        shift_blocks: Optional[int] = None) -> StakeWatcher:
    """Wire the chain client, fetchers and notifier for the active configuration"""
    reset_minutes = config_manager.get_rpc_preference_reset_minutes()
    pool = EVMProviderPool(config_manager.get_rpc_urls(), preference_reset_minutes=reset_minutes)
    sfc_client = SFCClient(
        config_manager.get_sfc_contract(),
        pool,
        config_manager.get_ws_rpc_urls(),
        block_range=config_manager.get_block_range(),
    )
    fetchers = build_fetchers(config_manager, sfc_client)

    if no_notify:
        notifier = Notifier()
    else:
        notifier = Notifier(load_configured_channels(config_manager))
        logger.info(f"📣 Notifying {len(notifier.channels())} channel(s)")

    return StakeWatcher(
        config_manager,
        sfc_client,
        fetchers,
        notifier,
        notify_enabled=not no_notify,
        shift_blocks=shift_blocks,
    )


async def run_until_signalled(watcher: StakeWatcher) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig_name in ('SIGINT', 'SIGTERM', 'SIGQUIT'):
        sig = getattr(signal, sig_name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug(f"Signal handler for {sig_name} not supported on this platform")
    await watcher.run(stop)


def _add_common_flags(parser, suppress=False):
    default = {'default': argparse.SUPPRESS} if suppress else {}
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging', **default)
    parser.add_argument('--no-color', action='store_true', help='Disable colored output', **default)
    parser.add_argument('--config', type=str, help='Specify which configuration profile to use (overrides ACTIVE_CONFIG)', **default)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Staking contract event watcher',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  stakewatch start                      # watch and notify
  stakewatch start --no-notify -v       # watch and only log
  stakewatch channels add telegram --token T --chat-id -100123
  stakewatch channels test
  stakewatch config validate
        """
    )
    _add_common_flags(parser)

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # start command
    start_parser = subparsers.add_parser('start', help='Start watching staking events')
    _add_common_flags(start_parser, suppress=True)
    start_parser.add_argument('--no-notify', action='store_true', help='Log events without sending notifications')
    start_parser.add_argument('--shift-blocks', type=int, help='Blocks to lag behind the head when sweeping transfers')

    # channels command
    channels_parser = subparsers.add_parser('channels', help='Notification channel management')
    _add_common_flags(channels_parser, suppress=True)
    channels_subparsers = channels_parser.add_subparsers(dest='channels_command', help='Channel commands')
    for cmd_name, cmd_info in CHANNEL_COMMANDS.items():
        cmd_parser = channels_subparsers.add_parser(cmd_name, help=cmd_info['help'])
        for arg_names, arg_kwargs in cmd_info['args']:
            cmd_parser.add_argument(*arg_names, **arg_kwargs)

    # config command
    config_parser = subparsers.add_parser('config', help='Configuration management')
    _add_common_flags(config_parser, suppress=True)
    config_subparsers = config_parser.add_subparsers(dest='config_command', help='Configuration commands')
    config_subparsers.add_parser('list', help='List all available configurations')
    config_subparsers.add_parser('show', help='Show active configuration details')
    config_validate_parser = config_subparsers.add_parser('validate', help='Validate current configuration')
    config_validate_parser.add_argument('config_name', nargs='?', help='Configuration to validate (default: active config)')

    return parser


def handle_config_command(args, config_manager: ConfigManager):
    if args.config_command is None:
        logger.error("❌ No config subcommand specified")
        logger.info("💡 Use 'stakewatch config --help' for available commands")
        sys.exit(1)

    if args.config_command == 'list':
        logger.info("📋 Available Configurations:")
        active_config = config_manager.get_active_config_name()
        for name, display_name in config_manager.list_configs().items():
            marker = "🔸" if name == active_config else "  "
            print(f"{marker} {name}: {display_name}")
        print(f"\n✅ Active: {active_config}")

    elif args.config_command == 'show':
        logger.info("📋 Active Configuration Details:")
        active_config = config_manager.get_active_config()
        active_name = config_manager.get_active_config_name()

        print(f"Name: {active_name}")
        print(f"Display Name: {active_config.get('display_name', active_name)}")
        print(f"SFC Contract: {active_config.get('sfc_contract')}")
        print(f"RPC: {', '.join(config_manager.get_rpc_urls())}")
        print(f"WebSocket RPC: {', '.join(config_manager.get_ws_rpc_urls())}")
        print(f"GraphQL: {', '.join(config_manager.get_graphql_urls()) or 'n/a'}")
        print(f"Explorer: {active_config.get('explorer_url')}")
        print(f"Min staking amount: {active_config.get('min_staking_amount')}")
        print(f"Min claim amount: {active_config.get('min_claim_amount')}")
        print(f"Min transfer amount: {active_config.get('min_transfer_amount')}")
        print(f"Database: {config_manager.get_database_path()}")

        validation = config_manager.validate_config()
        if validation['valid']:
            print("✅ Configuration is valid")
        else:
            print("❌ Configuration has issues:")
            for error in validation['errors']:
                print(f"  • {error}")
        for warning in validation['warnings']:
            print(f"  ⚠️ {warning}")

    elif args.config_command == 'validate':
        config_name = args.config_name or config_manager.get_active_config_name()
        logger.info(f"🔍 Validating configuration: {config_name}")

        validation = config_manager.validate_config(config_name)
        if validation['valid']:
            logger.info("✅ Configuration is valid")
        else:
            logger.error("❌ Configuration validation failed:")
            for error in validation['errors']:
                print(f"  • {error}")
            sys.exit(1)

        if validation['warnings']:
            logger.warning("⚠️ Configuration warnings:")
            for warning in validation['warnings']:
                print(f"  • {warning}")


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(verbose=args.verbose, no_color=args.no_color)
    try:
        try:
            config_manager = reset_config_manager_instance(config_name_override=args.config)
        except ConfigError as e:
            logger.error(f"Configuration error: {e}")
            sys.exit(1)

        if args.config:
            logger.info(f"🔧 Using configuration: {args.config}")

        if args.command == 'start':
            if args.no_notify:
                logger.warning("⚠️  Notifications are DISABLED via --no-notify flag")
            try:
                watcher = build_stake_watcher(config_manager, no_notify=args.no_notify,
                                              shift_blocks=args.shift_blocks)
                asyncio.run(run_until_signalled(watcher))
            except (ConfigError, InitialSyncError) as e:
                logger.error(f"❌ {e}")
                sys.exit(1)

        elif args.command == 'channels':
            if args.channels_command is None:
                logger.error("❌ No channels subcommand specified")
                logger.info("💡 Use 'stakewatch channels --help' for available commands")
                sys.exit(1)
            CHANNEL_COMMANDS[args.channels_command]['func'](args)

        elif args.command == 'config':
            handle_config_command(args, config_manager)

    finally:
        shutdown_logging()


if __name__ == "__main__":
    main()
