import asyncio
from unittest.mock import MagicMock

import pytest

from keepers import ValidatorRegistry
from sfc_events import Validator, DelegateInfo, TransferLog
from stake_watcher import StakeWatcher, InitialSyncError
from watch_supervisor import WatchState
from fakes import FakeSFCClient, wait_until


def make_config(**overrides):
    config = MagicMock()
    config.get_min_staking_amount.return_value = overrides.get('min_staking_amount', 100.0)
    config.get_min_claim_amount.return_value = overrides.get('min_claim_amount', 10.0)
    config.get_min_transfer_amount.return_value = overrides.get('min_transfer_amount', 1000.0)
    config.get_backoff_seconds.return_value = 0.01
    config.get_shift_blocks.return_value = 5
    config.get_explorer_url.return_value = "https://ftmscan.com"
    config.get_contact_book.return_value = {}
    config.get_validator_book.return_value = {}
    config.get_display_name.return_value = "Opera Mainnet"
    return config


def make_fetcher(name, validators=None, error=None, transfers=None):
    fetcher = MagicMock()
    fetcher.name = name
    if error is not None:
        fetcher.get_list_validators.side_effect = error
        fetcher.get_transfers_by_block.side_effect = error
    else:
        fetcher.get_list_validators.return_value = validators or []
        fetcher.get_transfers_by_block.return_value = transfers or []
    return fetcher


def make_watcher(fetchers, notifier=None, registry=None, **kwargs):
    return StakeWatcher(
        make_config(),
        FakeSFCClient(),
        fetchers,
        notifier or MagicMock(),
        validators=registry,
        **kwargs,
    )


def validators(count):
    return [Validator(id=i, address=f"0x{i:040x}", is_active=True) for i in range(1, count + 1)]


def test_initial_sync_skips_empty_source():
    inner = ValidatorRegistry()
    registry = MagicMock(wraps=inner)
    graphql = make_fetcher("graphql", validators=[])
    node = make_fetcher("node", validators=validators(12000))
    watcher = make_watcher([graphql, node], registry=registry)

    assert watcher.init_fetch_validators() == 12000

    registry.add_batch.assert_called_once()
    assert len(inner) == 12000
    assert inner.get_by_id(12000) is not None


def test_initial_sync_skips_failing_source():
    graphql = make_fetcher("graphql", error=ConnectionError("timeout"))
    node = make_fetcher("node", validators=validators(3))
    watcher = make_watcher([graphql, node])

    assert watcher.init_fetch_validators() == 3
    graphql.get_list_validators.assert_called_once()


def test_initial_sync_uses_first_answering_source_only():
    graphql = make_fetcher("graphql", validators=validators(2))
    node = make_fetcher("node", validators=validators(5))
    watcher = make_watcher([graphql, node])

    watcher.init_fetch_validators()

    assert len(watcher.validators) == 2
    node.get_list_validators.assert_not_called()


def test_initial_sync_fails_when_every_source_fails():
    watcher = make_watcher([
        make_fetcher("graphql", error=ConnectionError("timeout")),
        make_fetcher("node", validators=[]),
    ])

    with pytest.raises(InitialSyncError):
        watcher.init_fetch_validators()
    assert len(watcher.validators) == 0


@pytest.mark.asyncio
async def test_transfer_sweep_lags_head_by_shift_blocks():
    transfers = [TransferLog(block_number=95, tx_hash="0x1", from_address="0xa", to_address="0xb", amount=5000.0)]
    graphql = make_fetcher("graphql", error=ConnectionError("down"))
    node = make_fetcher("node", transfers=transfers)
    watcher = make_watcher([graphql, node])

    result = await watcher.collect_transfers({"number": hex(100)})

    assert result == transfers
    graphql.get_transfers_by_block.assert_called_once_with(95)
    node.get_transfers_by_block.assert_called_once_with(95)


@pytest.mark.asyncio
async def test_transfer_sweep_clamps_at_genesis():
    node = make_fetcher("node", transfers=[])
    watcher = make_watcher([node], shift_blocks=10)

    assert await watcher.collect_transfers({"number": "0x3"}) == []
    node.get_transfers_by_block.assert_called_once_with(0)


@pytest.mark.asyncio
async def test_transfer_sweep_all_sources_failing_yields_nothing():
    watcher = make_watcher([make_fetcher("node", error=ConnectionError("down"))])
    assert await watcher.collect_transfers({"number": hex(50)}) == []


def test_categories_cover_every_event_type():
    watcher = make_watcher([make_fetcher("node", validators=validators(1))])
    names = [category.name for category in watcher.build_categories()]
    assert names == [
        'created_validator', 'delegate', 'undelegate', 'locked_stake',
        'unlocked_stake', 'reward_claim', 'transfer',
    ]


def test_staking_threshold_boundaries():
    watcher = make_watcher([make_fetcher("node", validators=validators(1))])
    delegate = next(c for c in watcher.build_categories() if c.name == 'delegate')

    def info(amount):
        return DelegateInfo(delegator="0x1", to_validator_id=1, amount=amount, block_number=1, tx_hash="0x1")

    assert delegate.accept(info(150.0))
    assert not delegate.accept(info(100.0))
    assert not delegate.accept(info(50.0))


def test_disabled_notifications_only_log():
    notifier = MagicMock()
    watcher = make_watcher([make_fetcher("node", validators=validators(1))], notifier=notifier, notify_enabled=False)
    watcher.notify("hello")
    notifier.broadcast.assert_not_called()


@pytest.mark.asyncio
async def test_run_relays_events_until_stopped():
    notifier = MagicMock()
    watcher = make_watcher([make_fetcher("node", validators=validators(5))], notifier=notifier)
    stop = asyncio.Event()
    task = asyncio.create_task(watcher.run(stop))

    client = watcher.sfc_client
    await wait_until(lambda: len(client.subscriptions) == 7)
    await wait_until(lambda: notifier.broadcast.call_count == 1)
    notifier.broadcast.assert_any_call("stake watcher start (Opera Mainnet)")

    delegate_subscription = client.subscriptions['delegate'][0]
    delegate_subscription.queue.put_nowait(
        DelegateInfo(delegator="0x1", to_validator_id=5, amount=250.0, block_number=10, tx_hash="0xfeed")
    )
    await wait_until(lambda: notifier.broadcast.call_count == 2)
    message = notifier.broadcast.call_args[0][0]
    assert "delegation event" in message
    assert "0xfeed" in message
    assert len(watcher.delegates) == 1

    stop.set()
    await asyncio.wait_for(task, timeout=2)

    assert all(supervisor.state == WatchState.STOPPED for supervisor in watcher.supervisors)
    assert all(subs[0].closed for subs in client.subscriptions.values())


@pytest.mark.asyncio
async def test_run_fails_fast_when_validator_sync_fails():
    watcher = make_watcher([make_fetcher("node", error=ConnectionError("down"))])
    with pytest.raises(InitialSyncError):
        await watcher.run(asyncio.Event())
    assert watcher.supervisors == []


@pytest.mark.asyncio
async def test_created_validator_is_recorded_before_notifying():
    notifier = MagicMock()
    watcher = make_watcher([make_fetcher("node", validators=validators(1))], notifier=notifier)
    seen = []
    notifier.broadcast.side_effect = lambda message: seen.append((message, watcher.validators.get_by_id(42)))

    stop = asyncio.Event()
    task = asyncio.create_task(watcher.run(stop))
    client = watcher.sfc_client
    await wait_until(lambda: 'created_validator' in client.subscriptions)
    client.subscriptions['created_validator'][0].queue.put_nowait(
        Validator(id=42, address="0x" + "42" * 20, is_active=True)
    )
    await wait_until(lambda: any("created validator" in message for message, _ in seen))
    validator = next(v for message, v in seen if "created validator" in message)
    assert validator is not None
    assert validator.id == 42

    stop.set()
    await asyncio.wait_for(task, timeout=2)
