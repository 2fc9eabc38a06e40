import threading

from keepers import ReadWriteLock, ValidatorRegistry, DelegateHistory, RewardHistory
from sfc_events import Validator, DelegateInfo


def delegate(n):
    return DelegateInfo(delegator="0x1", to_validator_id=1, amount=float(n), block_number=n, tx_hash=f"0x{n:x}")


def test_registry_upsert_last_write_wins():
    registry = ValidatorRegistry()
    registry.add(Validator(id=1, address="0xaaa"))
    registry.add(Validator(id=1, address="0xbbb"))
    assert len(registry) == 1
    assert registry.get_by_id(1).address == "0xbbb"


def test_registry_identical_upsert_is_unchanged():
    registry = ValidatorRegistry()
    validator = Validator(id=4, address="0xaaa", created_epoch=9, is_active=True)
    registry.add(validator)
    registry.add(Validator(id=4, address="0xaaa", created_epoch=9, is_active=True))
    assert len(registry) == 1
    assert registry.get_by_id(4) == validator


def test_registry_missing_id():
    assert ValidatorRegistry().get_by_id(99) is None


def test_registry_batch_and_snapshot_copy():
    registry = ValidatorRegistry()
    registry.add_batch(Validator(id=i, address=f"0x{i}") for i in range(1, 11))
    snapshot = registry.snapshot()
    registry.add(Validator(id=11, address="0x11"))
    assert len(snapshot) == 10
    assert 11 not in snapshot
    assert len(registry) == 11


def test_history_get_last_on_empty():
    assert DelegateHistory().get_last() == (None, False)


def test_history_appends_in_order():
    history = DelegateHistory()
    history.add(delegate(1))
    history.add_batch([delegate(2), delegate(3)])
    last, ok = history.get_last()
    assert ok
    assert last.block_number == 3
    assert len(history) == 3
    assert history.name == "delegate"
    assert RewardHistory().name == "reward"


def test_history_concurrent_writers_lose_nothing():
    history = DelegateHistory()

    def worker(offset):
        for i in range(250):
            history.add(delegate(offset + i))
            history.get_last()

    threads = [threading.Thread(target=worker, args=(n * 1000,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(history) == 1000


def test_readers_share_the_lock():
    lock = ReadWriteLock()
    inside = threading.Barrier(2, timeout=2)
    errors = []

    def reader():
        try:
            with lock.read_locked():
                # both readers must be inside at the same time to pass the barrier
                inside.wait()
        except threading.BrokenBarrierError as e:
            errors.append(e)

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors


def test_writer_excludes_readers():
    lock = ReadWriteLock()
    events = []
    writer_in = threading.Event()

    def writer():
        with lock.write_locked():
            writer_in.set()
            events.append("write-start")
            threading.Event().wait(0.05)
            events.append("write-end")

    def reader():
        writer_in.wait()
        with lock.read_locked():
            events.append("read")

    tw = threading.Thread(target=writer)
    tr = threading.Thread(target=reader)
    tw.start()
    tr.start()
    tw.join()
    tr.join()

    assert events == ["write-start", "write-end", "read"]
