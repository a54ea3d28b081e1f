import threading
import time

from leadledger.platform.locks import KeyedLockRegistry


def test_same_key_is_serialized() -> None:
    registry = KeyedLockRegistry()
    active = 0
    peak = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal active, peak
        with registry.hold("lead-1"):
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with guard:
                active -= 1

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1
    assert registry.active_keys() == []


def test_different_keys_do_not_block_each_other() -> None:
    registry = KeyedLockRegistry()
    entered = threading.Event()
    release = threading.Event()

    def hold_first() -> None:
        with registry.hold("lead-1"):
            entered.set()
            release.wait(timeout=5)

    thread = threading.Thread(target=hold_first)
    thread.start()
    assert entered.wait(timeout=5)

    with registry.hold("lead-2"):
        assert sorted(registry.active_keys()) == ["lead-1", "lead-2"]

    release.set()
    thread.join()
    assert registry.active_keys() == []


def test_entry_released_when_body_raises() -> None:
    registry = KeyedLockRegistry()
    try:
        with registry.hold("lead-1"):
            raise ValueError("boom")
    except ValueError:
        pass
    assert registry.active_keys() == []
    with registry.hold("lead-1"):
        assert registry.active_keys() == ["lead-1"]
