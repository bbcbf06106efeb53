import threading
import time

from tusvault.locks import KeyedLocks


def test_same_key_is_serialized() -> None:
    locks = KeyedLocks()
    active = 0
    peak = 0
    counter_lock = threading.Lock()

    def _worker() -> None:
        nonlocal active, peak
        with locks.hold("upload-1"):
            with counter_lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with counter_lock:
                active -= 1

    threads = [threading.Thread(target=_worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1
    assert locks.active_keys() == 0


def test_different_keys_do_not_block_each_other() -> None:
    locks = KeyedLocks()
    entered = threading.Event()

    def _other() -> None:
        with locks.hold("upload-b"):
            entered.set()

    with locks.hold("upload-a"):
        thread = threading.Thread(target=_other)
        thread.start()
        assert entered.wait(timeout=2)
        thread.join()
        assert locks.active_keys() == 1
    assert locks.active_keys() == 0


def test_lock_is_released_when_body_raises() -> None:
    locks = KeyedLocks()
    try:
        with locks.hold("upload-1"):
            raise ValueError("boom")
    except ValueError:
        pass
    with locks.hold("upload-1"):
        assert locks.active_keys() == 1
    assert locks.active_keys() == 0
