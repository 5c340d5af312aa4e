from __future__ import annotations

import threading

from compintel.store import ExpiringStore

from conftest import FakeClock


def test_entries_expire_without_a_sweep() -> None:
    clock = FakeClock()
    store: ExpiringStore[str, int] = ExpiringStore(default_ttl=10, clock=clock)
    store.set("a", 1)

    clock.advance(9.9)
    assert store.get("a") == 1

    clock.advance(0.1)
    assert store.get("a") is None
    assert "a" not in store
    assert len(store) == 0


def test_per_entry_ttl_overrides_default_and_none_never_expires() -> None:
    clock = FakeClock()
    store: ExpiringStore[str, str] = ExpiringStore(clock=clock)
    store.set("forever", "x")
    store.set("short", "y", ttl=1)

    clock.advance(10_000)

    assert store.get("forever") == "x"
    assert store.get("short") is None


def test_update_sees_expired_value_as_missing() -> None:
    clock = FakeClock()
    store: ExpiringStore[str, int] = ExpiringStore(clock=clock)
    store.set("job", 1, ttl=5)
    clock.advance(6)

    seen: list[int | None] = []

    def bump(current: int | None) -> int:
        seen.append(current)
        return (current or 0) + 1

    assert store.update("job", bump) == 1
    assert seen == [None]


def test_update_replaces_expiry() -> None:
    clock = FakeClock()
    store: ExpiringStore[str, str] = ExpiringStore(clock=clock)
    store.update("job", lambda _: "completed", ttl=5)
    store.update("job", lambda _: "processing")

    clock.advance(60)
    assert store.get("job") == "processing"


def test_sweep_removes_only_expired_entries() -> None:
    clock = FakeClock()
    store: ExpiringStore[str, int] = ExpiringStore(clock=clock)
    store.set("old", 1, ttl=1)
    store.set("also-old", 2, ttl=2)
    store.set("fresh", 3, ttl=100)
    clock.advance(5)

    assert store.sweep() == 2
    assert store.keys() == ["fresh"]
    assert store.sweep() == 0


def test_pop_and_clear() -> None:
    store: ExpiringStore[str, int] = ExpiringStore()
    store.set("a", 1)
    store.set("b", 2)

    assert store.pop("a") == 1
    assert store.pop("a") is None
    store.clear()
    assert store.values() == []


def test_concurrent_updates_are_serialised() -> None:
    store: ExpiringStore[str, int] = ExpiringStore()

    def worker() -> None:
        for _ in range(500):
            store.update("counter", lambda current: (current or 0) + 1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get("counter") == 4000
