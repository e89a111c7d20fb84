import threading

import pytest

from x402_agent.replay_guard import InMemoryReplayGuard, SQLiteReplayGuard, normalize_tx_hash, open_replay_guard

TX = "0x" + "1f" * 32


@pytest.fixture(params=["memory", "sqlite"])
def guard(request, tmp_path):
    if request.param == "memory":
        return InMemoryReplayGuard()
    return SQLiteReplayGuard(tmp_path / "used.db")


def test_first_insert_wins(guard):
    assert not guard.contains(TX)
    assert guard.compare_and_insert(TX) is True
    assert guard.compare_and_insert(TX) is False
    assert guard.contains(TX)
    assert len(guard) == 1


def test_hash_spelling_does_not_bypass_guard(guard):
    assert guard.compare_and_insert(TX.upper().replace("0X", "0x"))
    assert not guard.compare_and_insert(TX[2:])
    assert normalize_tx_hash(" ABC ") == "0xabc"


def test_concurrent_presentation_consumes_once(guard):
    workers = 16
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def present():
        barrier.wait()
        ok = guard.compare_and_insert(TX, context="payer")
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=present) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1, f"{results.count(True)} requests consumed the same transaction"


def test_sqlite_guard_survives_restart(tmp_path):
    path = tmp_path / "nested" / "used.db"
    SQLiteReplayGuard(path).compare_and_insert(TX)
    assert SQLiteReplayGuard(path).contains(TX)


def test_open_replay_guard_selects_backend(tmp_path):
    assert isinstance(open_replay_guard(":memory:"), InMemoryReplayGuard)
    assert isinstance(open_replay_guard(""), InMemoryReplayGuard)
    assert isinstance(open_replay_guard(str(tmp_path / "g.db")), SQLiteReplayGuard)


def test_sqlite_guard_closes_its_connections(tmp_path, monkeypatch):
    from x402_agent import replay_guard

    opened = []
    real_connect = replay_guard.sqlite3.connect

    def tracking_connect(*args, **kwargs):
        conn = real_connect(*args, **kwargs)
        opened.append(conn)
        return conn

    monkeypatch.setattr(replay_guard.sqlite3, "connect", tracking_connect)
    guard = SQLiteReplayGuard(tmp_path / "payments.db")
    assert guard.compare_and_insert("0xabc") is True
    assert guard.contains("0xabc")
    assert len(guard) == 1

    assert len(opened) == 4
    for conn in opened:
        with pytest.raises(replay_guard.sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
