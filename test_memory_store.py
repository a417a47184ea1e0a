from __future__ import annotations

import math
from pathlib import Path

from memory.store import SQLiteKeyValueStore, round_number, to_number


def test_user_and_global_values_round_trip(tmp_path: Path):
    store = SQLiteKeyValueStore(db_path=str(tmp_path / "kv.db"))

    try:
        assert store.set_user("u1", "nickname", "bob") is True
        assert store.set_user("u1", "vip", True) is True
        assert store.set_global("motd", {"text": "hi"}) is True

        assert store.get_user("u1", "nickname") == "bob"
        assert store.get_user("u1", "vip") is True
        assert store.get_user("u2", "nickname", "none") == "none"
        assert store.get_global("motd") == {"text": "hi"}

        assert store.delete_user("u1", "nickname") is True
        assert store.get_user("u1", "nickname") is None
        assert store.delete_user("u1", "nickname") is False
    finally:
        store.close()


def test_incr_initializes_from_default_then_applies_delta(tmp_path: Path):
    store = SQLiteKeyValueStore(db_path=str(tmp_path / "kv.db"))

    try:
        assert store.incr_user("u1", "coins", 5, default=100) == 105
        assert store.incr_user("u1", "coins", -10, default=100) == 95
        assert store.incr_global("visits", 1) == 1
        assert store.incr_global("visits", 0.25) == 1.25
        assert store.get_global("visits") == 1.25
    finally:
        store.close()


def test_values_persist_across_connections(tmp_path: Path):
    db_path = str(tmp_path / "kv.db")
    first = SQLiteKeyValueStore(db_path=db_path)
    first.set_user("u1", "score", 7)
    first.close()

    second = SQLiteKeyValueStore(db_path=db_path)
    try:
        assert second.get_user("u1", "score") == 7
    finally:
        second.close()


def test_leaderboard_orders_by_value_with_stable_ties(tmp_path: Path):
    store = SQLiteKeyValueStore(db_path=str(tmp_path / "kv.db"))

    try:
        store.set_user("alice", "score", 10)
        store.set_user("bob", "score", 30)
        store.set_user("carol", "score", 10)
        store.set_user("dave", "score", "not a number")
        store.set_user("erin", "other", 99)

        assert store.get_leaderboard("score", limit=10) == [("bob", 30), ("alice", 10), ("carol", 10)]
        assert store.get_leaderboard("score", limit=2, ascending=True) == [("alice", 10), ("carol", 10)]

        assert store.get_user_rank("carol", "score") == {"rank": 3, "value": 10, "total": 3}
        assert store.get_user_rank("nobody", "score") == {"rank": 0, "value": 0, "total": 3}
        assert store.count_users_with_key("score") == 4
    finally:
        store.close()


def test_number_helpers() -> None:
    assert to_number("") == 0.0
    assert to_number(" 3.5 ") == 3.5
    assert to_number(True) == 1.0
    assert math.isnan(to_number("abc"))
    assert to_number(None, default=7.0) == 7.0

    assert round_number(4.0) == 4
    assert isinstance(round_number(4.0), int)
    assert round_number(1 / 3) == 0.33
