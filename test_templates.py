import random
from datetime import datetime
from pathlib import Path

from memory.store import SQLiteKeyValueStore
from shared.models import MessageEvent
from workflow.context import ExecutionContext
from workflow.templates import TemplateEngine, extract_json_path, js_weekday, render_value

FIXED_NOW = datetime(2024, 3, 10, 9, 5, 7)  # a Sunday


def _event(**overrides) -> MessageEvent:
    payload = {
        "user_id": "10001",
        "group_id": "20002",
        "message_type": "group",
        "raw_message": "hello",
        "message_id": "m-1",
    }
    payload.update(overrides)
    return MessageEvent(**payload)


def _engine(tmp_path: Path) -> tuple[TemplateEngine, SQLiteKeyValueStore]:
    store = SQLiteKeyValueStore(db_path=str(tmp_path / "kv.db"))
    return TemplateEngine(store, now=lambda: FIXED_NOW, rng=random.Random(7)), store


def test_builtins_resolve_identity_and_clock(tmp_path: Path) -> None:
    engine, store = _engine(tmp_path)
    try:
        text = engine.render(
            "{user_id}@{group_id} {content} {date} {time} {weekday} {weekday_cn} {at_user}",
            _event(),
            "hello",
            ExecutionContext(),
        )
        assert text == "10001@20002 hello 2024-03-10 09:05:07 0 周日 [CQ:at,qq=10001]"
    finally:
        store.close()


def test_captures_variables_and_storage_resolve_in_priority_order(tmp_path: Path) -> None:
    engine, store = _engine(tmp_path)
    try:
        store.set_user("10001", "coins", 42)
        ctx = ExecutionContext(captures=["alice", "30"], variables={"greeting": "hi", "user_id": "shadowed"})
        text = engine.render("{greeting} {$1} {$2} {storage.coins} {user_id}", _event(), "x", ctx)
        assert text == "hi alice 30 42 10001"
    finally:
        store.close()


def test_unresolved_tokens_are_left_verbatim(tmp_path: Path) -> None:
    engine, store = _engine(tmp_path)
    try:
        source = "no {such_var} and {$3} here"
        assert engine.render(source, _event(), "x", ExecutionContext(captures=["a"])) == source
        assert engine.render("plain text", _event(), "x", ExecutionContext()) == "plain text"
    finally:
        store.close()


def test_substitution_is_single_pass(tmp_path: Path) -> None:
    engine, store = _engine(tmp_path)
    try:
        ctx = ExecutionContext(variables={"a": "{b}", "b": "deep"})
        assert engine.render("{a}", _event(), "x", ctx) == "{b}"
    finally:
        store.close()


def test_internal_binary_key_is_not_substituted(tmp_path: Path) -> None:
    engine, store = _engine(tmp_path)
    try:
        ctx = ExecutionContext(variables={"api_binary": b"\x89PNG"})
        assert engine.render("{api_binary}", _event(), "x", ctx) == "{api_binary}"
    finally:
        store.close()


def test_response_template_resolves_json_paths(tmp_path: Path) -> None:
    engine, store = _engine(tmp_path)
    try:
        ctx = ExecutionContext(
            variables={
                "api_json": {"data": {"items": [{"name": "first"}, {"name": "second"}]}, "ok": True},
                "api_status": 200,
            }
        )
        text = engine.render_response_template(
            "{data.items[1].name} {ok} {api_status} {data.missing}|", _event(), "x", ctx
        )
        assert text == "second true 200 |"
    finally:
        store.close()


def test_value_rendering_and_helpers() -> None:
    assert render_value(None) == ""
    assert render_value(3.0) == "3"
    assert render_value(2.5) == "2.5"
    assert render_value(False) == "false"
    assert render_value(["a", 1]) == '["a", 1]'
    assert extract_json_path([{"a": 1}], "0.a") == 1
    assert extract_json_path({"a": None}, "a.b") == ""
    assert js_weekday(datetime(2024, 3, 11)) == 1
