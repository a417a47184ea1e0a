from shared.models import TriggerNode
from workflow.triggers import first_matching_trigger, match, match_trigger


def _trigger(node_id: str, trigger_type: str, content: str) -> TriggerNode:
    return TriggerNode(id=node_id, type="trigger", data={"trigger_type": trigger_type, "trigger_content": content})


def test_text_trigger_kinds() -> None:
    assert match("exact", "ping", "ping") == []
    assert match("exact", "pingx", "ping") is None
    assert match("contains", "我的分数是多少", "分数") == []
    assert match("contains", "hello", "分数") is None
    assert match("startswith", "/roll 6", "/roll") == []
    assert match("startswith", "roll /roll", "/roll") is None
    assert match("any", "早上好呀", "晚安|早上好") == []
    assert match("any", "午安", "晚安|早上好") is None


def test_regex_trigger_returns_ordered_captures() -> None:
    assert match("regex", "give alice 30", r"^give (\w+) (\d+)$") == ["alice", "30"]
    assert match("regex", "say hi", r"^say (\w+)( loud)?$") == ["hi", ""]
    assert match("regex", "nothing", r"^give (\w+)$") is None


def test_invalid_regex_does_not_match() -> None:
    assert match("regex", "abc", "([unclosed") is None


def test_scheduled_kinds_and_empty_values_never_match() -> None:
    assert match("scheduled", "anything", "anything") is None
    assert match("timer", "anything", "anything") is None
    assert match("exact", "", "") is None
    assert match("contains", "abc", "") is None
    assert match("no_such_kind", "abc", "abc") is None


def test_trigger_value_is_used_when_content_is_empty() -> None:
    node = TriggerNode(id="t1", type="trigger", data={"trigger_type": "exact", "trigger_value": "hi"})
    assert match_trigger(node, "hi") == []


def test_first_matching_trigger_wins() -> None:
    triggers = [
        _trigger("t1", "exact", "nope"),
        _trigger("t2", "regex", r"^(\d+)$"),
        _trigger("t3", "contains", "1"),
    ]
    found = first_matching_trigger(triggers, "123")
    assert found is not None
    node, captures = found
    assert node.id == "t2"
    assert captures == ["123"]
    assert first_matching_trigger(triggers, "abc") is None
