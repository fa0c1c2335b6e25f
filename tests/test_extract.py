import json

from polyrev.extract import extract_json, extract_json_payload, extract_yaml_mapping, unwrap_envelope


def test_unwrap_envelope() -> None:
    raw = json.dumps({"type": "result", "result": "hello", "session_id": "abc"})
    assert unwrap_envelope(raw) == "hello"


def test_unwrap_envelope_ignores_other_json() -> None:
    assert unwrap_envelope('{"findings": []}') is None
    assert unwrap_envelope('{"result": 3}') is None
    assert unwrap_envelope("not json") is None


def test_extract_whole_string() -> None:
    assert extract_json('  {"a": 1}  ') == {"a": 1}


def test_extract_array_only_when_allowed() -> None:
    assert extract_json("[1, 2]") is None
    assert extract_json("[1, 2]", allow_array=True) == [1, 2]


def test_extract_first_valid_fenced_block() -> None:
    raw = "intro\n```\nnot json\n```\nthen\n```json\n{\"b\": 2}\n```\n"
    assert extract_json(raw) == {"b": 2}


def test_extract_brace_span_from_prose() -> None:
    raw = 'Sure! Here you go: {"outer": {"inner": [1, 2]}} Hope that helps.'
    assert extract_json(raw) == {"outer": {"inner": [1, 2]}}


def test_extract_nothing() -> None:
    assert extract_json("no structure here") is None


def test_extract_payload_prefers_envelope_contents() -> None:
    inner = "Result:\n```json\n{\"selected\": [\"api\"]}\n```"
    raw = json.dumps({"result": inner})
    assert extract_json_payload(raw) == {"selected": ["api"]}


def test_yaml_from_fenced_block() -> None:
    raw = "Revised:\n```yaml\ntasks:\n  - title: A\n```\n"
    assert extract_yaml_mapping(raw, "tasks") == {"tasks": [{"title": "A"}]}


def test_yaml_from_tasks_marker() -> None:
    raw = "Revised plan: see below: done\ntasks:\n  - title: B\n"
    assert extract_yaml_mapping(raw, "tasks") == {"tasks": [{"title": "B"}]}


def test_yaml_requires_key() -> None:
    assert extract_yaml_mapping("other: 1\n", "tasks") is None
