from __future__ import annotations

import json

import pytest

from cao.parsing import RAW_OUTPUT_LIMIT, clean_parameter_markup, parse_agent_response


def test_direct_json_is_parsed() -> None:
    raw = json.dumps(
        {
            "reasoning": "Read the file first.",
            "operations": [{"type": "read_file", "params": {"path": "src/app.py"}}],
            "blackboard_entry": {"entry_type": "planning", "content": "Start with app.py"},
            "status": "in_progress",
        }
    )

    response = parse_agent_response(raw)

    assert response.parse_method == "direct"
    assert response.reasoning == "Read the file first."
    assert [op.type for op in response.operations] == ["read_file"]
    assert response.operations[0].params == {"path": "src/app.py"}
    assert response.blackboard_entry is not None
    assert response.blackboard_entry.entry_type == "planning"
    assert not response.is_parse_error


def test_prose_wrapped_fence_uses_last_block() -> None:
    raw = (
        "Here is an example:\n```json\n{\"reasoning\": \"old\", \"operations\": [], \"status\": \"in_progress\"}\n```\n"
        "And the real answer:\n```json\n{\"reasoning\": \"new\", \"operations\": [], \"status\": \"completed\"}\n```\n"
    )

    response = parse_agent_response(raw)

    assert response.parse_method == "last_fence"
    assert response.reasoning == "new"
    assert response.status == "completed"


def test_fence_with_trailing_commas_and_smart_quotes_is_repaired() -> None:
    raw = "```json\n{“reasoning”: \"ok\", \"operations\": [],}\n```"

    response = parse_agent_response(raw)

    assert response.parse_method == "any_fence"
    assert response.reasoning == "ok"


def test_brace_span_recovers_object_inside_prose() -> None:
    raw = 'Sure! {"reasoning": "inline", "operations": [], "status": "completed"} Hope that helps.'

    response = parse_agent_response(raw)

    assert response.parse_method == "brace_span"
    assert response.status == "completed"


def test_heuristic_stage_finds_object_after_stray_braces() -> None:
    raw = 'Plan {draft} then: {"reasoning": "picked", "operations": [], "status": "in_progress"} {end'

    response = parse_agent_response(raw)

    assert response.parse_method == "heuristic_object"
    assert response.reasoning == "picked"


def test_parameter_markup_is_stripped() -> None:
    raw = (
        '{"reasoning": "x", "operations": [], "status": "in_progress", '
        '"blackboard_entry": "\\n<parameter name=entry_type>progress", "content": "kept note"}</parameter>'
    )

    cleaned = clean_parameter_markup(raw)
    response = parse_agent_response(raw)

    assert "<parameter" not in cleaned
    assert response.parse_method == "markup_cleaned"
    assert response.blackboard_entry is not None
    assert response.blackboard_entry.content == "kept note"


def test_unparseable_output_becomes_parse_error() -> None:
    raw = "I could not decide. " * 300

    response = parse_agent_response(raw)

    assert response.is_parse_error
    assert response.operations == []
    assert response.reasoning == "Failed to parse agent response as JSON."
    assert response.raw_output is not None
    assert len(response.raw_output) == RAW_OUTPUT_LIMIT


def test_non_object_json_is_rejected() -> None:
    assert parse_agent_response("[1, 2, 3]").is_parse_error
    assert parse_agent_response("").is_parse_error


def test_operations_are_normalised() -> None:
    raw = json.dumps(
        {
            "reasoning": None,
            "operations": json.dumps(
                [
                    {"type": "read_file", "path": "a.py"},
                    {"operation": "search", "parameters": {"keyword": "todo"}},
                    {"name": "list_files", "params": "{\"path_prefix\": \"src\"}"},
                    "not an operation",
                ]
            ),
            "status": "COMPLETED",
        }
    )

    response = parse_agent_response(raw)

    assert response.reasoning == ""
    assert response.status == "completed"
    assert [op.type for op in response.operations] == ["read_file", "search", "list_files"]
    assert [op.index for op in response.operations] == [0, 1, 2]
    assert response.operations[0].params == {"path": "a.py"}
    assert response.operations[1].params == {"keyword": "todo"}
    assert response.operations[2].params == {"path_prefix": "src"}


def test_blackboard_string_and_unknown_type_default_to_progress() -> None:
    from_string = parse_agent_response(
        json.dumps({"reasoning": "r", "operations": [], "blackboard_entry": "content: remember this"})
    )
    unknown_type = parse_agent_response(
        json.dumps(
            {"reasoning": "r", "operations": [], "blackboard_entry": {"entry_type": "musing", "content": "hm"}}
        )
    )

    assert from_string.blackboard_entry is not None
    assert from_string.blackboard_entry.entry_type == "progress"
    assert from_string.blackboard_entry.content == "remember this"
    assert from_string.status == "in_progress"
    assert unknown_type.blackboard_entry is not None
    assert unknown_type.blackboard_entry.entry_type == "progress"


def test_structured_payload_wins_over_text() -> None:
    structured = {"reasoning": "from tool", "operations": [], "status": "completed"}

    response = parse_agent_response("garbage", structured=structured)

    assert response.parse_method == "structured"
    assert response.reasoning == "from tool"


def test_single_operation_object_is_not_wrapped() -> None:
    operation = {"type": "read_file", "params": {"path": "a.py"}}
    direct = parse_agent_response(json.dumps({"reasoning": "r", "operations": operation, "status": "in_progress"}))
    encoded = parse_agent_response(
        json.dumps({"reasoning": "r", "operations": json.dumps(operation), "status": "in_progress"})
    )

    assert not direct.is_parse_error
    assert direct.operations == []
    assert encoded.operations == []


@pytest.mark.parametrize(
    "raw",
    [
        '{"reasoning": "x", "operations": [{"type": "read_file"',
        '```json\n{"reasoning": "x", "operations": [',
        '{"reasoning": "unterminated string',
    ],
)
def test_truncated_json_degrades_to_parse_error(raw: str) -> None:
    response = parse_agent_response(raw)

    assert response.is_parse_error
    assert response.operations == []
    assert response.raw_output == raw


def test_blackboard_string_mentioning_content_is_kept_whole() -> None:
    response = parse_agent_response(
        json.dumps({"reasoning": "r", "operations": [], "blackboard_entry": "Updated content of README.md"})
    )

    assert response.blackboard_entry is not None
    assert response.blackboard_entry.content == "Updated content of README.md"
