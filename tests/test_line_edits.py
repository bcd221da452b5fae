from __future__ import annotations

from cao.execution.line_edits import apply_line_edit, canonicalize_structured, number_lines

TEXT = "one\ntwo\nthree\nfour\n"


def test_replace_range() -> None:
    edit = apply_line_edit(TEXT, 2, 3, "TWO\nTHREE\nEXTRA")

    assert edit.mode == "replace"
    assert edit.content == "one\nTWO\nTHREE\nEXTRA\nfour\n"
    assert (edit.lines_removed, edit.lines_inserted, edit.total_lines) == (2, 3, 5)


def test_insert_when_start_exceeds_end() -> None:
    edit = apply_line_edit(TEXT, 3, 2, "inserted")

    assert edit.mode == "insert"
    assert edit.content == "one\ntwo\ninserted\nthree\nfour\n"
    assert edit.lines_removed == 0


def test_append_past_end_and_empty_file() -> None:
    appended = apply_line_edit(TEXT, 99, 99, "five")
    empty = apply_line_edit("", 1, 1, "first")

    assert appended.mode == "append"
    assert appended.content.endswith("four\nfive\n")
    assert empty.content == "first\n"


def test_delete_lines_with_empty_content_keeps_missing_trailing_newline() -> None:
    edit = apply_line_edit("a\nb\nc", 2, 2, "")

    assert edit.content == "a\nc"
    assert edit.lines_inserted == 0


def test_end_line_is_clamped() -> None:
    edit = apply_line_edit(TEXT, 3, 40, "tail")

    assert edit.end_line == 4
    assert edit.content == "one\ntwo\ntail\n"


def test_number_lines_pads_numbers() -> None:
    content = "\n".join(f"line {n}" for n in range(1, 11))

    rendered = number_lines(content).splitlines()

    assert rendered[0] == " 1| line 1"
    assert rendered[-1] == "10| line 10"


def test_json_is_reformatted_and_invalid_json_warns() -> None:
    formatted, warnings = canonicalize_structured("data.json", '{"a":1,"b":[1,2]}')
    broken, broken_warnings = canonicalize_structured("data.json", '{"a": 1,')

    assert formatted == '{\n  "a": 1,\n  "b": [\n    1,\n    2\n  ]\n}\n'
    assert warnings == []
    assert broken == '{"a": 1,'
    assert "not valid JSON" in broken_warnings[0]


def test_yaml_is_validated_not_rewritten() -> None:
    content = "a:   1\nb: [1, 2]\n"

    same, warnings = canonicalize_structured("conf.yml", content)
    _, broken = canonicalize_structured("conf.yaml", "a: [1, 2\n")

    assert same == content
    assert warnings == []
    assert "not valid YAML" in broken[0]


def test_other_files_are_untouched() -> None:
    assert canonicalize_structured("notes.txt", "{not json") == ("{not json", [])
