from __future__ import annotations

from cao.memory.schema import BlackboardEntry, BlackboardEntryType
from cao.prompts import (
    PromptContext,
    PromptSection,
    assemble_prompt,
    default_prompt_sections,
    preview_prompt,
    substitute_variables,
)
from cao.tools.catalog import active_tools, apply_custom_descriptions, build_response_schema, default_tools


def _context(**overrides) -> PromptContext:
    values = {"tools": active_tools(default_tools(), expose_project=False)}
    values.update(overrides)
    return PromptContext(**values)


def test_substitution_is_single_pass_and_keeps_unknown_names() -> None:
    text = substitute_variables("{{A}} and {{UNKNOWN}}", {"A": "{{B}}", "B": "nested"})

    assert text == "{{B}} and {{UNKNOWN}}"


def test_sections_render_in_order_with_titles() -> None:
    prompt = assemble_prompt(default_prompt_sections(), _context(current_iteration=3, max_iterations=9))

    identity = prompt.index("=== IDENTITY ===")
    tools = prompt.index("=== AVAILABLE TOOLS ===")
    rules = prompt.index("=== CRITICAL RULES ===")
    assert identity < tools < rules
    assert "iteration 3 of at most 9" in prompt
    assert "{{" not in prompt


def test_attachment_state_selects_one_variant() -> None:
    without = assemble_prompt(default_prompt_sections(), _context())
    attached = assemble_prompt(
        default_prompt_sections(),
        _context(attached_files=[{"path": "src/app.py", "id": "file-1"}]),
    )

    assert "=== GETTING STARTED ===" in without
    assert "=== ATTACHED FILES ===" not in without
    assert "- src/app.py (file_id: file-1)" in attached
    assert "=== GETTING STARTED ===" not in attached


def test_empty_dynamic_sections_are_dropped() -> None:
    empty = assemble_prompt(default_prompt_sections(), _context())
    filled = assemble_prompt(
        default_prompt_sections(),
        _context(
            blackboard=[
                BlackboardEntry(id="b1", session_id="s", entry_type=BlackboardEntryType.DECISION, content="Use pytest")
            ],
            chat_history=[{"role": "user", "content": "Add tests"}],
            project_context={"requirements": [{"id": "r1", "title": "Auth", "content": "Users log in"}]},
        ),
    )

    for title in ("BLACKBOARD", "CHAT HISTORY", "PROJECT CONTEXT"):
        assert f"=== {title} ===" not in empty
        assert f"=== {title} ===" in filled
    assert "[decision]: Use pytest" in filled
    assert "USER: Add tests" in filled
    assert "- Auth: Users log in" in filled


def test_disabled_and_custom_sections() -> None:
    sections = default_prompt_sections()
    for section in sections:
        if section.id == "completion_validation":
            section.enabled = False
    sections.append(PromptSection(id="house", title="House Style", content="Mode is {{TASK_MODE}}.", order=0, custom=True))

    prompt = assemble_prompt(sections, _context(mode="iterative_loop"))

    assert prompt.startswith("=== HOUSE STYLE ===\nMode is iterative_loop.")
    assert "COMPLETION VALIDATION" not in prompt


def test_project_tools_only_listed_when_exposed() -> None:
    hidden = assemble_prompt(default_prompt_sections(), _context())
    shown = assemble_prompt(
        default_prompt_sections(), _context(tools=active_tools(default_tools(), expose_project=True))
    )

    assert "PROJECT EXPLORATION TOOLS" not in hidden
    assert "## PROJECT EXPLORATION TOOLS (READ-ONLY)" in shown
    assert "**project_inventory**" in shown


def test_custom_tool_descriptions_flow_into_catalog() -> None:
    tools = apply_custom_descriptions(default_tools(), {"file_operations": {"read_file": "Open a file."}})

    prompt = assemble_prompt(default_prompt_sections(), _context(tools=active_tools(tools, expose_project=False)))

    assert "**read_file**" in prompt
    assert "  Open a file." in prompt


def test_preview_reports_sizes() -> None:
    preview = preview_prompt(default_prompt_sections(), _context())

    assert preview.char_count == len(preview.prompt)
    assert preview.token_estimate == -(-preview.char_count // 4)
    assert preview.word_count > 100


def test_response_schema_tracks_enabled_tools() -> None:
    tools = active_tools(default_tools(), expose_project=False)

    schema = build_response_schema(tools)
    closed = build_response_schema(tools, closed=True)

    operation = schema["properties"]["operations"]["items"]
    assert "project_inventory" not in operation["properties"]["type"]["enum"]
    assert "edit_lines" in operation["properties"]["type"]["enum"]
    assert "start_line" in operation["properties"]["params"]["properties"]
    assert set(schema["required"]) == {"reasoning", "operations", "status", "blackboard_entry"}
    assert "additionalProperties" not in schema
    assert closed["additionalProperties"] is False
