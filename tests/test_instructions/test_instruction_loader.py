from pathlib import Path

import pytest

from deckhand.instructions import SUMMARY_USER_PROMPT, SYSTEM_PROMPT, InstructionLoader


def test_packaged_templates_render_placeholders(tmp_path: Path):
    loader = InstructionLoader(personal_dir=tmp_path / "none")

    rendered = loader.render(SUMMARY_USER_PROMPT, count=3, formatted="[user] hi")

    assert "3 earlier messages" in rendered
    assert rendered.endswith("[user] hi")
    assert "write_todos" in loader.load(SYSTEM_PROMPT)


def test_personal_override_wins_and_unknown_placeholders_survive(tmp_path: Path):
    personal = tmp_path / "personal"
    personal.mkdir()
    (personal / SYSTEM_PROMPT).write_text("Custom {role} for {unknown}\n", encoding="utf-8")
    loader = InstructionLoader(personal_dir=personal)

    assert loader.render(SYSTEM_PROMPT, role="helper") == "Custom helper for {unknown}"


def test_personal_dir_from_environment(monkeypatch, tmp_path: Path):
    (tmp_path / SYSTEM_PROMPT).write_text("From env", encoding="utf-8")
    monkeypatch.setenv("DECKHAND_INSTRUCTIONS_DIR", str(tmp_path))

    assert InstructionLoader().load(SYSTEM_PROMPT) == "From env"


def test_compose_appends_extra_instructions(tmp_path: Path):
    (tmp_path / "base.md").write_text("Base rules.\n", encoding="utf-8")
    loader = InstructionLoader(base_dir=tmp_path, personal_dir=tmp_path / "none")

    assert loader.compose("base.md") == "Base rules."
    assert loader.compose("base.md", "  Be brief.  ") == "Base rules.\n\nBe brief."


def test_missing_template_raises(tmp_path: Path):
    loader = InstructionLoader(base_dir=tmp_path, personal_dir=tmp_path)

    with pytest.raises(FileNotFoundError):
        loader.load("absent.md")
