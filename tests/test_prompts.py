"""Tests for prompt rendering."""

import pytest

from storysync.models import Session
from storysync.prompts import (
    PromptError,
    build_prompt,
    companion_prompt,
    game_master_prompt,
    prologue_prompt,
    render_prompt,
)


def test_render_prompt_substitutes_without_escaping() -> None:
    assert render_prompt("Hi {{{name}}}!", {"name": "<Mira & Co>"}) == "Hi <Mira & Co>!"


def test_render_prompt_bad_template_raises() -> None:
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


def test_sections_in_order() -> None:
    text = build_prompt("be brief", "once upon", "wrap up", ["P1 -> look"])
    order = [text.index(s) for s in (
        "be brief", "[CURRENT STORY]", "once upon", "[PARTY ACTIONS THIS TURN]", "- P1 -> look",
        "[GAME MASTER TASK]", "wrap up",
    )]
    assert order == sorted(order)


def test_party_section_omitted_without_actions() -> None:
    text = build_prompt("SYSTEM", "STORY", "TASK")
    assert "[PARTY ACTIONS THIS TURN]" not in text
    assert "[GAME MASTER TASK]" in text


def test_each_action_is_a_bullet() -> None:
    text = companion_prompt("story", ["P1 -> search the altar", "AI-1 -> guard the door"])
    assert "- P1 -> search the altar\n" in text
    assert "- AI-1 -> guard the door\n" in text
    assert "ONE short first-person action" in text


def test_game_master_prompt_demands_strict_resolution_and_next_line() -> None:
    text = game_master_prompt("The altar.", ["P1 -> search the altar"])
    assert "STRICTLY resolve only the actions" in text
    assert "[GAIN item]" in text and "[LOSE item]" in text
    assert "NEXT:" in text
    assert "The altar." in text


def test_prologue_prompt_names_seed_and_party(altar_session: Session) -> None:
    text = prologue_prompt(altar_session)
    assert "Seed:seed" in text
    assert "Players:P1, AI-1" in text
    assert "You stand before a cracked altar." in text
    assert "[PARTY ACTIONS THIS TURN]" not in text
