"""Tests for the narration effect extractor."""

from storysync.effects import Effect, EffectKind, apply, extract
from storysync.models import Session
from storysync.state import SessionStore


def test_extract_grant() -> None:
    assert extract("You find it. [GAIN torch]") == [Effect(EffectKind.GRANT, "torch")]


def test_extract_remove() -> None:
    assert extract("The rope snaps. [LOSE Rope]") == [Effect(EffectKind.REMOVE, "Rope")]


def test_markers_case_insensitive_and_trimmed() -> None:
    assert extract("[gain   Silver Key  ]") == [Effect(EffectKind.GRANT, "Silver Key")]


def test_one_grant_and_one_remove_per_line() -> None:
    text = "[LOSE Rope] then [GAIN Ladder] and [GAIN Spare]"
    assert extract(text) == [
        Effect(EffectKind.GRANT, "Ladder"),
        Effect(EffectKind.REMOVE, "Rope"),
    ]


def test_lines_scanned_in_order() -> None:
    text = "Line one [GAIN Torch]\nLine two [LOSE Torch]\nLine three [GAIN Map]"
    assert extract(text) == [
        Effect(EffectKind.GRANT, "Torch"),
        Effect(EffectKind.REMOVE, "Torch"),
        Effect(EffectKind.GRANT, "Map"),
    ]


def test_unterminated_tag_yields_nothing() -> None:
    assert extract("You grab [GAIN torch and run") == []


def test_empty_tag_yields_nothing() -> None:
    assert extract("[GAIN ]\n[LOSE    ]") == []


def test_non_ascii_text_before_tag() -> None:
    # "İ".lower() is two code points long
    assert extract("İzmir gate [GAIN torch]") == [Effect(EffectKind.GRANT, "torch")]
    assert extract("Straße İİ [lose Åsa's ring]") == [Effect(EffectKind.REMOVE, "Åsa's ring")]


def test_plain_text_yields_nothing() -> None:
    assert extract("NEXT: go left or go right") == []
    assert extract("") == []


def test_apply_in_order(altar_session: Session) -> None:
    store = SessionStore(altar_session)
    apply(extract("[GAIN torch]\n[LOSE rope]\n[GAIN Torch]"), store)
    for p in store.current().participants.values():
        assert p.inventory == ["torch"]
