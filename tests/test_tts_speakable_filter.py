import pytest

from realtime_interview.voice.speakable import to_speakable_text


def test_to_speakable_strips_reasoning_and_prefers_answer():
    text = """<reasoning>LOTS OF INTERNAL STUFF</reasoning>
<answer>Thanks for that. What is your experience with Python?</answer>"""

    assert to_speakable_text(text) == "Thanks for that. What is your experience with Python?"


def test_to_speakable_skips_json_and_code_fences():
    assert to_speakable_text('{"a": 1, "b": 2}') == ""
    assert to_speakable_text("```json\n{\"a\": 1}\n```") == ""
    assert to_speakable_text("[1, 2") == ""


def test_to_speakable_removes_inline_json_blob():
    assert to_speakable_text('Sure. {"score": 3} Next question?') == "Sure. Next question?"


def test_to_speakable_flattens_markdown():
    text = "## Next up\n- **Tell** me about `asyncio` and [the docs](https://example.com)."

    assert to_speakable_text(text) == "Next up Tell me about asyncio and the docs."


def test_to_speakable_drops_html_tags():
    assert to_speakable_text("<b>Hello</b> there") == "Hello there"


@pytest.mark.parametrize(
    ("text", "limit", "expected"),
    [
        ("First sentence. Second sentence is longer.", 20, "First sentence."),
        ("abcdefghij" * 3, 10, "abcdefghi…"),
        ("Short.", 100, "Short."),
    ],
)
def test_to_speakable_truncates_at_sentence_boundary(text, limit, expected):
    assert to_speakable_text(text, max_chars=limit) == expected


def test_to_speakable_empty_input():
    assert to_speakable_text("") == ""
    assert to_speakable_text("   ") == ""
