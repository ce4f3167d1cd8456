from __future__ import annotations

from threadloom.chat.commands import parse_user_input


def test_plain_text_has_no_directives() -> None:
    parsed = parse_user_input("fix the bug")

    assert parsed.text == "fix the bug"
    assert not parsed.is_async
    assert not parsed.compact
    assert parsed.files == ()
    assert parsed.model_text() == "fix the bug"


def test_async_prefix_is_stripped() -> None:
    parsed = parse_user_input("  @async also update the docs")

    assert parsed.is_async
    assert parsed.text == "also update the docs"


def test_async_must_lead_the_message() -> None:
    parsed = parse_user_input("send this @async later")

    assert not parsed.is_async
    assert parsed.text == "send this @async later"


def test_file_directives_are_collected_once() -> None:
    parsed = parse_user_input("compare @file:src/a.py with @file src/b.py and @file:src/a.py")

    assert parsed.files == ("src/a.py", "src/b.py")


def test_compact_appends_instructions() -> None:
    parsed = parse_user_input("@compact")

    assert parsed.compact
    assert parsed.model_text().startswith("@compact\n\nThe user asked to compact this thread.")
    assert "compact_thread" in parse_user_input("wrap up @compact").model_text()
