import pytest

from sshbridge.segmenter import split_message


def test_short_text_is_single_chunk():
    assert split_message("hello\nworld", limit=4096) == ["hello\nworld"]


def test_plain_9000_chars_gives_three_chunks():
    text = "x" * 9000
    chunks = split_message(text, limit=4096)
    assert [len(c) for c in chunks] == [4096, 4096, 808]
    assert "".join(chunks) == text


def test_prefers_line_boundaries():
    text = "".join(f"line {i:03d} " + "." * 90 + "\n" for i in range(100))
    chunks = split_message(text, limit=4096)
    assert len(chunks) > 1
    assert all(len(c) <= 4096 for c in chunks)
    assert all(c.endswith("\n") for c in chunks)
    assert "".join(chunks) == text


def test_long_line_inside_text_is_force_split():
    text = "head\n" + "y" * 5000 + "\ntail"
    chunks = split_message(text, limit=1000)
    assert chunks[0] == "head\n"
    assert all(len(c) <= 1000 for c in chunks)
    assert "".join(chunks) == text


def test_invalid_limit():
    with pytest.raises(ValueError):
        split_message("abc", limit=0)
