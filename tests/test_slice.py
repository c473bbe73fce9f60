import pytest

from handynet.slice import eat_line, eat_word, split, trim_space


def test_eat_word_skips_leading_space():
    assert eat_word("  hello world") == ("hello", " world")


def test_eat_word_bytes():
    assert eat_word(b"\t\nabc") == (b"abc", b"")


def test_eat_word_only_space():
    assert eat_word("   ") == ("", "")


def test_eat_word_repeated_collects_all_words():
    rest = " one  two\tthree "
    words = []
    while True:
        word, rest = eat_word(rest)
        if not word:
            break
        words.append(word)
    assert words == ["one", "two", "three"]


def test_eat_line_keeps_terminator_in_rest():
    assert eat_line("line1\r\nline2") == ("line1", "\r\nline2")


def test_eat_line_without_terminator():
    assert eat_line(b"nolf") == (b"nolf", b"")


def test_trim_space():
    assert trim_space("  x y \n") == "x y"
    assert trim_space(b"\v\fz\r") == b"z"


@pytest.mark.parametrize(
    "data, sep, expected",
    [
        ("a b c", " ", ["a", "b", "c"]),
        ("", ",", []),
        ("a,", ",", ["a", ""]),
        (b"1 2", " ", [b"1", b"2"]),
        (b"1 2", b" ", [b"1", b"2"]),
    ],
)
def test_split(data, sep, expected):
    assert split(data, sep) == expected


@pytest.mark.parametrize("data", ["a,b", ",,", "x", ",lead", "trail,"])
def test_split_join_round_trip(data):
    assert ",".join(split(data, ",")) == data