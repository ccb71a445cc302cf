import pytest

from storefront.shared.returns import coerce_return_note, normalize_return_reason


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("size too small", "SIZE_TOO_SMALL"),
        ("wrong-item", "WRONG_ITEM"),
        ("It arrived broken", "DEFECTIVE"),
        ("I changed my mind", "UNWANTED"),
        ("not as pictured on the site", "NOT_AS_DESCRIBED"),
        ("didn't like the colour", "COLOR"),
        ("", "UNKNOWN"),
        (None, "UNKNOWN"),
        ("meh", "UNKNOWN"),
    ],
)
def test_normalize_return_reason(raw, expected):
    assert normalize_return_reason(raw) == expected


def test_note_trimmed_and_blank_dropped():
    assert coerce_return_note("  ") is None
    assert coerce_return_note(None) is None
    assert len(coerce_return_note("x" * 900)) == 500
