from datetime import date

import pytest

from petiq.expiry import ExpiryBuffer


def typed(keys, min_year=2025):
    buf = ExpiryBuffer(min_year=min_year)
    for key in keys:
        buf.type(key)
    return buf


@pytest.mark.parametrize("keys,raw", [
    ("13", "1"),        # no month 13
    ("00", "0"),        # no month 00
    ("5", "05"),        # 2-9 become 0-prefixed months
    ("12", "12"),
    ("0912", "0912"),
    ("1224", "122"),    # 2024 is before the window
    ("1225", "1225"),
    ("1210", "1210"),   # other decades are not checked
    ("12301", "1230"),  # at most four digits
    ("1a2/3x0", "1230"),
])
def test_keystroke_rules(keys, raw):
    assert typed(keys).raw == raw


def test_type_reports_rejections():
    buf = ExpiryBuffer(min_year=2025)
    assert buf.type("1") is True
    assert buf.type("3") is False
    assert buf.type("1") is True


def test_window_follows_min_year():
    assert typed("1226", min_year=2027).raw == "122"
    assert typed("1227", min_year=2027).raw == "1227"
    assert typed("1224", min_year=2024).raw == "1224"


def test_min_year_defaults_to_this_year():
    assert ExpiryBuffer().min_year == date.today().year


def test_display_and_parts():
    buf = typed("0631")

    assert buf.complete
    assert buf.display() == "06/31"
    assert (buf.month, buf.year) == (6, 2031)
    assert typed("1").display() == "1"
    assert typed("12").display() == "12/"
    assert typed("12").year is None


def test_backspace_and_clear():
    buf = typed("1225")
    buf.backspace()
    assert buf.raw == "122"
    buf.clear()
    assert buf.raw == ""
    buf.backspace()
    assert buf.raw == ""


@pytest.mark.parametrize("text,raw", [
    ("08/28", "0828"),
    ("13/27", "1"),
    ("12 / 30", "1230"),
])
def test_paste_replays_until_rejected(text, raw):
    buf = ExpiryBuffer(min_year=2025)
    buf.paste(text)
    assert buf.raw == raw


def test_from_card_preloads_stored_expiry():
    buf = ExpiryBuffer.from_card(3, 2031, min_year=2025)
    assert buf.display() == "03/31"
    assert buf.complete
