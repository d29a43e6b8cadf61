"""Keystroke-level expiry entry (MM/YY) that never holds an impossible month."""

from datetime import date


class ExpiryBuffer:
    """Up to four raw digits, MMYY.

    The first digit is 0 or 1 (2-9 are taken as 0-prefixed months), the second
    keeps the month within 01-12. The year's first digit is free; the second
    is held to the window starting at `min_year` when the decade matches.
    """

    def __init__(self, raw: str = "", min_year: int | None = None):
        self.min_year = min_year if min_year is not None else date.today().year
        self.raw = ""
        for ch in raw:
            self.type(ch)

    @classmethod
    def from_card(cls, exp_month, exp_year, min_year: int | None = None) -> "ExpiryBuffer":
        buf = cls(min_year=min_year)
        mm = f"{int(exp_month):02d}" if exp_month else ""
        yy = str(exp_year)[-2:] if exp_year else ""
        # Preloaded values come from the gateway and bypass keystroke rules
        buf.raw = f"{mm}{yy}"[:4]
        return buf

    def _insert(self, raw: str, d: str) -> str:
        if len(raw) >= 4 or not d.isdigit() or len(d) != 1:
            return raw
        if len(raw) == 0:
            return d if d in "01" else "0" + d
        if len(raw) == 1:
            if raw == "0":
                return raw + d if d != "0" else raw
            return raw + d if d in "012" else raw
        if len(raw) == 2:
            return raw + d
        decade, unit = divmod(self.min_year % 100, 10)
        if raw[2] == str(decade) and int(d) < unit:
            return raw
        return raw + d

    def type(self, key: str) -> bool:
        """Apply one keystroke; returns False when the key was rejected."""
        nxt = self._insert(self.raw, key)
        accepted = nxt != self.raw
        self.raw = nxt
        return accepted

    def backspace(self) -> None:
        self.raw = self.raw[:-1]

    def paste(self, text: str) -> None:
        for ch in [c for c in text if c.isdigit()][:4]:
            if not self.type(ch) or len(self.raw) >= 4:
                break

    def clear(self) -> None:
        self.raw = ""

    @property
    def complete(self) -> bool:
        return len(self.raw) == 4

    @property
    def month(self) -> int | None:
        return int(self.raw[:2]) if len(self.raw) >= 2 else None

    @property
    def year(self) -> int | None:
        return 2000 + int(self.raw[2:4]) if self.complete else None

    def display(self) -> str:
        if len(self.raw) < 2:
            return self.raw
        if len(self.raw) == 2:
            return f"{self.raw}/"
        return f"{self.raw[:2]}/{self.raw[2:]}"
