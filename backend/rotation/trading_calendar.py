from __future__ import annotations

from datetime import date, timedelta

from rotation.quarters import end_of_month

# Fixed-date exchange holidays (MM-DD). Floating holidays (Thanksgiving, Good Friday, ...) are not modelled.
FIXED_HOLIDAYS = {(1, 1), (7, 4), (12, 25)}


def is_trading_day(d: date) -> bool:
    if d.weekday() >= 5:
        return False
    return (d.month, d.day) not in FIXED_HOLIDAYS


def next_trading_day(d: date) -> date:
    nxt = d + timedelta(days=1)
    while not is_trading_day(nxt):
        nxt += timedelta(days=1)
    return nxt


def previous_trading_day(d: date) -> date:
    prev = d - timedelta(days=1)
    while not is_trading_day(prev):
        prev -= timedelta(days=1)
    return prev


def count_trading_days(start: date, end: date) -> int:
    """Trading days in [start, end], inclusive."""
    n = 0
    cur = start
    while cur <= end:
        if is_trading_day(cur):
            n += 1
        cur += timedelta(days=1)
    return n


def add_trading_days(d: date, days: int) -> date:
    step = 1 if days >= 0 else -1
    remaining = abs(days)
    cur = d
    while remaining > 0:
        cur += timedelta(days=step)
        if is_trading_day(cur):
            remaining -= 1
    return cur


def quarter_end_of(d: date) -> date:
    """Calendar quarter end containing `d` (03-31, 06-30, 09-30, 12-31)."""
    month = ((d.month - 1) // 3 + 1) * 3
    return end_of_month(d.year, month)


def is_quarter_end_eow(d: date, trading_days: int = 5) -> bool:
    """
    True when `d` falls inside the last `trading_days` trading days of its quarter.

    Days after the quarter's last trading day (e.g. a weekend 03-31) are outside the window.
    """

    qe = quarter_end_of(d)
    last = qe if is_trading_day(qe) else previous_trading_day(qe)
    if d > last:
        return False

    remaining = count_trading_days(d, last) - (1 if is_trading_day(d) else 0)
    remaining = max(0, remaining)
    if remaining < trading_days:
        return True
    if remaining > trading_days:
        return False
    return is_trading_day(d + timedelta(days=1))


def trading_days_until_quarter_end(d: date) -> int:
    return count_trading_days(d, quarter_end_of(d))
