# Overview: Pure ticket-count arithmetic over pack serial numbers.

"""
Lottery serial arithmetic.

A serial is the position of the next unsold ticket in a pack. The opening
serial is the first available position at shift start and the closing
serial the first available position at shift end, so the tickets sold in
between are simply closing - opening.

When a pack sells out there is no "next" ticket to scan; the count runs
through serial_end, which is the last valid (inclusive) index.
"""

from __future__ import annotations

from ..validation import parse_serial


def tickets_sold_continuing(opening_serial, closing_serial) -> int:
    """
    Tickets sold from a pack that is still selling at shift end.

    closing < opening is clamped to 0; it signals an upstream data problem
    rather than a validation failure.
    """
    opening = parse_serial(opening_serial, "opening_serial")
    closing = parse_serial(closing_serial, "closing_serial")
    return max(0, closing - opening)


def tickets_sold_depletion(opening_serial, serial_end) -> int:
    """Tickets sold from a pack that sold through its last ticket."""
    opening = parse_serial(opening_serial, "opening_serial")
    end = parse_serial(serial_end, "serial_end")
    return max(0, (end + 1) - opening)


def format_serial(position: int) -> str:
    """Render a ticket position as the canonical three-digit serial."""
    return f"{parse_serial(position, 'serial'):03d}"
