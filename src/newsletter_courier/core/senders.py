"""Sender address parsing for free-form From headers."""

import re

ANGLE_ADDRESS_RE = re.compile(r"<\s*([^<>\s@]+@[^<>\s@]+)\s*>")
BARE_ADDRESS_RE = re.compile(r"[\w.+'-]+@[\w-]+(?:\.[\w-]+)+")


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def extract_sender_email(from_header: str) -> str:
    """Pull the address out of 'addr' or 'Display Name <addr>'.

    An angle-bracketed address wins over any address-like text in the
    display name. Returns the stripped header unchanged when no address is
    found, so the caller still has something to log and look up.
    """
    value = (from_header or "").strip()
    match = ANGLE_ADDRESS_RE.search(value)
    if match:
        return match.group(1)
    match = BARE_ADDRESS_RE.search(value)
    if match:
        return match.group(0)
    return value
