"""
Utility functions for the PostgreSQL to Spanner migration.

This module provides identifier helpers used when naming target objects and
small string helpers used in diagnostics.
"""

import re
from typing import Iterable


def to_spanner_name(name: str) -> str:
    """
    Make a source identifier valid as a Spanner identifier.

    Spanner names must match [A-Za-z][A-Za-z0-9_]*. Invalid characters are
    replaced with underscores. A leading character that is not allowed at all
    is replaced with 'A'; a leading digit or underscore gets an 'A' prefix.

    Args:
        name: Source table or column name (may contain spaces, dots, etc.)

    Returns:
        A valid Spanner identifier

    Examples:
        >>> to_spanner_name("te st")
        'te_st'
        >>> to_spanner_name(" b")
        'Ab'
        >>> to_spanner_name("sales.orders")
        'sales_orders'
        >>> to_spanner_name("2023_data")
        'A2023_data'
    """
    if not name:
        return "A"

    first, rest = name[0], name[1:]
    if re.match(r'[A-Za-z]', first):
        head = first
    elif re.match(r'[0-9_]', first):
        head = 'A' + first
    else:
        head = 'A'
    return head + re.sub(r'[^A-Za-z0-9_]', '_', rest)


def unique_name(name: str, used: Iterable[str]) -> str:
    """
    Return name, or name with the lowest free '_<n>' suffix if it is taken.

    Spanner identifiers are compared case-insensitively.

    Examples:
        >>> unique_name("synth_id", ["a", "b"])
        'synth_id'
        >>> unique_name("synth_id", ["SYNTH_ID"])
        'synth_id_1'
    """
    taken = {u.lower() for u in used}
    if name.lower() not in taken:
        return name
    n = 1
    while f"{name}_{n}".lower() in taken:
        n += 1
    return f"{name}_{n}"


def truncate_string(s: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length (including suffix)
        suffix: Suffix to append if truncated

    Returns:
        Truncated string

    Examples:
        >>> truncate_string("short")
        'short'
        >>> truncate_string("a" * 150, max_length=20)
        'aaaaaaaaaaaaaaaaa...'
    """
    if len(s) <= max_length:
        return s
    return s[:max_length - len(suffix)] + suffix
