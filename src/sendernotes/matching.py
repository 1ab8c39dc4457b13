"""Sender pattern matching and priority resolution.

A note applies to a sender when its pattern matches the sender's address
under the note's match type. Matching is purely lexical and
case-insensitive: no wildcards, no regex, and no address normalization
beyond lowercasing.

When several notes match one sender they are ranked by match type:

    exact > startsWith > endsWith > contains

so an exact note always shadows prefix, suffix and substring notes no
matter how many of those exist. Within one match type the caller's
iteration order is kept.

The in-memory adapter ranks through this module. The SQLite adapter
expresses the same ordering in SQL and must return identical results.

Usage:
    from sendernotes.matching import rank_matches, validate_pattern

    validate_pattern("Alice@Example.com", "@example.com", "endsWith")  # True
    ranked = rank_matches("alice@example.com", notes.values())
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Literal, get_args

if TYPE_CHECKING:
    from sendernotes.db.models import Note

MatchType = Literal["exact", "startsWith", "endsWith", "contains"]

# Highest priority first
MATCH_PRIORITY: tuple[MatchType, ...] = get_args(MatchType)


def is_match_type(value: object) -> bool:
    """Return True if value names a known match type."""
    return value in MATCH_PRIORITY


def match_priority(match_type: str) -> int:
    """Priority rank of a match type (0 is highest).

    Unknown match types rank after every known one.
    """
    try:
        return MATCH_PRIORITY.index(match_type)  # type: ignore[arg-type]
    except ValueError:
        return len(MATCH_PRIORITY)


def validate_pattern(email: str, pattern: str, match_type: str) -> bool:
    """Check whether a pattern matches an email address.

    Args:
        email: Sender email address (any case)
        pattern: Stored or candidate pattern (any case)
        match_type: One of exact, startsWith, endsWith, contains

    Returns:
        True if the pattern matches; always False for an unknown match type
    """
    email_lower = email.lower()
    pattern_lower = pattern.lower()

    if match_type == "exact":
        return email_lower == pattern_lower
    if match_type == "startsWith":
        return email_lower.startswith(pattern_lower)
    if match_type == "endsWith":
        return email_lower.endswith(pattern_lower)
    if match_type == "contains":
        return pattern_lower in email_lower
    return False


def rank_matches(email: str, notes: Iterable[Note]) -> list[Note]:
    """Collect the notes matching an email, ordered by match priority.

    Args:
        email: Sender email address
        notes: Candidate notes in storage iteration order

    Returns:
        Matching notes grouped by priority bucket, each bucket keeping the
        input order
    """
    matching = [note for note in notes if validate_pattern(email, note.pattern, note.match_type)]
    # sorted() is stable, so each bucket keeps the input order
    return sorted(matching, key=lambda note: match_priority(note.match_type))


def describe_match(pattern: str, match_type: str) -> str:
    """Human-readable description of what a pattern will match.

    Args:
        pattern: The pattern text
        match_type: The match type

    Returns:
        Short description such as "emails ending with: *@example.com"
    """
    if match_type == "exact":
        return f"only: {pattern}"
    if match_type == "startsWith":
        return f"emails starting with: {pattern}*"
    if match_type == "endsWith":
        return f"emails ending with: *{pattern}"
    if match_type == "contains":
        return f"emails containing: *{pattern}*"
    return f"nothing (unknown match type '{match_type}')"


def extract_email(author: str) -> str:
    """Extract the sender address from a mail author header.

    Args:
        author: Author string such as 'Alice Smith <Alice@Example.com>'

    Returns:
        The lowercased address between angle brackets, or the whole
        author string trimmed and lowercased when there are no brackets
    """
    start = author.find("<")
    if start != -1:
        end = author.find(">", start + 1)
        if end > start + 1:
            return author[start + 1 : end].lower()
    return author.strip().lower()
