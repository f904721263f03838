from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Iterator


# Combinations of SQL control tokens; single keywords like "update" or "select" alone pass.
_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("union_select", re.compile(r"\bunion\b(\s+all)?\s+select\b", re.IGNORECASE)),
    ("stacked_query", re.compile(r";\s*(select|insert|update|delete|drop|alter|create|truncate|exec)\b", re.IGNORECASE)),
    ("ddl", re.compile(r"\b(drop|truncate|alter)\s+(table|database|schema)\b", re.IGNORECASE)),
    ("insert_into", re.compile(r"\binsert\s+into\b", re.IGNORECASE)),
    ("delete_from", re.compile(r"\bdelete\s+from\b", re.IGNORECASE)),
    ("update_set", re.compile(r"\bupdate\s+\w+\s+set\s+\w+\s*=", re.IGNORECASE)),
    ("select_star", re.compile(r"\bselect\s+\*\s+from\b", re.IGNORECASE)),
    ("select_where", re.compile(r"\bselect\b.+?\bfrom\s+\w+\s+where\s+\w+\s*=", re.IGNORECASE)),
    ("quote_tautology", re.compile(r"['\"]\s*(or|and)\s+['\"]?\w+['\"]?\s*=\s*['\"]?\w+", re.IGNORECASE)),
    ("numeric_tautology", re.compile(r"\b(or|and)\s+(\d+)\s*=\s*\2\b", re.IGNORECASE)),
    ("quote_comment", re.compile(r"['\"]\s*(--|#)\s*$|['\"]\s*/\*")),
    ("exec_call", re.compile(r"\b(exec|execute)\s*\(|\bxp_cmdshell\b", re.IGNORECASE)),
    ("time_based", re.compile(r"\b(sleep|benchmark|pg_sleep)\s*\(|\bwaitfor\s+delay\b", re.IGNORECASE)),
)


@dataclass(frozen=True)
class InjectionMatch:
    rule: str
    location: str
    value: str


def match_text(value: str) -> str | None:
    # Return the first rule name that matches the string, if any.
    for name, pattern in _PATTERNS:
        if pattern.search(value):
            return name
    return None


def _iter_strings(value: Any, location: str) -> Iterator[tuple[str, str]]:
    if isinstance(value, str):
        yield location, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _iter_strings(item, f"{location}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from _iter_strings(item, f"{location}[{index}]")


def scan(value: Any, *, location: str = "body") -> InjectionMatch | None:
    for path, text in _iter_strings(value, location):
        rule = match_text(text)
        if rule is not None:
            return InjectionMatch(rule=rule, location=path, value=text)
    return None


def truncate_payload(value: str, limit: int) -> str:
    # Keep only a short prefix for logs; payloads are never echoed to clients.
    if len(value) <= limit:
        return value
    return value[:limit] + "..."
