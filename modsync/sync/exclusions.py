"""Sync exclusion patterns.

Paths are matched after normalisation to forward slashes, case-insensitively.
Patterns containing ``*`` or ``?`` are globs:

    *    any run of characters except ``/``
    **   any run of characters including ``/`` (``**/`` also matches nothing)
    ?    a single character except ``/``

Anything else matches the exact path or any path beneath it.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable

from modsync.utils.paths import normalize_relative

DEFAULT_EXCLUSIONS: list[str] = [
    # Logs
    "**/*.log",
    "**/logs/**",
    "**/log/**",
    # Caches and temporary files
    "**/cache/**",
    "**/temp/**",
    "**/*.tmp",
    "**/*.cache",
    # Development leftovers
    "**/.git/**",
    "**/node_modules/**",
    "**/*.js.map",
    # Admin markers
    "**/*.nosync",
    "**/*.nosync.txt",
    # Backups
    "**/*backup*/**",
]


def is_glob(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a glob into a compiled, anchored, case-insensitive regex."""
    pattern = normalize_relative(pattern)
    out = ["^"]
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            if pattern[i + 1 : i + 2] == "*":
                if pattern[i + 2 : i + 3] == "/":
                    out.append("(?:.*/)?")
                    i += 3
                else:
                    out.append(".*")
                    i += 2
                continue
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(char))
        i += 1
    out.append("$")
    return re.compile("".join(out), re.IGNORECASE)


def matches_pattern(path: str, pattern: str) -> bool:
    """True if the normalised *path* is matched by *pattern*."""
    pattern = normalize_relative(pattern)
    if not pattern:
        return False
    path = normalize_relative(path)
    if is_glob(pattern):
        return compile_glob(pattern).match(path) is not None
    lowered = path.casefold()
    target = pattern.casefold()
    return lowered == target or lowered.startswith(target + "/")


class ExclusionMatcher:
    """Matches paths against a fixed set of exclusion patterns."""

    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns = [p for p in (normalize_relative(p) for p in patterns) if p]

    def matches(self, path: str) -> bool:
        return any(matches_pattern(path, pattern) for pattern in self.patterns)

    def __bool__(self) -> bool:
        return bool(self.patterns)
