"""Decide which filesystem paths are worth running the command for."""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import FrozenSet, Iterable, Optional, Pattern, Sequence, Tuple, Union

from .config import WatchTarget

PathLike = Union[str, Path]

# Every rule is prefixed with a path boundary so it matches at any depth.
BUILTIN_EXCLUDE_PATTERNS: Tuple[str, ...] = (
    # vim swap files (.name.swp, .name.swo, ...)
    r"\.[^/]+\.sw[a-z]$",
    # vim's "can I write here" probe file
    r"4913$",
    # backup files
    r"[^/]*~$",
    # version control metadata
    r"\.(?:git|hg|svn)(?:/|$)",
    # bytecode caches
    r"__pycache__(?:/|$)",
)


class ExcludeRuleSet:
    """Ordered exclusion rules compiled into a single expression."""

    def __init__(self, extra_patterns: Sequence[str] = ()):
        self._patterns: Tuple[str, ...] = tuple(BUILTIN_EXCLUDE_PATTERNS) + tuple(extra_patterns)
        anchored = [f"(?:^|/){pattern}" for pattern in BUILTIN_EXCLUDE_PATTERNS]
        # User patterns are searched as written.
        anchored.extend(f"(?:{pattern})" for pattern in extra_patterns)
        self._regex: Pattern[str] = re.compile("|".join(anchored))

    @property
    def patterns(self) -> Tuple[str, ...]:
        return self._patterns

    def matches(self, path: PathLike) -> bool:
        return self._regex.search(_posix(path)) is not None


class PathMatcher:
    """Filters raw notifications down to the registered watch targets.

    Matching only looks at normalized absolute path strings; it never asks the
    filesystem whether something is a file or a directory, because the path an
    event describes may already be gone by the time it is checked.
    """

    def __init__(
        self,
        targets: Iterable[WatchTarget],
        *,
        recursive: bool,
        rules: Optional[ExcludeRuleSet] = None,
    ):
        targets = tuple(targets)
        self._recursive = recursive
        self._rules = rules if rules is not None else ExcludeRuleSet()
        self._paths: FrozenSet[str] = frozenset(normalize(target.path) for target in targets)
        self._directories: FrozenSet[str] = frozenset(
            normalize(target.path) for target in targets if target.is_directory
        )

    @property
    def rules(self) -> ExcludeRuleSet:
        return self._rules

    def is_excluded(self, path: PathLike) -> bool:
        return self._rules.matches(normalize(path))

    def is_interested(self, path: PathLike) -> bool:
        normalized = normalize(path)
        if self._rules.matches(normalized):
            return False

        if normalized in self._paths:
            return True

        parent = os.path.dirname(normalized)
        if parent in self._directories:
            return True

        if not self._recursive:
            return False

        current = parent
        while True:
            ancestor = os.path.dirname(current)
            if ancestor == current:
                return False
            if ancestor in self._directories:
                return True
            current = ancestor


def normalize(path: PathLike) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


def _posix(path: PathLike) -> str:
    text = os.fspath(path)
    if os.sep != "/":
        text = text.replace(os.sep, "/")
    return text
