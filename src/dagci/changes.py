# changes.py
from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigurationError
from .model import RunContext, Trigger

# ---------------------------------------------------------------------
# Glob semantics
# ---------------------------------------------------------------------
#   **        any number of path segments (only as a whole segment)
#   *         anything inside one segment
#   ?         one character inside one segment
#   [abc]     character class, [!abc] negated
#   {a,b}     alternatives, expanded before compiling
#
# Paths and patterns are compared relative to the repo root with "/"
# separators; a leading "./" is ignored on both sides.
# ---------------------------------------------------------------------

CategoryFlags = Mapping[str, bool]

_GLOBSTAR = object()


def _normalize(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def _expand_braces(pattern: str) -> List[str]:
    depth = 0
    start = -1
    for i, ch in enumerate(pattern):
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth < 0:
                raise ValueError("unmatched '}'")
            if depth == 0:
                head, body, tail = pattern[:start], pattern[start + 1:i], pattern[i + 1:]
                alternatives = _split_top_level(body)
                out: List[str] = []
                for alt in alternatives:
                    out.extend(_expand_braces(head + alt + tail))
                return out
    if depth != 0:
        raise ValueError("unterminated '{'")
    return [pattern]


def _split_top_level(body: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    current = ""
    for ch in body:
        if ch == "," and depth == 0:
            parts.append(current)
            current = ""
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        current += ch
    parts.append(current)
    return parts


def _translate_segment(segment: str) -> str:
    out = []
    i = 0
    n = len(segment)
    while i < n:
        ch = segment[i]
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "[":
            j = i + 1
            if j < n and segment[j] in "!^":
                j += 1
            if j < n and segment[j] == "]":
                j += 1
            while j < n and segment[j] != "]":
                j += 1
            if j >= n:
                raise ValueError("unterminated '['")
            body = segment[i + 1:j]
            if body[:1] in ("!", "^"):
                body = "^" + body[1:]
            if not body or body == "^":
                raise ValueError("empty character class")
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = j
        else:
            out.append(re.escape(ch))
        i += 1
    return "".join(out)


def _translate(pattern: str) -> str:
    # "dir/" means everything under dir
    if pattern.endswith("/"):
        pattern += "**"
    segments = pattern.split("/")
    parts: List[object] = []
    for seg in segments:
        if not seg:
            raise ValueError("empty path segment")
        if seg == "**":
            # collapse repeated globstars
            if parts and parts[-1] is _GLOBSTAR:
                continue
            parts.append(_GLOBSTAR)
        elif "**" in seg:
            raise ValueError("'**' must be a whole path segment")
        else:
            parts.append(_translate_segment(seg))

    regex = ""
    for i, part in enumerate(parts):
        last = i == len(parts) - 1
        if part is _GLOBSTAR:
            regex += ".*" if last else "(?:[^/]+/)*"
        else:
            regex += part + ("" if last else "/")
    return regex


@dataclass(frozen=True)
class Glob:
    pattern: str
    regexes: Tuple["re.Pattern[str]", ...]

    def match(self, path: str) -> bool:
        path = _normalize(path)
        return any(r.fullmatch(path) for r in self.regexes)


def compile_glob(pattern: str) -> Glob:
    """Compile a glob, raising ConfigurationError when it is malformed."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigurationError("Empty glob pattern", details={"pattern": pattern})

    normalized = _normalize(pattern.strip())
    try:
        expanded = _expand_braces(normalized)
        regexes = tuple(re.compile(_translate(p)) for p in expanded)
    except (ValueError, re.error) as e:
        raise ConfigurationError(
            f"Malformed glob pattern {pattern!r}: {e}",
            details={"pattern": pattern},
        ) from e
    return Glob(pattern=pattern, regexes=regexes)


def matches_any(path: str, globs: Iterable[Glob]) -> bool:
    return any(g.match(path) for g in globs)


# ---------------------------------------------------------------------
# Change detector
# ---------------------------------------------------------------------

def compile_categories(categories: Mapping[str, Sequence[str]]) -> Dict[str, List[Glob]]:
    """
    Validate and compile category globs. Runs before any job is dispatched.
    """
    compiled: Dict[str, List[Glob]] = {}
    for name, patterns in categories.items():
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_-]*", name or ""):
            raise ConfigurationError(f"Invalid category name: {name!r}")
        if isinstance(patterns, str):
            raise ConfigurationError(
                f"Category '{name}' must be a list of globs, got a string",
                details={"value": patterns},
            )
        compiled[name] = [compile_glob(p) for p in patterns]
    return compiled


def detect_changes(
    change_set: Iterable[str],
    categories: Mapping[str, Sequence[str]] | Mapping[str, List[Glob]],
) -> CategoryFlags:
    """
    A category is true iff at least one changed path matches at least one
    of its globs. Accepts raw or pre-compiled globs.
    """
    paths = [_normalize(p) for p in change_set if p]
    flags: Dict[str, bool] = {}
    for name, globs in categories.items():
        compiled = [g if isinstance(g, Glob) else compile_glob(g) for g in globs]
        flags[name] = any(matches_any(p, compiled) for p in paths)
    return MappingProxyType(flags)


# ---------------------------------------------------------------------
# Trigger filter
# ---------------------------------------------------------------------

def trigger_matches(
    trigger: Optional[Trigger],
    context: RunContext,
    change_set: Iterable[str],
) -> Tuple[bool, str]:
    """
    Returns (triggered, reason). No trigger means every run is triggered.
    """
    if trigger is None:
        return True, "no trigger filter"

    if trigger.events and context.event not in trigger.events:
        return False, f"event '{context.event}' not in {list(trigger.events)}"

    if trigger.branches:
        branch_globs = [compile_glob(b) for b in trigger.branches]
        if not matches_any(context.branch, branch_globs):
            return False, f"branch '{context.branch}' not in {list(trigger.branches)}"

    if trigger.paths:
        path_globs = [compile_glob(p) for p in trigger.paths]
        if not any(matches_any(p, path_globs) for p in change_set):
            return False, f"no changed path matches {list(trigger.paths)}"

    return True, "trigger matched"


def validate_trigger(trigger: Optional[Trigger]) -> None:
    if trigger is None:
        return
    for pattern in list(trigger.branches) + list(trigger.paths):
        compile_glob(pattern)
