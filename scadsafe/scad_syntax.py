"""
Lightweight OpenSCAD source scanning.

Not a parser for the full language: just enough structure for the safety
validator. Comments are stripped, string literals are respected, and
calls, argument lists, vectors and child statements are located by
balanced-bracket scanning rather than greedy regexes, so expressions such
as ``translate([0, 0, (h + 2) * 0.5])`` are captured whole.

Every helper degrades to ``None`` / empty results on unbalanced input; the
validator treats that as "skip this check".
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterator, Optional

_OPEN_TO_CLOSE = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = set(_OPEN_TO_CLOSE.values())
_KEYWORD_ARG_RE = re.compile(r'^\$?[A-Za-z_]\w*\s*=(?!=)')


@dataclass
class Call:
    """A call site ``name(args)`` found in source text."""
    name: str
    start: int          # index of the first character of the name
    args_start: int     # index just after "("
    args_end: int       # index of the matching ")"
    args: str

    @property
    def end(self) -> int:
        """Index just after the closing parenthesis."""
        return self.args_end + 1

    def shifted(self, offset: int) -> Call:
        return Call(
            name=self.name,
            start=self.start + offset,
            args_start=self.args_start + offset,
            args_end=self.args_end + offset,
            args=self.args,
        )


@dataclass
class Arguments:
    positional: list[str] = field(default_factory=list)
    keywords: dict[str, str] = field(default_factory=dict)

    def get(self, *names: str, position: Optional[int] = None) -> Optional[str]:
        """First keyword found among ``names``, else the positional slot."""
        for name in names:
            if name in self.keywords:
                return self.keywords[name]
        if position is not None and position < len(self.positional):
            return self.positional[position]
        return None


# ── Comments and nesting ──────────────────────────────────────────────


def strip_comments(text: str) -> str:
    """Remove ``//`` and ``/* */`` comments, leaving string literals intact.

    Comment characters are replaced by spaces (newlines kept) so offsets
    and line numbers stay stable.
    """
    out: list[str] = []
    i = 0
    n = len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue
        if text.startswith("//", i):
            end = text.find("\n", i)
            end = n if end == -1 else end
            out.append(" " * (end - i))
            i = end
            continue
        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append("".join("\n" if c == "\n" else " " for c in text[i:end]))
            i = end
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def brace_depths(text: str) -> list[int]:
    """Curly-brace nesting depth at every character offset."""
    depths = [0] * (len(text) + 1)
    depth = 0
    for i, ch in enumerate(text):
        if ch == "}":
            depth = max(0, depth - 1)
        depths[i] = depth
        if ch == "{":
            depth += 1
    depths[len(text)] = depth
    return depths


def matching_close(text: str, open_index: int) -> Optional[int]:
    """Index of the bracket closing the one at ``open_index``."""
    if open_index >= len(text) or text[open_index] not in _OPEN_TO_CLOSE:
        return None
    stack = [_OPEN_TO_CLOSE[text[open_index]]]
    in_string = False
    i = open_index + 1
    while i < len(text):
        ch = text[i]
        if in_string:
            if ch == "\\":
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _OPEN_TO_CLOSE:
            stack.append(_OPEN_TO_CLOSE[ch])
        elif ch in _CLOSERS:
            if ch != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return i
        i += 1
    return None


# ── Calls and arguments ───────────────────────────────────────────────


def find_calls(text: str, name: str) -> Iterator[Call]:
    """Yield every call of ``name`` whose argument list is balanced."""
    pattern = re.compile(r'(?<![\w$])' + re.escape(name) + r'\s*\(')
    for match in pattern.finditer(text):
        open_index = match.end() - 1
        close_index = matching_close(text, open_index)
        if close_index is None:
            continue
        yield Call(
            name=name,
            start=match.start(),
            args_start=open_index + 1,
            args_end=close_index,
            args=text[open_index + 1:close_index],
        )


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on ``sep`` where it is not nested inside brackets or strings."""
    parts: list[str] = []
    depth = 0
    in_string = False
    current: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            current.append(ch)
            if ch == "\\" and i + 1 < len(text):
                current.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
            current.append(ch)
        elif ch in _OPEN_TO_CLOSE:
            depth += 1
            current.append(ch)
        elif ch in _CLOSERS:
            depth -= 1
            current.append(ch)
        elif ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    tail = "".join(current).strip()
    if tail or parts:
        parts.append(tail)
    return parts


def parse_arguments(args: str) -> Arguments:
    result = Arguments()
    for part in split_top_level(args):
        if not part:
            continue
        if _KEYWORD_ARG_RE.match(part):
            key, value = part.split("=", 1)
            result.keywords[key.strip()] = value.strip()
        else:
            result.positional.append(part)
    return result


def parse_vector(text: Optional[str]) -> Optional[list[str]]:
    """Components of a vector literal ``[a, b, c]``, or None."""
    if text is None:
        return None
    stripped = text.strip()
    if not stripped.startswith("["):
        return None
    close = matching_close(stripped, 0)
    if close is None or close != len(stripped) - 1:
        return None
    return split_top_level(stripped[1:-1])


def is_true_flag(value: Optional[str]) -> bool:
    return value is not None and value.strip() == "true"


# ── Children ──────────────────────────────────────────────────────────


def skip_space(text: str, index: int) -> int:
    while index < len(text) and text[index].isspace():
        index += 1
    return index


def child_span(text: str, index: int) -> Optional[tuple[int, int]]:
    """Span of the child statement that starts at or after ``index``.

    A child is either a ``{ ... }`` block or a single statement running to
    its terminating ``;`` (which may itself be a chain of transforms such
    as ``rotate(...) linear_extrude(...) polygon(...);``).
    """
    start = skip_space(text, index)
    if start >= len(text):
        return None
    if text[start] == "{":
        close = matching_close(text, start)
        return None if close is None else (start + 1, close)

    i = start
    while i < len(text):
        ch = text[i]
        if ch in "([":
            close = matching_close(text, i)
            if close is None:
                return None
            i = close + 1
            continue
        if ch == "{":
            close = matching_close(text, i)
            return None if close is None else (start, close + 1)
        if ch == ";":
            return (start, i)
        if ch == "}":
            return (start, i)
        i += 1
    return (start, len(text))


def child_text(text: str, index: int) -> str:
    span = child_span(text, index)
    return "" if span is None else text[span[0]:span[1]]


def leading_call(text: str, name: str) -> Optional[Call]:
    """The call at the very start of ``text`` (after an optional ``{``)."""
    i = skip_space(text, 0)
    if i < len(text) and text[i] == "{":
        i = skip_space(text, i + 1)
    for call in find_calls(text[i:], name):
        if call.start == 0:
            return call.shifted(i)
        break
    return None


def chained_call(text: str, call: Call, names: tuple[str, ...]) -> Optional[Call]:
    """The call applied directly as ``call``'s child, if named in ``names``.

    ``translate([1, 0, 0]) sphere(r=2);`` chains translate -> sphere.
    """
    span = child_span(text, call.end)
    if span is None:
        return None
    segment = text[span[0]:span[1]]
    for name in names:
        found = leading_call(segment, name)
        if found is not None:
            return found.shifted(span[0])
    return None
