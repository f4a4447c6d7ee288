"""
Restricted arithmetic evaluation over model scripts.

The validator needs real numbers for its geometric checks (sphere centres,
radii, scale factors) but must never execute generated code. This module
offers exactly two things:

1. ``extract_symbols()``: a SymbolTable built from top-level
   ``name = <numeric literal>;`` assignments.
2. ``evaluate()``: numeric literals, known names, ``+ - * /`` and
   parentheses. Anything else (function calls, vectors, ternaries, unknown
   names, ``^``) yields ``None`` and the caller skips its check.

Parsing goes through ``ast`` in ``eval`` mode and walks a whitelist of node
types; nothing is ever compiled or run.
"""

from __future__ import annotations

import ast
import math
import re
from typing import Mapping, Optional

from scadsafe.scad_syntax import brace_depths, strip_comments

SymbolTable = dict[str, float]

_ASSIGNMENT_RE = re.compile(
    r'^[ \t]*([A-Za-z_]\w*)\s*=\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)\s*;',
    re.MULTILINE,
)
_ALLOWED_CHARS_RE = re.compile(r'^[\w\s.+\-*/()]+$')

# Longer text is never a hand-written dimension; ast would also recurse too deep.
MAX_EXPRESSION_LENGTH = 1000

_BINARY_OPS = {
    ast.Add: lambda a, b: a + b,
    ast.Sub: lambda a, b: a - b,
    ast.Mult: lambda a, b: a * b,
    ast.Div: lambda a, b: a / b,
}


def extract_symbols(script: str) -> SymbolTable:
    """Collect top-level numeric literal assignments.

    Later assignments win, as in OpenSCAD. Assignments nested inside
    module bodies or blocks are ignored.
    """
    text = strip_comments(script or "")
    depths = brace_depths(text)
    symbols: SymbolTable = {}
    for match in _ASSIGNMENT_RE.finditer(text):
        if depths[match.start(1)] != 0:
            continue
        try:
            symbols[match.group(1)] = float(match.group(2))
        except ValueError:
            continue
    return symbols


def merge_parameters(
    symbols: SymbolTable, parameters: Optional[Mapping[str, object]]
) -> SymbolTable:
    """Overlay bound parameters (``-D`` defines) on a SymbolTable.

    Only real numbers are taken; booleans, strings and vectors cannot take
    part in arithmetic checks.
    """
    merged = dict(symbols)
    for name, value in (parameters or {}).items():
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            merged[name] = float(value)
        elif isinstance(value, str):
            try:
                merged[name] = float(value)
            except ValueError:
                continue
    return merged


def evaluate(expr: str, symbols: Mapping[str, float]) -> Optional[float]:
    """Evaluate ``expr`` under the restricted grammar, or return None."""
    text = (expr or "").strip()
    if not text or len(text) > MAX_EXPRESSION_LENGTH or not _ALLOWED_CHARS_RE.match(text):
        return None
    # "//" would parse as floor division and "**" as power: neither exists
    # in the grammar we accept.
    if "//" in text or "**" in text:
        return None
    try:
        tree = ast.parse(text, mode="eval")
    except (SyntaxError, ValueError, RecursionError, MemoryError):
        return None
    try:
        value = _eval_node(tree.body, symbols)
    except (ZeroDivisionError, OverflowError, RecursionError):
        return None
    if value is None or not math.isfinite(value):
        return None
    return value


def _eval_node(node: ast.AST, symbols: Mapping[str, float]) -> Optional[float]:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            return None
        return float(node.value)

    if isinstance(node, ast.Name):
        value = symbols.get(node.id)
        return None if value is None else float(value)

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        operand = _eval_node(node.operand, symbols)
        if operand is None:
            return None
        return -operand if isinstance(node.op, ast.USub) else operand

    if isinstance(node, ast.BinOp):
        op = _BINARY_OPS.get(type(node.op))
        if op is None:
            return None
        left = _eval_node(node.left, symbols)
        if left is None:
            return None
        right = _eval_node(node.right, symbols)
        if right is None:
            return None
        return op(left, right)

    return None


def count_operators(expr: str) -> int:
    """Count binary arithmetic operators in an expression.

    Leading signs and exponent signs (``1e-3``) are not operators. Used as
    a complexity proxy, so it also works on text ``evaluate`` rejects.
    """
    text = (expr or "").strip()
    tree = None
    if len(text) <= MAX_EXPRESSION_LENGTH:
        try:
            tree = ast.parse(text, mode="eval")
        except (SyntaxError, ValueError, RecursionError, MemoryError):
            tree = None
    if tree is not None:
        return sum(
            1 for node in ast.walk(tree)
            if isinstance(node, ast.BinOp)
            and isinstance(node.op, (ast.Add, ast.Sub, ast.Mult, ast.Div))
        )

    count = 0
    prev = ""
    for ch in text.lstrip("+-").replace(" ", ""):
        if ch in "+-*/" and prev not in ("", "e", "E", "(", "[", ",", "+", "-", "*", "/"):
            count += 1
        prev = ch
    return count
