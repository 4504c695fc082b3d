"""
Comparison and formatting helpers shared by the compiler, scanner and reporter.
"""

from __future__ import annotations

import numpy as np


def vectorized_cmp(a: np.ndarray, b: np.ndarray | float, op: str) -> np.ndarray:
    """
    Compare numpy arrays or pandas Series using a dynamic operator.

    NaN on either side never satisfies a comparison, which matches SQL NULL
    semantics in the metric store.

    Examples:
        >>> vectorized_cmp(np.array([1, 5, 3]), 3, '>=')
        array([False,  True,  True])
    """
    if op == "<":  return a < b
    if op == "<=": return a <= b
    if op == ">":  return a > b
    if op == ">=": return a >= b
    if op == "=":  return a == b
    raise ValueError(f"Unsupported operator: {op!r}")


def flip_operator(op: str) -> str:
    """Mirror a strict/non-strict inequality ('>' <-> '<'). '=' is its own mirror."""
    return {">": "<", "<": ">", ">=": "<=", "<=": ">=", "=": "="}[op]


def format_number(value: float, max_decimals: int = 6) -> str:
    """
    Render a threshold or percentage without trailing zeros.

    Examples:
        >>> format_number(5.0)
        '5'
        >>> format_number(-0.25)
        '-0.25'
    """
    text = f"{float(value):.{max_decimals}f}".rstrip("0").rstrip(".")
    if text in ("-0", ""):
        return "0"
    return text
