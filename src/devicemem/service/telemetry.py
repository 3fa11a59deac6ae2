from __future__ import annotations

from typing import Any

MAX_DEPTH = 5


def _own_tensor_bytes(module: Any, recurse: bool) -> int:
    total = 0
    for attr in ("parameters", "buffers"):
        getter = getattr(module, attr, None)
        if getter is None:
            continue
        for tensor in getter(recurse=recurse):
            total += int(tensor.numel()) * int(tensor.element_size())
    return total


def estimate_model_bytes(model: Any, max_depth: int = MAX_DEPTH) -> int:
    """Sum parameter and buffer bytes of a torch module tree.

    The walk follows ``named_children`` down to ``max_depth``; a module at the
    bound is counted recursively in one step. Objects that are not modules
    report zero.
    """
    if not hasattr(model, "named_children"):
        inner = getattr(model, "model", None)
        if inner is None or not hasattr(inner, "named_children"):
            return 0
        model = inner

    def visit(module: Any, depth: int) -> int:
        if depth >= max_depth:
            return _own_tensor_bytes(module, recurse=True)
        total = _own_tensor_bytes(module, recurse=False)
        for _, child in module.named_children():
            total += visit(child, depth + 1)
        return total

    try:
        return visit(model, 0)
    except Exception:
        return 0
