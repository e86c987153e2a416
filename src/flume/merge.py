"""
Merge strategies for combining partial step results.

Fan-out helpers run several handlers against the same state and get back
one partial mapping per handler. This module folds those partials into a
single mapping under a named strategy.

Strategies:
    ::

        SHALLOW            later keys overwrite earlier ones
        ERROR_ON_CONFLICT  a key written by two partials raises MergeConflictError
        DEEP               dicts merge recursively, lists concatenate,
                           anything else is overwritten by the later value

Partials that are ``None`` or not mappings are skipped by every strategy.
Merging never mutates its inputs.

Examples:
    >>> shallow_merge({"x": 1}, {"x": 2})
    {'x': 2}
    >>> deep_merge({"items": [1]}, {"items": [2]})
    {'items': [1, 2]}
    >>> merge_results([{"a": 1}, None, {"b": 2}], MergeStrategy.ERROR_ON_CONFLICT)
    {'a': 1, 'b': 2}

Tags:
    merge, fan-out, parallel, deep-merge, flume
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from flume.core.errors import MergeConflictError


class MergeStrategy(str, Enum):
    """How concurrent partial results are combined."""

    SHALLOW = "shallow"
    ERROR_ON_CONFLICT = "error-on-conflict"
    DEEP = "deep"


def _partials(results: Iterable[Any]) -> list[Mapping[str, Any]]:
    return [r for r in results if isinstance(r, Mapping)]


def _is_plain_dict(value: Any) -> bool:
    return type(value) is dict


def _is_plain_list(value: Any) -> bool:
    return type(value) is list


def _copy_plain(value: Any) -> Any:
    """Copy plain dict/list containers recursively; leave everything else as is."""
    if _is_plain_dict(value):
        return {k: _copy_plain(v) for k, v in value.items()}
    if _is_plain_list(value):
        return [_copy_plain(v) for v in value]
    return value


def shallow_merge(*results: Any) -> dict[str, Any]:
    """Combine partials left to right; the last writer of a key wins."""
    merged: dict[str, Any] = {}
    for partial in _partials(results):
        merged.update(partial)
    return merged


def merge_without_conflicts(*results: Any) -> dict[str, Any]:
    """Combine partials, refusing any key written by more than one.

    Raises:
        MergeConflictError: naming the first key found in two partials.
    """
    merged: dict[str, Any] = {}
    for partial in _partials(results):
        for key, value in partial.items():
            if key in merged:
                raise MergeConflictError(key)
            merged[key] = value
    return merged


def _deep_merge_into(target: dict[str, Any], source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        existing = target.get(key)
        if key in target and _is_plain_dict(existing) and _is_plain_dict(value):
            _deep_merge_into(existing, value)
        elif key in target and _is_plain_list(existing) and _is_plain_list(value):
            existing.extend(_copy_plain(v) for v in value)
        else:
            target[key] = _copy_plain(value)


def deep_merge(*results: Any) -> dict[str, Any]:
    """Recursively combine partials.

    Only exact ``dict`` and ``list`` instances are treated as containers.
    Dict subclasses, tuples, sets, datetimes and other objects are opaque
    values and get overwritten. Containers in the result are fresh copies,
    so later mutation of the result never reaches the inputs.
    """
    merged: dict[str, Any] = {}
    for partial in _partials(results):
        _deep_merge_into(merged, partial)
    return merged


_MERGERS = {
    MergeStrategy.SHALLOW: shallow_merge,
    MergeStrategy.ERROR_ON_CONFLICT: merge_without_conflicts,
    MergeStrategy.DEEP: deep_merge,
}


def merge_results(
    results: Iterable[Any],
    strategy: MergeStrategy | str = MergeStrategy.SHALLOW,
) -> dict[str, Any]:
    """Merge ``results`` positionally with ``strategy``.

    ``strategy`` may be given as the enum or its string value
    (``"error-on-conflict"``).
    """
    return _MERGERS[MergeStrategy(strategy)](*results)


__all__ = [
    "MergeStrategy",
    "deep_merge",
    "merge_results",
    "merge_without_conflicts",
    "shallow_merge",
]
