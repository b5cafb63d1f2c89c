from __future__ import annotations

from typing import Iterable, Sequence

from nags.data_models import GlassPartResult


def unresolved_positions(requested: Sequence[str], resolved: Iterable[str]) -> list[str]:
    done = set(resolved)
    return [p for p in requested if p not in done]


def merge_parts(
    accumulated: dict[str, GlassPartResult],
    candidates: Iterable[GlassPartResult],
    allowed: Iterable[str],
) -> list[str]:
    """Merge candidates into ``accumulated`` keyed by position, first writer wins.

    Only positions in ``allowed`` that are not already resolved are accepted.
    Returns the positions newly resolved, in the order they were accepted.
    """
    open_positions = set(allowed) - set(accumulated)
    added: list[str] = []
    for part in candidates:
        pos = part.glass_position
        if pos not in open_positions:
            continue
        accumulated[pos] = part
        open_positions.discard(pos)
        added.append(pos)
    return added
