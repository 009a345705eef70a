"""Random root-to-leaf paths through the fixed-depth group tree.

Nodes are numbered breadth first in a perfect binary tree: the root is 0
and the children of ``p`` are ``2p + 1`` and ``2p + 2``. Every group member
listens on one node; a broadcast round publishes on every node of a path.
"""
from __future__ import annotations

import secrets
from typing import Sequence

from ..exceptions import InvalidLevelError

MAX_PATH_DEPTH = 5
MAX_INDEX = 2 ** (MAX_PATH_DEPTH + 1) - 2

_WORD_BITS = 32


def left_child(p: int) -> int:
    return 2 * p + 1


def right_child(p: int) -> int:
    return 2 * p + 2


def parent(x: int) -> int:
    if x == 0:
        raise ValueError("root node has no parent")
    return (x - 1) // 2


def level(x: int) -> int:
    """Depth of node ``x`` (the root is level 0)."""
    if x < 0:
        raise ValueError(f"negative node index: {x}")
    return (x + 1).bit_length() - 1


def random_path() -> list[int]:
    """Draw a uniformly random path ``[0, c1, ..., cD]`` of ``MAX_PATH_DEPTH + 1`` nodes.

    One bit of a single random word is consumed per level: a clear bit picks
    the left child, a set bit the right one.
    """
    r = secrets.randbits(_WORD_BITS)
    path = [0]
    for _ in range(MAX_PATH_DEPTH):
        p = path[-1]
        path.append(right_child(p) if r & 1 else left_child(p))
        r >>= 1
    return path


def validate_level(lvl: int) -> int:
    if isinstance(lvl, bool) or not isinstance(lvl, int):
        raise InvalidLevelError(f"level must be an integer, got {lvl!r}")
    if lvl < 0 or lvl > MAX_PATH_DEPTH:
        raise InvalidLevelError(f"level out of range: {lvl} not in [0, {MAX_PATH_DEPTH}]")
    return lvl


def random_from_level(lvl: int) -> int:
    """Pick a random node on the given level, used as the subgroup index of a new membership."""
    return random_path()[validate_level(lvl)]


def is_valid_path(path: Sequence[int]) -> bool:
    if len(path) != MAX_PATH_DEPTH + 1 or path[0] != 0:
        return False
    for p, c in zip(path, path[1:]):
        if c not in (left_child(p), right_child(p)):
            return False
    return True
