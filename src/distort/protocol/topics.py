"""Topic names and membership strings."""
from __future__ import annotations

import re
from typing import Iterable, Tuple

from ..exceptions import TopicFormatError
from ..models import ROOT_ACCOUNT

ALL_SUFFIX = "all"
CERTS_SUFFIX = "certs"

_MESSAGE_TOPIC = re.compile(r"^(.*)-(all|\d+)$")


def message_topic(name: str, subgroup_index: int) -> str:
    if subgroup_index > 0:
        return f"{name}-{subgroup_index}"
    return f"{name}-{ALL_SUFFIX}"


def certificate_topic(name: str) -> str:
    return f"{name}-{CERTS_SUFFIX}"


def parse_message_topic(topic: str) -> Tuple[str, int]:
    """Split a message topic back into ``(group name, subgroup index)``.

    Raises:
        TopicFormatError: If the topic does not end in ``-all`` or ``-<digits>``.
    """
    m = _MESSAGE_TOPIC.match(topic)
    if not m or not m.group(1):
        raise TopicFormatError(f"Received message on improper group: {topic!r}")
    suffix = m.group(2)
    return m.group(1), 0 if suffix == ALL_SUFFIX else int(suffix)


def membership(name: str, subgroup_index: int) -> str:
    return f"{name}:{subgroup_index}"


def parse_membership(value: str) -> Tuple[str, int]:
    # Group names may themselves contain ':'
    name, sep, index = value.rpartition(":")
    if not sep or not index.isdigit():
        raise ValueError(f"invalid group membership string: {value!r}")
    return name, int(index)


def path_intersects(name: str, path: Iterable[int], groups: Iterable[str]) -> bool:
    """True if any node of ``path`` in group ``name`` is among ``groups``."""
    members = set(groups)
    return any(membership(name, i) in members for i in path)


def format_peer_string(peer_id: str, account_name: str | None = None) -> str:
    """``peerId`` for the root account, ``peerId:accountName`` otherwise."""
    if account_name and account_name != ROOT_ACCOUNT:
        return f"{peer_id}:{account_name}"
    return peer_id
