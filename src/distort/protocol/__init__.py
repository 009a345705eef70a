"""Protocol-layer primitives: group tree paths, topics and wire envelopes."""

from .group_tree import MAX_INDEX, MAX_PATH_DEPTH, random_from_level, random_path
from .topics import certificate_topic, message_topic, parse_message_topic

__all__ = [
    "MAX_INDEX",
    "MAX_PATH_DEPTH",
    "random_from_level",
    "random_path",
    "certificate_topic",
    "message_topic",
    "parse_message_topic",
]
