from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import dotenv_values

DEFAULT_PROTOCOL_VERSION = "0.1.0"

SECONDS_PER_MINUTE = 60
SECONDS_PER_DAY = 24 * 60 * SECONDS_PER_MINUTE

_ENV_PREFIX = "DISTORT_"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(_ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ValueError(f"{_ENV_PREFIX}{name} must be non-negative, got {value}")
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(_ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class NodeConfig:
    """Operational settings of a distort node.

    The message length of the wire protocol is deliberately not part of the
    configuration: every peer must agree on it.
    """

    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    supported_versions: Tuple[str, ...] = (DEFAULT_PROTOCOL_VERSION,)

    message_interval_seconds: int = 5 * SECONDS_PER_MINUTE
    certificate_interval_seconds: int = 30 * SECONDS_PER_MINUTE
    certificate_lifetime_seconds: int = 14 * SECONDS_PER_DAY

    transport_retries: int = 3
    max_read: int = 1000
    debug: bool = False

    def __post_init__(self) -> None:
        if self.protocol_version not in self.supported_versions:
            self.supported_versions = (self.protocol_version, *self.supported_versions)
        if self.transport_retries < 1:
            raise ValueError("transport_retries must be at least 1")
        if self.max_read < 1:
            raise ValueError("max_read must be at least 1")

    @classmethod
    def recommended(cls) -> "NodeConfig":
        """Default intervals for a long-running node."""
        return cls()

    @classmethod
    def from_env(
        cls,
        env_file: Optional[str | Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "NodeConfig":
        """Build a config from ``DISTORT_*`` variables.

        Parameters:
            env_file: Optional ``.env`` file; variables already set in the
                environment take precedence over it.
            environ: Mapping to read instead of ``os.environ``.

        Raises:
            ValueError: If a numeric variable does not parse.
        """
        env = dict(os.environ if environ is None else environ)
        if env_file is not None:
            for key, value in dotenv_values(env_file).items():
                if value is not None:
                    env.setdefault(key, value)

        version = env.get(_ENV_PREFIX + "PROTOCOL_VERSION") or DEFAULT_PROTOCOL_VERSION
        raw_supported = env.get(_ENV_PREFIX + "SUPPORTED_VERSIONS")
        if raw_supported:
            supported = tuple(v.strip() for v in raw_supported.split(",") if v.strip())
        else:
            supported = (version,)

        return cls(
            protocol_version=version,
            supported_versions=supported,
            message_interval_seconds=_env_int(env, "MESSAGE_INTERVAL", 5 * SECONDS_PER_MINUTE),
            certificate_interval_seconds=_env_int(env, "CERTIFICATE_INTERVAL", 30 * SECONDS_PER_MINUTE),
            certificate_lifetime_seconds=_env_int(env, "CERTIFICATE_LIFETIME", 14 * SECONDS_PER_DAY),
            transport_retries=_env_int(env, "TRANSPORT_RETRIES", 3),
            max_read=_env_int(env, "MAX_READ", 1000),
            debug=_env_bool(env, "DEBUG", False),
        )
