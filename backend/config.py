"""Server configuration read from environment variables.

`.env` at the repository root is loaded by backend.app before this is read.
Provider credentials are not part of this object; they are resolved per
request by chronicles.manager.settings_from_request so that a key added to
the environment is picked up without restarting.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class ServerConfig:
    stream_chunk_delay: float = 0.05
    turn_timeout: float = 90.0
    aux_min_interval: float = 3.0
    aux_cooldown: float = 300.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ServerConfig:
        env = os.environ if env is None else env
        return cls(
            stream_chunk_delay=float(env.get("STREAM_CHUNK_DELAY", "0.05")),
            turn_timeout=float(env.get("TURN_TIMEOUT", "90")),
            aux_min_interval=float(env.get("AUX_MIN_INTERVAL", "3.0")),
            aux_cooldown=float(env.get("AUX_COOLDOWN", "300")),
        )
