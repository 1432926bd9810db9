from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    max_message_length: int = 2000
    match_window_ms: int = 5000
    typing_idle_ms: int = 3000
    typing_throttle_ms: int = 500
    preview_length: int = 50
    accepts_per_min: int = 10
    invites_per_min: int = 20
    poll_interval_s: int = 30

    @property
    def poll_interval_ms(self) -> int:
        return max(self.poll_interval_s, 0) * 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_engine_config_from_env() -> EngineConfig:
    return EngineConfig(
        max_message_length=_parse_positive_int("SIGNALROOM_MAX_MESSAGE_LENGTH", 2000),
        match_window_ms=_parse_non_negative_int("SIGNALROOM_MATCH_WINDOW_MS", 5000),
        typing_idle_ms=_parse_positive_int("SIGNALROOM_TYPING_IDLE_MS", 3000),
        typing_throttle_ms=_parse_non_negative_int("SIGNALROOM_TYPING_THROTTLE_MS", 500),
        preview_length=_parse_positive_int("SIGNALROOM_PREVIEW_LENGTH", 50),
        accepts_per_min=_parse_positive_int("SIGNALROOM_ACCEPTS_PER_MIN", 10),
        invites_per_min=_parse_positive_int("SIGNALROOM_INVITES_PER_MIN", 20),
        poll_interval_s=_parse_non_negative_int("SIGNALROOM_POLL_INTERVAL_S", 30),
    )
