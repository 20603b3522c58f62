from __future__ import annotations

from dataclasses import dataclass, field

from .constants import DEFAULT_SOCKET_URL


@dataclass(slots=True)
class SocketConfig:
    url: str = DEFAULT_SOCKET_URL

    # Onion-routed circuits can take a long time to build.
    connect_timeout_s: float = 60.0

    # Backoff doubles from `reconnect_delay_s` up to `reconnect_delay_max_s`, each
    # delay jittered by +/- `reconnect_randomization`.
    reconnect: bool = True
    reconnect_attempts: int = 5
    reconnect_delay_s: float = 2.0
    reconnect_delay_max_s: float = 10.0
    reconnect_randomization: float = 0.5

    headers: dict[str, str] = field(default_factory=dict)
