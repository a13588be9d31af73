"""
Connection configuration.
"""

import os
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .message import PROTOCOL_VERSION, TransportEvent


ModeCheck = Union[bool, Callable[[], bool]]

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass
class ConnectionConfig:
    """
    Tunables for a Connection.

    - protocol_version: sent as ``pv`` on every query
    - client_version: sent as ``cs`` when set
    - reconnect_delay: seconds between a disconnect and the reconnect attempt
    - dev_mode: enables data logging and ``__only_in_dev_mode__`` queries;
      a bool or a zero-argument callable evaluated on each use
    - server_dev_mode: enables ``__only_in_srv_dev_mode__`` queries
    - sign_requests: sign every query when a signer is configured; when
      False only queries carrying ``__sign__`` are signed
    - query_event: transport event name queries are emitted on
    """

    protocol_version: int = PROTOCOL_VERSION
    client_version: Optional[str] = None
    reconnect_delay: float = 2.3
    dev_mode: ModeCheck = False
    server_dev_mode: ModeCheck = False
    sign_requests: bool = True
    query_event: str = TransportEvent.QUERY.value

    def __post_init__(self):
        if self.reconnect_delay < 0:
            raise ValueError(f"reconnect_delay must be >= 0, got {self.reconnect_delay}")

    def is_dev_mode(self) -> bool:
        return bool(self.dev_mode()) if callable(self.dev_mode) else bool(self.dev_mode)

    def is_server_dev_mode(self) -> bool:
        if callable(self.server_dev_mode):
            return bool(self.server_dev_mode())
        return bool(self.server_dev_mode)

    @classmethod
    def from_env(cls, **overrides) -> "ConnectionConfig":
        """
        Build a config from ``SOTRADE_*`` environment variables.

        Recognised: SOTRADE_CLIENT_VERSION, SOTRADE_RECONNECT_DELAY,
        SOTRADE_DEV_MODE, SOTRADE_SRV_DEV_MODE, SOTRADE_SIGN_REQUESTS.
        Keyword overrides win over the environment.
        """
        values = {
            "client_version": os.environ.get("SOTRADE_CLIENT_VERSION") or None,
            "dev_mode": _env_flag("SOTRADE_DEV_MODE"),
            "server_dev_mode": _env_flag("SOTRADE_SRV_DEV_MODE"),
            "sign_requests": _env_flag("SOTRADE_SIGN_REQUESTS", default=True),
        }

        delay = os.environ.get("SOTRADE_RECONNECT_DELAY")
        if delay:
            try:
                values["reconnect_delay"] = float(delay)
            except ValueError:
                raise ValueError(f"Invalid SOTRADE_RECONNECT_DELAY '{delay}'")

        values.update(overrides)
        return cls(**values)
