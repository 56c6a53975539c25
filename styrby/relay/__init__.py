"""Outbound relay connection used by the daemon."""

import os
import platform
import socket

from styrby.core.configs import Credentials, RelaySettings
from styrby.relay.events import (
    RelayClosed,
    RelayConnecting,
    RelayEvent,
    RelayFailed,
    RelaySubscribed,
)
from styrby.relay.client import (
    RealtimeRelay,
    Relay,
    RelayEventHandler,
    build_websocket_url,
    get_channel_name,
)


def create_relay(
    credentials: Credentials,
    settings: RelaySettings,
    on_event: RelayEventHandler,
) -> Relay:
    """Build the default Realtime relay for this machine."""
    return RealtimeRelay(
        url=settings.url,
        anon_key=settings.anon_key,
        access_token=credentials.access_token,
        user_id=credentials.user_id,
        device_id=credentials.machine_id or f"daemon_{os.getpid()}",
        device_name=f"{socket.gethostname()} (daemon)",
        platform=platform.system().lower(),
        on_event=on_event,
    )


__all__ = [
    "RealtimeRelay",
    "Relay",
    "RelayClosed",
    "RelayConnecting",
    "RelayEvent",
    "RelayFailed",
    "RelaySubscribed",
    "RelayEventHandler",
    "build_websocket_url",
    "create_relay",
    "get_channel_name",
]
