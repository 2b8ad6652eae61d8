"""Client for the Polygon market data REST API and websocket stream."""

from polyfeed.client import ClientModule, PolygonClient
from polyfeed.config.enumerations import ChannelKind, ConnectionState
from polyfeed.config.settings import ClientSettings, load_settings

__version__ = "0.1.0"

__all__ = [
    "ChannelKind",
    "ClientModule",
    "ClientSettings",
    "ConnectionState",
    "PolygonClient",
    "load_settings",
]
