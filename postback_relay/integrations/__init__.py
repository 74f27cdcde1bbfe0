"""
Integrations package initialization.
Exports the upstream clients (tracking platform + chat transport).
"""
from .keitaro import KeitaroClient
from .telegram import TelegramTransport

__all__ = [
    "KeitaroClient",
    "TelegramTransport",
]
