"""
ELD integration through the Terminal unified API
"""
from .terminal_client import (
    TerminalClient,
    TerminalError,
    TerminalAPIError,
    TerminalAuthError,
    TerminalRateLimitError,
)
from .connection import EldConnectionService, EldConnectionError
from .mapping import EldMappingService
from .hos import HosService
from .gps import GpsService
from .diagnostics import DiagnosticsService
from .ifta import EldIftaService
from .sync import EldSyncService, SyncInProgress, SYNC_TYPES

__all__ = [
    "TerminalClient",
    "TerminalError",
    "TerminalAPIError",
    "TerminalAuthError",
    "TerminalRateLimitError",
    "EldConnectionService",
    "EldConnectionError",
    "EldMappingService",
    "HosService",
    "GpsService",
    "DiagnosticsService",
    "EldIftaService",
    "EldSyncService",
    "SyncInProgress",
    "SYNC_TYPES",
]
