#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
segment-sync: shared configuration, errors and progress plumbing
================================================================

Everything in here is imported by both `segment_sync` (the orchestration
core) and `segment_delta` (checksum, delta and integrity collaborators), so
it must not import either of them.

Contents:
    Config                  Process-wide tunables (timeouts, chunk sizes, throttling)
    SyncError and subclasses
    ProgressListener        Protocol every progress/cancellation sink implements
    CancelToken             Thread-safe cooperative cancellation flag
    NullProgressListener    Listener that ignores everything
    LoggingProgressListener Listener that forwards status text to logging
"""

from __future__ import annotations

import logging
import threading
from typing import ClassVar, Dict, Optional, Protocol

__all__ = [
    'Config',
    'SyncError',
    'ConfigError',
    'NetworkError',
    'SyncInterrupted',
    'IntegrityError',
    'DeltaError',
    'CommitError',
    'ProgressListener',
    'CancelToken',
    'NullProgressListener',
    'LoggingProgressListener',
    'logger',
]


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration for segment-sync behavior.

    Values here are the defaults picked up by `DownloaderConfig` and the
    checksum helpers at construction time. Tests and the CLI may override
    them at runtime and call `reset_defaults()` afterwards.

    Attributes:
        VERBOSE_LOGGING (bool): Enable INFO level logging output
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        ENABLE_PROGRESS (bool): Show the live percentage line in the CLI
        CHUNK_SIZE (int): Read size for streamed HTTP bodies
        CONNECT_TIMEOUT (float): Seconds allowed for connection establishment
        THROTTLE_BYTES_PER_MS (int): Target rate of throttled downloads
            (2096 bytes/ms keeps a stream just under 16 Mbit/s)
        HASH_CHUNK_SIZE (int): Read size when hashing local files
        USER_AGENT (str): User-Agent header sent with every request

    Example:
        >>> Config.THROTTLE_BYTES_PER_MS = 1024
        >>> Config.reset_defaults()
    """
    VERBOSE_LOGGING: ClassVar[bool] = False
    USE_COLORS: ClassVar[bool] = True
    ENABLE_PROGRESS: ClassVar[bool] = True

    # Network settings
    CHUNK_SIZE: ClassVar[int] = 4096
    CONNECT_TIMEOUT: ClassVar[float] = 5.0
    THROTTLE_BYTES_PER_MS: ClassVar[int] = 2096
    USER_AGENT: ClassVar[str] = "segment-sync"

    # Local file settings
    HASH_CHUNK_SIZE: ClassVar[int] = 1024 * 1024

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "VERBOSE_LOGGING": False,
            "USE_COLORS": True,
            "ENABLE_PROGRESS": True,
            "CHUNK_SIZE": 4096,
            "CONNECT_TIMEOUT": 5.0,
            "THROTTLE_BYTES_PER_MS": 2096,
            "USER_AGENT": "segment-sync",
            "HASH_CHUNK_SIZE": 1024 * 1024,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('segment-sync')
logger.setLevel(_default_log_level)


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class SyncError(Exception):
    """
    Base exception for all segment-sync errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code, reused as the CLI exit status

    Example:
        >>> raise SyncError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ConfigError(SyncError):
    """Raised for a malformed server configuration or invalid arguments."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class NetworkError(SyncError):
    """
    Raised when a remote resource cannot be fetched.

    Covers connect timeouts, transport failures and any status other than
    200. `status_code` is None when no response was received at all.
    """
    def __init__(self, message: str, url: Optional[str] = None,
                 status_code: Optional[int] = None) -> None:
        super().__init__(message, code=3)
        self.url = url
        self.status_code = status_code


class SyncInterrupted(SyncError):
    """
    Raised when the cancellation flag is observed.

    Kept apart from NetworkError so callers can tell a user stop from a
    failed transfer. Partially written files are left for the caller.
    """
    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message, code=130)


class IntegrityError(SyncError):
    """Raised when a freshly produced segment file fails verification."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=4)


class DeltaError(SyncError):
    """
    Raised when a delta cannot be fetched or applied.

    The synchronizer downgrades this to a full download.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=5)


class CommitError(SyncError):
    """Raised when the live file cannot be removed or replaced."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


# ============================================================================
# PROGRESS / CANCELLATION PLUMBING
# ============================================================================

class ProgressListener(Protocol):
    """
    Sink for status and progress events, and source of the cancel flag.

    `update_progress(total, current)` uses `total <= 0` for an indeterminate
    transfer. `segment_progress(name, percent)` is the structured per-segment
    record; percent is -1 while indeterminate.
    """
    def update_status(self, text: str) -> None: ...
    def update_progress(self, total: int, current: int) -> None: ...
    def segment_progress(self, name: str, percent: int) -> None: ...
    def is_cancelled(self) -> bool: ...


class CancelToken:
    """Thread-safe cancellation token."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


class NullProgressListener:
    """Listener that drops every event and is never cancelled."""

    def update_status(self, text: str) -> None:
        pass

    def update_progress(self, total: int, current: int) -> None:
        pass

    def segment_progress(self, name: str, percent: int) -> None:
        pass

    def is_cancelled(self) -> bool:
        return False


class LoggingProgressListener(NullProgressListener):
    """Listener that forwards status text to the module logger."""

    def __init__(self, cancel_token: Optional[CancelToken] = None) -> None:
        self.cancel_token = cancel_token or CancelToken()

    def update_status(self, text: str) -> None:
        logger.info(text)

    def segment_progress(self, name: str, percent: int) -> None:
        logger.debug(f"{name}: {percent}%")

    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled()
