#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
segment-sync: Delta-First Synchronization of Routing Data Segments
==================================================================

Keeps a local directory of large, versioned segment files (`*.rd5`) in step
with a segment server. When a local copy exists, only the binary delta
from that exact version is fetched; otherwise, or when the delta is missing
or broken, the whole segment is downloaded. A segment is only replaced
after the new file passes the integrity check, so a failed or cancelled
update always leaves the previous file in place.

Quick Start:
-----------
    >>> from segment_sync import sync_segments, CancelToken
    >>>
    >>> token = CancelToken()
    >>> result = sync_segments("/data/brouter", ["E10_N50", "E5_N50"],
    ...                        cancel_token=token)
    >>> print(result.outcome, result.outcomes)

Pipeline:
--------
    BatchOrchestrator
        1. lookups (always) and profiles (only if present locally)
        2. for each segment, in order, fail-fast:
    DeltaSynchronizer
        a. MD5 of the live file -> <segment_url>diff/<name>/<md5>.df5
        b. HEAD probe; if present, download + apply into <live>_tmp
        c. otherwise (or on any delta failure) full GET into <live>_tmp
        d. integrity check of <live>_tmp
        e. delete <live>, rename <live>_tmp -> <live>
        f. <live>_tmp and <live>_diff are always removed

Local layout:
------------
    <base_dir>/profiles2/<file>        lookup tables and routing profiles
    <base_dir>/segments4/<name>.rd5    live segments

CLI Usage:
---------
    $ segment-sync sync /data/brouter E10_N50 E5_N50
    $ segment-sync checksum segments4/E10_N50.rd5
    $ segment-sync diff old.rd5 new.rd5 -o out.df5
    $ segment-sync patch old.rd5 out.df5 -o new.rd5
    $ segment-sync verify new.rd5
"""

from __future__ import annotations

__version__ = "1.0.0"
__author__ = "Alejandro Sanchez"
__license__ = "GPL-3.0-or-later"

__all__ = [
    # Orchestration
    'sync_segments',
    'BatchOrchestrator',
    'BatchOutcome',
    'BatchResult',
    'DeltaSynchronizer',
    'SegmentOutcome',

    # Transport
    'Downloader',
    'DownloaderConfig',
    'ExistenceProbe',

    # Configuration and layout
    'Config',
    'ServerConfig',
    'AncillaryFiles',
    'SegmentLayout',
    'SegmentPaths',
    'SEGMENT_SUFFIX',
    'DELTA_SUFFIX',

    # Progress / cancellation
    'ProgressChannel',
    'ProgressListener',
    'CancelToken',
    'NullProgressListener',
    'LoggingProgressListener',
    'ConsoleProgressListener',

    # Exceptions
    'SyncError',
    'ConfigError',
    'NetworkError',
    'SyncInterrupted',
    'IntegrityError',
    'DeltaError',
    'CommitError',

    # CLI
    'Colors',
    'create_parser',
    'main',
]

import argparse
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Union

import requests

from segment_base import (
    CancelToken,
    CommitError,
    Config,
    ConfigError,
    DeltaError,
    IntegrityError,
    LoggingProgressListener,
    NetworkError,
    NullProgressListener,
    ProgressListener,
    SyncError,
    SyncInterrupted,
    logger,
)
from segment_delta import (
    ChecksumType,
    CompressionType,
    DEFAULT_DELTA_BLOCK_SIZE,
    apply_delta,
    check_file_integrity,
    file_digest,
    generate_delta,
)

PathLike = Union[str, os.PathLike]

PROFILES_DIR = "profiles2"
SEGMENTS_DIR = "segments4"
SEGMENT_SUFFIX = ".rd5"
DELTA_SUFFIX = ".df5"
TEMP_SUFFIX = "_tmp"
DIFF_SUFFIX = "_diff"

HTTP_OK = 200


# ============================================================================
# TERMINAL COLORS - auto-detects TTY
# ============================================================================

class Colors:
    """
    ANSI color codes for terminal output.

    Disabled on non-TTY streams or when Config.USE_COLORS is False.

    Example:
        >>> print(Colors.success("E10_N50 updated"))
    """
    _RESET = '\033[0m'
    _BOLD = '\033[1m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'
    _BLUE = '\033[94m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"

    @classmethod
    def info(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BLUE}ℹ{cls._RESET} {text}"
        return f"[INFO] {text}"

    @classmethod
    def bold(cls, text: str) -> str:
        if cls._is_enabled():
            return f"{cls._BOLD}{text}{cls._RESET}"
        return text


def format_size(size: float) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}" if unit != 'B' else f"{int(size)} {unit}"
        size = size / 1024.0
    return f"{size:.2f} PB"


# ============================================================================
# PROGRESS CHANNEL
# ============================================================================

class ProgressChannel:
    """
    Single conduit for status text, byte progress and cancellation.

    Wraps a host listener and an optional cancel token. Byte progress is
    forwarded as-is and also folded into the per-item `(name, percent)`
    record for whichever segment or ancillary file is current.
    """

    def __init__(self, listener: Optional[ProgressListener] = None,
                 cancel_token: Optional[CancelToken] = None) -> None:
        self.listener: ProgressListener = listener or NullProgressListener()
        self.cancel_token = cancel_token or CancelToken()
        self.current_item: Optional[str] = None

    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled() or self.listener.is_cancelled()

    def check_cancelled(self, message: str = "Operation cancelled") -> None:
        """Raise SyncInterrupted if cancellation was requested."""
        if self.is_cancelled():
            raise SyncInterrupted(message)

    def update_status(self, text: str) -> None:
        logger.debug(f"status: {text}")
        self.listener.update_status(text)

    def update_progress(self, total: int, current: int) -> None:
        self.listener.update_progress(total, current)
        if self.current_item is not None:
            percent = current * 100 // total if total > 0 else -1
            self.listener.segment_progress(self.current_item, percent)

    def segment_progress(self, name: str, percent: int) -> None:
        self.listener.segment_progress(name, percent)

    def begin_item(self, name: str) -> None:
        self.current_item = name
        self.listener.segment_progress(name, 0)

    def begin_segment(self, name: str, index: int, count: int) -> None:
        self.update_status(f"{name} ({index}/{count})")
        self.begin_item(name)

    def complete(self, total: int) -> None:
        """Report a finished transfer of `total` bytes, and 100 percent for the current item."""
        self.listener.update_progress(total, total)
        if self.current_item is not None:
            self.listener.segment_progress(self.current_item, 100)


class ConsoleProgressListener(NullProgressListener):
    """
    CLI listener: one line per status, plus a live percentage.

    The progress line is rewritten in place: when the integer percentage
    changes, or for transfers of unknown length every REDRAW_BYTES.
    """
    REDRAW_BYTES = 64 * 1024

    def __init__(self, cancel_token: Optional[CancelToken] = None,
                 quiet: bool = False, stream: Any = None) -> None:
        self.cancel_token = cancel_token or CancelToken()
        self.quiet = quiet
        self.stream = stream or sys.stdout
        self._last_percent: Optional[int] = None
        self._last_bytes = 0

    def finish_line(self) -> None:
        if self._last_percent is not None:
            self.stream.write("\n")
            self._last_percent = None
            self._last_bytes = 0

    def update_status(self, text: str) -> None:
        if self.quiet:
            return
        self.finish_line()
        print(Colors.info(text), file=self.stream)

    def update_progress(self, total: int, current: int) -> None:
        if self.quiet or not Config.ENABLE_PROGRESS:
            return
        percent = current * 100 // total if total > 0 else -1
        if percent == self._last_percent:
            if percent >= 0 or 0 <= current - self._last_bytes < self.REDRAW_BYTES:
                return
        self._last_percent = percent
        self._last_bytes = current
        if percent < 0:
            self.stream.write(f"\r  {format_size(current)}")
        else:
            self.stream.write(f"\r  {percent:3d}% of {format_size(total)}")
        self.stream.flush()

    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled()


# ============================================================================
# TRANSPORT - downloader and existence probe
# ============================================================================

@dataclass(frozen=True)
class DownloaderConfig:
    """
    Transport settings; unset fields fall back to `Config` at construction.

    Attributes:
        chunk_size: Bytes per streamed read (also the cancellation granularity)
        connect_timeout: Seconds allowed to establish a connection; reads
            are unbounded and governed by cancellation instead
        throttle_bytes_per_ms: Target rate of throttled downloads
        user_agent: User-Agent header
    """
    chunk_size: int = field(default_factory=lambda: Config.CHUNK_SIZE)
    connect_timeout: float = field(default_factory=lambda: Config.CONNECT_TIMEOUT)
    throttle_bytes_per_ms: float = field(default_factory=lambda: Config.THROTTLE_BYTES_PER_MS)
    user_agent: str = field(default_factory=lambda: Config.USER_AGENT)

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.throttle_bytes_per_ms <= 0:
            raise ConfigError(
                f"throttle_bytes_per_ms must be positive, got {self.throttle_bytes_per_ms}"
            )

    @property
    def timeout(self) -> tuple:
        """requests timeout tuple: bounded connect, unbounded read."""
        return (self.connect_timeout, None)


def create_session(config: DownloaderConfig) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": config.user_agent})
    return session


def _parse_content_length(value: Optional[str]) -> int:
    try:
        return int(value) if value is not None else -1
    except ValueError:
        return -1


class Downloader:
    """
    Streams an HTTP resource to a local file.

    Throttled downloads sleep after each chunk so that elapsed wall-clock
    time never undershoots `bytes_so_far / throttle_bytes_per_ms`. The
    cancel flag is polled before each chunk is written; on cancellation
    SyncInterrupted is raised and the destination is left as-is.

    `clock` and `sleep` are injectable so throttling can be tested without
    waiting in real time.
    """

    def __init__(self, channel: ProgressChannel,
                 config: Optional[DownloaderConfig] = None,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.channel = channel
        self.config = config or DownloaderConfig()
        self.session = session if session is not None else create_session(self.config)
        self.clock = clock
        self.sleep = sleep

    def download(self, url: str, destination: PathLike, throttle: bool,
                 quiet: Optional[bool] = None) -> int:
        """
        Download `url` into `destination`.

        Args:
            url: Remote location
            destination: Local file, created or truncated
            throttle: Cap throughput at config.throttle_bytes_per_ms
            quiet: Suppress per-chunk progress and the "Connecting..." status;
                defaults to `not throttle`, since unthrottled downloads are
                the many small ancillary files. The final (total, total)
                completion report is sent either way.

        Returns:
            Number of bytes written

        Raises:
            NetworkError: Connection failure or non-200 status
            SyncInterrupted: Cancellation observed between chunks
        """
        if quiet is None:
            quiet = not throttle

        logger.debug(f"GET {url} -> {destination} (throttle={throttle})")
        try:
            response = self.session.get(url, stream=True, timeout=self.config.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"HTTP request failed: {url}: {e}", url=url) from e

        with response:
            if not quiet:
                self.channel.update_status("Connecting...")

            if response.status_code != HTTP_OK:
                raise NetworkError(
                    f"HTTP request failed: {url} returned {response.status_code}",
                    url=url, status_code=response.status_code,
                )

            file_length = _parse_content_length(response.headers.get('Content-Length'))
            total = 0
            t0 = self.clock()
            try:
                with open(destination, 'wb') as output:
                    for chunk in response.iter_content(chunk_size=self.config.chunk_size):
                        self.channel.check_cancelled(f"Download of {url} cancelled")
                        if not chunk:
                            continue
                        output.write(chunk)
                        total += len(chunk)

                        if not quiet:
                            self.channel.update_progress(file_length, total)

                        if throttle:
                            # enforce < 16 Mbit/s at the default rate
                            dt = t0 + total / self.config.throttle_bytes_per_ms / 1000.0 - self.clock()
                            if dt > 0:
                                self.sleep(dt)
            except requests.RequestException as e:
                raise NetworkError(f"HTTP request failed: {url}: {e}", url=url) from e

        self.channel.complete(total)
        logger.debug(f"Downloaded {total:,} bytes from {url}")
        return total


class ExistenceProbe:
    """HEAD request answering "is this object on the server?"."""

    def __init__(self, config: Optional[DownloaderConfig] = None,
                 session: Optional[requests.Session] = None) -> None:
        self.config = config or DownloaderConfig()
        self.session = session if session is not None else create_session(self.config)

    def exists(self, url: str) -> bool:
        """
        Return True iff the server answers 200.

        Raises:
            NetworkError: The server could not be reached. This is never
                reported as "does not exist".
        """
        try:
            response = self.session.head(url, timeout=self.config.timeout,
                                         allow_redirects=True)
        except requests.RequestException as e:
            raise NetworkError(f"HTTP request failed: {url}: {e}", url=url) from e
        with response:
            logger.debug(f"HEAD {url} -> {response.status_code}")
            return response.status_code == HTTP_OK


# ============================================================================
# SERVER CONFIGURATION AND LOCAL LAYOUT
# ============================================================================

DEFAULT_SEGMENT_URL = "https://brouter.de/brouter/segments4/"
DEFAULT_PROFILES_URL = "https://brouter.de/brouter/profiles2/"
DEFAULT_LOOKUPS = ["lookups.dat"]
DEFAULT_PROFILES = [
    "car-eco.brf",
    "car-fast.brf",
    "fastbike.brf",
    "hiking-mountain.brf",
    "moped.brf",
    "rail.brf",
    "river.brf",
    "safety.brf",
    "shortest.brf",
    "trekking.brf",
]


def _with_trailing_slash(url: str) -> str:
    return url if url.endswith('/') else url + '/'


def segment_stem(segment_name: str) -> str:
    """'E10_N50.rd5' -> 'E10_N50'; names without the suffix pass through."""
    if segment_name.endswith(SEGMENT_SUFFIX):
        return segment_name[:-len(SEGMENT_SUFFIX)]
    return segment_name


@dataclass
class AncillaryFiles:
    """Small files refreshed before the segments: lookups and profiles."""
    lookups: List[str] = field(default_factory=list)
    profiles: List[str] = field(default_factory=list)


@dataclass
class ServerConfig:
    """
    Remote locations and the ancillary file lists.

    `load()` reads a plain key=value file. The key names are specific to
    segment-sync; no other tool is expected to write this format:

        segment_url=https://brouter.de/brouter/segments4/
        lookup_url=https://brouter.de/brouter/profiles2/
        profiles_url=https://brouter.de/brouter/profiles2/
        check_lookup=lookups.dat
        update_profile=trekking.brf
        update_profile=fastbike.brf
    """
    segment_url: str = DEFAULT_SEGMENT_URL
    lookup_url: str = DEFAULT_PROFILES_URL
    profiles_url: str = DEFAULT_PROFILES_URL
    lookups: List[str] = field(default_factory=lambda: list(DEFAULT_LOOKUPS))
    profiles: List[str] = field(default_factory=lambda: list(DEFAULT_PROFILES))

    _URL_KEYS: ClassVar[Dict[str, str]] = {
        'segment_url': 'segment_url',
        'lookup_url': 'lookup_url',
        'profiles_url': 'profiles_url',
    }

    def __post_init__(self) -> None:
        self.segment_url = _with_trailing_slash(self.segment_url)
        self.lookup_url = _with_trailing_slash(self.lookup_url)
        self.profiles_url = _with_trailing_slash(self.profiles_url)

    @classmethod
    def load(cls, path: PathLike) -> 'ServerConfig':
        """
        Parse a serverconfig.txt file.

        Lookup and profile lists in the file replace the defaults entirely
        when at least one entry is present.

        Raises:
            ConfigError: A non-comment line has no '='
            OSError: The file cannot be read
        """
        urls: Dict[str, str] = {}
        lookups: List[str] = []
        profiles: List[str] = []
        with open(path, 'r', encoding='utf-8') as f:
            for lineno, raw in enumerate(f, 1):
                line = raw.strip()
                if not line or line.startswith('#'):
                    continue
                if '=' not in line:
                    raise ConfigError(f"{path}:{lineno}: expected key=value, got {line!r}")
                key, value = (part.strip() for part in line.split('=', 1))
                if key in cls._URL_KEYS:
                    urls[cls._URL_KEYS[key]] = value
                elif key == 'check_lookup':
                    lookups.append(value)
                elif key == 'update_profile':
                    profiles.append(value)
                else:
                    logger.debug(f"{path}:{lineno}: ignoring unknown key {key!r}")

        config = cls(**urls)
        if lookups:
            config.lookups = lookups
        if profiles:
            config.profiles = profiles
        return config

    def ancillary_files(self) -> AncillaryFiles:
        return AncillaryFiles(lookups=list(self.lookups), profiles=list(self.profiles))

    def lookup_location(self, file_name: str) -> str:
        return self.lookup_url + file_name

    def profile_location(self, file_name: str) -> str:
        return self.profiles_url + file_name

    def segment_location(self, segment_name: str, base_url: Optional[str] = None) -> str:
        base = _with_trailing_slash(base_url) if base_url else self.segment_url
        return base + segment_stem(segment_name) + SEGMENT_SUFFIX


def segment_location(base_url: str, segment_name: str) -> str:
    """<base>/<name>.rd5"""
    return _with_trailing_slash(base_url) + segment_stem(segment_name) + SEGMENT_SUFFIX


def delta_location(base_url: str, segment_name: str, digest: str) -> str:
    """<base>/diff/<name>/<digest>.df5"""
    return (_with_trailing_slash(base_url) + "diff/" + segment_stem(segment_name)
            + "/" + digest + DELTA_SUFFIX)


@dataclass(frozen=True)
class SegmentPaths:
    """Live file plus its transient `_tmp` and `_diff` siblings."""
    live: Path
    temp: Path
    diff: Path


class SegmentLayout:
    """Resolves local paths under the base directory."""

    def __init__(self, base_dir: PathLike) -> None:
        self.base_dir = Path(base_dir)
        self.profiles_dir = self.base_dir / PROFILES_DIR
        self.segments_dir = self.base_dir / SEGMENTS_DIR

    def profile_path(self, file_name: str) -> Path:
        return self.profiles_dir / file_name

    def segment_paths(self, segment_name: str) -> SegmentPaths:
        live = self.segments_dir / (segment_stem(segment_name) + SEGMENT_SUFFIX)
        return SegmentPaths(
            live=live,
            temp=Path(str(live) + TEMP_SUFFIX),
            diff=Path(str(live) + DIFF_SUFFIX),
        )

    def ensure_dirs(self) -> None:
        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        self.segments_dir.mkdir(parents=True, exist_ok=True)


def _remove_if_exists(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


def _discard_stale(path: Path) -> None:
    """Remove a leftover transient file; it must not survive into a new attempt."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise CommitError(f"Failed to delete stale {path}") from e


# ============================================================================
# DELTA SYNCHRONIZER - one segment
# ============================================================================

class SegmentOutcome(Enum):
    UPDATED_VIA_DELTA = "updated-via-delta"
    UPDATED_VIA_FULL_DOWNLOAD = "updated-via-full-download"
    FAILED = "failed"


HashProvider = Callable[[PathLike, ProgressListener], str]
DeltaApplier = Callable[[PathLike, PathLike, PathLike, ProgressListener], Any]
IntegrityVerifier = Callable[[PathLike], None]


def _md5_provider(path: PathLike, listener: ProgressListener) -> str:
    return file_digest(path, ChecksumType.MD5, listener)


class DeltaSynchronizer:
    """
    Brings one segment up to date.

    The live file is replaced only by renaming a verified `_tmp` file, and
    `_tmp` / `_diff` never survive a call. Delta failures fall back to a
    full download; cancellation, full download, integrity and commit
    failures propagate.

    Collaborators default to the `segment_delta` implementations:
        hash_provider(path, listener) -> hex digest
        delta_applier(base, delta, output, listener)
        integrity_verifier(path), raises IntegrityError
    """

    def __init__(self, layout: SegmentLayout,
                 downloader: Downloader,
                 probe: ExistenceProbe,
                 channel: ProgressChannel,
                 hash_provider: HashProvider = _md5_provider,
                 delta_applier: DeltaApplier = apply_delta,
                 integrity_verifier: IntegrityVerifier = check_file_integrity,
                 throttle: bool = True) -> None:
        self.layout = layout
        self.downloader = downloader
        self.probe = probe
        self.channel = channel
        self.hash_provider = hash_provider
        self.delta_applier = delta_applier
        self.integrity_verifier = integrity_verifier
        self.throttle = throttle

    def sync_segment(self, base_url: str, segment_name: str) -> SegmentOutcome:
        """
        Update `segment_name` from `base_url`.

        Returns:
            UPDATED_VIA_DELTA or UPDATED_VIA_FULL_DOWNLOAD

        Raises:
            NetworkError: Probe or full download failed
            SyncInterrupted: Cancellation observed
            IntegrityError: The new file was rejected
            CommitError: A stale transient file or the live file could not be
                removed or replaced
        """
        paths = self.layout.segment_paths(segment_name)
        paths.live.parent.mkdir(parents=True, exist_ok=True)
        outcome = SegmentOutcome.UPDATED_VIA_FULL_DOWNLOAD

        try:
            # leftovers from an interrupted process
            _discard_stale(paths.temp)
            _discard_stale(paths.diff)

            if paths.live.exists() and self._update_via_delta(base_url, segment_name, paths):
                outcome = SegmentOutcome.UPDATED_VIA_DELTA

            if outcome is not SegmentOutcome.UPDATED_VIA_DELTA:
                self.downloader.download(segment_location(base_url, segment_name),
                                         paths.temp, throttle=self.throttle)

            self.integrity_verifier(paths.temp)
            self._commit(paths)
        finally:
            _remove_if_exists(paths.temp)

        logger.info(f"{paths.live.name}: {outcome.value}")
        return outcome

    def _update_via_delta(self, base_url: str, segment_name: str,
                          paths: SegmentPaths) -> bool:
        """
        Try to build `paths.temp` from the live file and a server delta.

        Returns False, with no `_tmp` left behind, when no delta exists or
        it could not be fetched or applied.
        """
        self.channel.update_status("Calculating local checksum...")
        digest = self.hash_provider(paths.live, self.channel)
        delta_url = delta_location(base_url, segment_name, digest)

        if not self.probe.exists(delta_url):
            logger.info(f"{paths.live.name}: no delta for {digest}, downloading full segment")
            return False

        try:
            try:
                self.downloader.download(delta_url, paths.diff, throttle=self.throttle)
                self.channel.update_status("Applying delta...")
                self.delta_applier(paths.live, paths.diff, paths.temp, self.channel)
            finally:
                _remove_if_exists(paths.diff)
        except SyncInterrupted:
            raise
        except (SyncError, OSError) as e:
            failure = DeltaError(f"Failed to download & apply delta update: {e}")
            logger.warning(f"{paths.live.name}: {failure}; falling back to full download")
            _remove_if_exists(paths.temp)
            return False
        return True

    def _commit(self, paths: SegmentPaths) -> None:
        if paths.live.exists():
            try:
                os.remove(paths.live)
            except OSError as e:
                raise CommitError(f"Failed to delete existing {paths.live}") from e
        try:
            os.rename(paths.temp, paths.live)
        except OSError as e:
            raise CommitError(f"Failed to write {paths.live}") from e


# ============================================================================
# BATCH ORCHESTRATOR
# ============================================================================

class BatchOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class BatchResult:
    """
    Result of one batch run.

    `outcome` is the only externally meaningful status; `cancelled` and
    `error` say why a FAILURE happened.
    """
    outcome: BatchOutcome
    outcomes: Dict[str, SegmentOutcome] = field(default_factory=dict)
    cancelled: bool = False
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == BatchOutcome.SUCCESS


class BatchOrchestrator:
    """
    Refreshes ancillary files, then synchronizes segments one at a time.

    The batch fails fast: the first failing file or segment ends the run and
    the remaining segments are not attempted. Nothing is kept for resuming;
    a rerun starts again from the current local hashes. A segment list that
    names the same segment twice is rejected before any I/O.
    """

    def __init__(self, server_config: ServerConfig,
                 layout: SegmentLayout,
                 downloader: Downloader,
                 synchronizer: DeltaSynchronizer,
                 channel: ProgressChannel) -> None:
        self.server_config = server_config
        self.layout = layout
        self.downloader = downloader
        self.synchronizer = synchronizer
        self.channel = channel

    def run(self, segment_names: Optional[Sequence[str]],
            ancillary_files: Optional[AncillaryFiles] = None) -> BatchResult:
        if segment_names is None:
            logger.error("No segment names given")
            return BatchResult(BatchOutcome.FAILURE, error=ConfigError("No segment names given"))

        stems = [segment_stem(name) for name in segment_names]
        duplicates = sorted({stem for stem in stems if stems.count(stem) > 1})
        if duplicates:
            error = ConfigError(f"Duplicate segment names: {', '.join(duplicates)}")
            logger.error(str(error))
            return BatchResult(BatchOutcome.FAILURE, error=error)

        if ancillary_files is None:
            ancillary_files = self.server_config.ancillary_files()

        outcomes: Dict[str, SegmentOutcome] = {}
        current: Optional[str] = None
        self.layout.ensure_dirs()
        try:
            self.channel.update_status("Updating profiles")
            self.update_ancillary_files(ancillary_files)

            for index, segment_name in enumerate(segment_names, 1):
                current = segment_name
                self.channel.begin_segment(segment_name, index, len(segment_names))
                outcomes[segment_name] = self.synchronizer.sync_segment(
                    self.server_config.segment_url, segment_name)
            current = None
        except SyncInterrupted as e:
            if current is not None:
                outcomes[current] = SegmentOutcome.FAILED
            logger.warning(f"Synchronization cancelled: {e}")
            return BatchResult(BatchOutcome.FAILURE, outcomes, cancelled=True, error=e)
        except (SyncError, OSError) as e:
            if current is not None:
                outcomes[current] = SegmentOutcome.FAILED
            logger.error(f"Synchronization failed: {e}")
            return BatchResult(BatchOutcome.FAILURE, outcomes, error=e)

        return BatchResult(BatchOutcome.SUCCESS, outcomes)

    def update_ancillary_files(self, ancillary_files: AncillaryFiles) -> None:
        """Refetch every lookup; refetch a profile only if it exists locally."""
        for file_name in ancillary_files.lookups:
            if file_name:
                self._fetch_ancillary(self.server_config.lookup_location(file_name), file_name)

        for file_name in ancillary_files.profiles:
            if file_name and self.layout.profile_path(file_name).exists():
                self._fetch_ancillary(self.server_config.profile_location(file_name), file_name)

    def _fetch_ancillary(self, url: str, file_name: str) -> None:
        target = self.layout.profile_path(file_name)
        temp = Path(str(target) + TEMP_SUFFIX)
        self.channel.begin_item(file_name)
        try:
            self.downloader.download(url, temp, throttle=False)
            os.replace(temp, target)
        finally:
            _remove_if_exists(temp)


def sync_segments(base_dir: PathLike,
                  segment_names: Optional[Sequence[str]],
                  server_config: Optional[ServerConfig] = None,
                  listener: Optional[ProgressListener] = None,
                  cancel_token: Optional[CancelToken] = None,
                  downloader_config: Optional[DownloaderConfig] = None,
                  throttle: bool = True,
                  session: Optional[requests.Session] = None) -> BatchResult:
    """Wire up the default components and run one batch."""
    server_config = server_config or ServerConfig()
    downloader_config = downloader_config or DownloaderConfig()
    session = session if session is not None else create_session(downloader_config)

    channel = ProgressChannel(listener, cancel_token)
    layout = SegmentLayout(base_dir)
    downloader = Downloader(channel, downloader_config, session)
    probe = ExistenceProbe(downloader_config, session)
    synchronizer = DeltaSynchronizer(layout, downloader, probe, channel, throttle=throttle)
    orchestrator = BatchOrchestrator(server_config, layout, downloader, synchronizer, channel)

    return orchestrator.run(segment_names)


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1 or Config.VERBOSE_LOGGING:
        level = logging.INFO
    else:
        level = logging.WARNING
    logger.setLevel(level)


def cli_sync(args: Any) -> int:
    """Synchronize segments into BASE_DIR."""
    try:
        server_config = ServerConfig.load(args.config) if args.config else ServerConfig()
    except (ConfigError, OSError) as e:
        print(Colors.error(f"Cannot read server config: {e}"), file=sys.stderr)
        return 2

    if args.segment_url:
        server_config.segment_url = _with_trailing_slash(args.segment_url)
    if args.lookup_url:
        server_config.lookup_url = _with_trailing_slash(args.lookup_url)
    if args.profiles_url:
        server_config.profiles_url = _with_trailing_slash(args.profiles_url)

    token = CancelToken()
    listener = ConsoleProgressListener(token, quiet=args.quiet)

    def _on_sigint(signum: int, frame: Any) -> None:
        print(Colors.warning("\nCancelling after the current chunk..."), file=sys.stderr)
        token.cancel()

    previous_handler = signal.signal(signal.SIGINT, _on_sigint)
    start_time = time.time()
    try:
        result = sync_segments(
            args.base_dir, args.segments,
            server_config=server_config,
            listener=listener,
            cancel_token=token,
            throttle=not args.no_throttle,
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    elapsed = time.time() - start_time
    listener.finish_line()
    if result.succeeded:
        if not args.quiet:
            for name, outcome in result.outcomes.items():
                print(f"  {name:<16} {outcome.value}")
            print(Colors.success(f"{len(result.outcomes)} segment(s) synchronized in {elapsed:.1f}s"))
        return 0
    if result.cancelled:
        print(Colors.warning("Synchronization cancelled"), file=sys.stderr)
        return 130
    print(Colors.error(f"Synchronization failed: {result.error}"), file=sys.stderr)
    return 1


def cli_checksum(args: Any) -> int:
    """Print the content hash that names deltas for FILE."""
    try:
        digest = file_digest(args.file, ChecksumType(args.algorithm))
    except OSError as e:
        print(Colors.error(f"Cannot read {args.file}: {e}"), file=sys.stderr)
        return 1
    print(f"{digest}  {args.file}")
    return 0


def cli_diff(args: Any) -> int:
    """Generate a .df5 delta from OLD to NEW."""
    try:
        stats = generate_delta(args.old, args.new, args.output,
                               block_size=args.block_size,
                               compression=CompressionType(args.compression))
    except (OSError, ValueError) as e:
        print(Colors.error(f"Delta generation failed: {e}"), file=sys.stderr)
        return 1
    if not args.quiet:
        print(Colors.success(f"Delta saved to: {args.output}"))
        print(f"  Base size:      {stats.base_size:,} bytes")
        print(f"  Target size:    {stats.target_size:,} bytes")
        print(f"  Matched bytes:  {stats.matched_bytes:,} ({stats.efficiency:.1%})")
        print(f"  Literal bytes:  {stats.literal_bytes:,}")
        print(f"  Delta size:     {stats.delta_size:,} bytes")
    return 0


def cli_patch(args: Any) -> int:
    """Rebuild a file from BASE and DELTA."""
    try:
        written = apply_delta(args.base, args.delta, args.output)
    except (DeltaError, OSError) as e:
        print(Colors.error(f"Patch failed: {e}"), file=sys.stderr)
        return 1
    if not args.quiet:
        print(Colors.success(f"File reconstructed: {args.output} ({written:,} bytes)"))
    return 0


def cli_verify(args: Any) -> int:
    """Run the segment integrity check on FILE."""
    try:
        check_file_integrity(args.file)
    except IntegrityError as e:
        print(Colors.error(str(e)), file=sys.stderr)
        return 1
    except OSError as e:
        print(Colors.error(f"Cannot read {args.file}: {e}"), file=sys.stderr)
        return 1
    if not args.quiet:
        print(Colors.success(f"{args.file}: OK"))
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="segment-sync",
        description="Delta-first synchronization of routing data segments",
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help="increase logging verbosity (-vv for debug)")
    parser.add_argument('-q', '--quiet', action='store_true', help="only print errors")
    sub = parser.add_subparsers(dest='command', required=True)

    p_sync = sub.add_parser('sync', help="update segments from the server")
    p_sync.add_argument('base_dir', help="directory holding profiles2/ and segments4/")
    p_sync.add_argument('segments', nargs='+', help="segment names, e.g. E10_N50")
    p_sync.add_argument('--config', help="serverconfig.txt with URLs and file lists")
    p_sync.add_argument('--segment-url', help="override the segment base URL")
    p_sync.add_argument('--lookup-url', help="override the lookup base URL")
    p_sync.add_argument('--profiles-url', help="override the profiles base URL")
    p_sync.add_argument('--no-throttle', action='store_true',
                        help="do not cap segment download speed")
    p_sync.set_defaults(func=cli_sync)

    p_sum = sub.add_parser('checksum', help="print the delta-addressing hash of a file")
    p_sum.add_argument('file')
    p_sum.add_argument('--algorithm', default=ChecksumType.MD5.value,
                       choices=[t.value for t in ChecksumType])
    p_sum.set_defaults(func=cli_checksum)

    p_diff = sub.add_parser('diff', help="create a .df5 delta from OLD to NEW")
    p_diff.add_argument('old')
    p_diff.add_argument('new')
    p_diff.add_argument('-o', '--output', required=True)
    p_diff.add_argument('--block-size', type=int, default=DEFAULT_DELTA_BLOCK_SIZE)
    p_diff.add_argument('--compression', default=CompressionType.ZSTD.value,
                        choices=[t.value for t in CompressionType])
    p_diff.set_defaults(func=cli_diff)

    p_patch = sub.add_parser('patch', help="apply a .df5 delta to BASE")
    p_patch.add_argument('base')
    p_patch.add_argument('delta')
    p_patch.add_argument('-o', '--output', required=True)
    p_patch.set_defaults(func=cli_patch)

    p_verify = sub.add_parser('verify', help="check the segment index of a file")
    p_verify.add_argument('file')
    p_verify.set_defaults(func=cli_verify)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 success, 1 failure, 2 bad configuration, 130 cancelled)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    try:
        return int(args.func(args))
    except KeyboardInterrupt:
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return 130


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
