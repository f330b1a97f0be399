#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
segment-sync: checksum, delta and integrity collaborators
=========================================================

Default implementations of the three collaborators the synchronizer calls
out to. Each one is a plain function so a host can swap it for another
implementation with the same call signature:

    file_digest(path, checksum_type, listener)  Content hash used to address deltas
    apply_delta(base, delta, output, listener)  Rebuild a segment from a .df5 delta
    check_file_integrity(path)                  Structural check of a segment file

`generate_delta()` is the server-side counterpart of `apply_delta()` and is
what publishes `diff/<name>/<hash>.df5` objects.

Delta format (.df5):
-------------------
    offset  size  field
    0       4     magic b"DF5\\x01"
    4       1     compression (CPRES_* wire value)
    5       4     block size used when matching
    9       8     base file size
    17      8     target file size
    25      16    MD5 of the target file
    41      ...   compressed instruction stream

    Instruction stream (big-endian):
        b"C" base_offset:u64 length:u32     copy bytes from the base file
        b"L" length:u32 data[length]        literal bytes

Matching uses the rsync weak rolling checksum (Adler-32 variant) to find
candidate blocks and xxh64 to confirm them.

Segment index (integrity check):
-------------------------------
    A segment starts with 25 big-endian 64-bit index entries (200 bytes).
    The low 48 bits of each entry are the end offset of one tile area; the
    high 16 bits are reserved for format flags. Offsets never decrease and
    the last one equals the file size.
"""

from __future__ import annotations

import hashlib
import os
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union, cast

import xxhash
import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

from segment_base import (
    Config,
    DeltaError,
    IntegrityError,
    NullProgressListener,
    ProgressListener,
    SyncInterrupted,
    logger,
)

_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)

__all__ = [
    'ChecksumType',
    'ChecksumRegistry',
    'CompressionType',
    'CompressionRegistry',
    'DeltaHeader',
    'DeltaCopy',
    'DeltaLiteral',
    'DeltaStats',
    'file_digest',
    'generate_delta',
    'apply_delta',
    'read_delta',
    'compute_instructions',
    'check_file_integrity',
    'DELTA_MAGIC',
    'DEFAULT_DELTA_BLOCK_SIZE',
    'SEGMENT_INDEX_ENTRIES',
    'SEGMENT_HEADER_SIZE',
]

DELTA_MAGIC = b"DF5\x01"
DEFAULT_DELTA_BLOCK_SIZE = 1024
CHAR_OFFSET = 0

SEGMENT_INDEX_ENTRIES = 25
SEGMENT_HEADER_SIZE = SEGMENT_INDEX_ENTRIES * 8
_SEGMENT_OFFSET_MASK = 0xFFFFFFFFFFFF

_COPY_OP = b"C"
_LITERAL_OP = b"L"
_COPY_STRUCT = struct.Struct('>QI')
_LENGTH_STRUCT = struct.Struct('>I')
_MAX_LITERAL = 1 << 20


# ============================================================================
# CHECKSUMS - content hash provider
# ============================================================================

class ChecksumType(Enum):
    """
    Content hash algorithms.

    MD5 is what the segment server uses to name delta objects, so it is the
    default everywhere. The others are available for hosts running their
    own server scheme.
    """
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    XXH64 = "xxh64"
    XXH3 = "xxh3"
    XXH128 = "xxh128"


class ChecksumRegistry:
    """
    Factory for incremental hashers with update()/hexdigest().

    Example:
        >>> h = ChecksumRegistry.get_checksum_accumulator(ChecksumType.MD5)
        >>> h.update(b"Hello, World!")
        >>> print(h.hexdigest())
    """

    @classmethod
    def get_checksum_accumulator(cls, checksum_type: ChecksumType) -> Any:
        if checksum_type == ChecksumType.MD5:
            return hashlib.md5()
        if checksum_type == ChecksumType.SHA1:
            return hashlib.sha1()
        if checksum_type == ChecksumType.SHA256:
            return hashlib.sha256()
        if checksum_type == ChecksumType.XXH64:
            return xxhash.xxh64()
        if checksum_type == ChecksumType.XXH3:
            return xxhash.xxh3_64()
        if checksum_type == ChecksumType.XXH128:
            return xxhash.xxh3_128()
        raise ValueError(f"Unsupported checksum type: {checksum_type}")

    @staticmethod
    def strong_block_checksum(data: Union[bytes, bytearray, memoryview]) -> bytes:
        """Strong checksum confirming a weak-checksum block match."""
        return xxhash.xxh64(bytes(data)).digest()


def file_digest(path: Union[str, os.PathLike],
                checksum_type: ChecksumType = ChecksumType.MD5,
                listener: Optional[ProgressListener] = None) -> str:
    """
    Hash a file and return the lowercase hex digest.

    Streams the file in Config.HASH_CHUNK_SIZE pieces. When a listener is
    given, its cancel flag is polled between pieces.

    Raises:
        SyncInterrupted: If the listener reports cancellation
        OSError: If the file cannot be read
    """
    hasher = ChecksumRegistry.get_checksum_accumulator(checksum_type)
    with open(path, 'rb') as f:
        while True:
            if listener is not None and listener.is_cancelled():
                raise SyncInterrupted("Checksum calculation cancelled")
            chunk = f.read(Config.HASH_CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return cast(str, hasher.hexdigest())


def _weak_checksum(data: Union[bytes, bytearray, memoryview]) -> Tuple[int, int]:
    """rsync get_checksum1(): returns the (s1, s2) components."""
    s1 = 0
    s2 = 0
    for byte in data:
        s1 = (s1 + byte + CHAR_OFFSET) & 0xFFFF
        s2 = (s2 + s1) & 0xFFFF
    return s1, s2


def _rolling_update(old_byte: int, new_byte: int, s1: int, s2: int,
                    length: int) -> Tuple[int, int]:
    """Slide the weak checksum window one byte to the right."""
    old_val = old_byte + CHAR_OFFSET
    new_val = new_byte + CHAR_OFFSET
    new_s1 = (s1 - old_val + new_val) & 0xFFFF
    new_s2 = (s2 - length * old_val + new_s1) & 0xFFFF
    return new_s1, new_s2


def _combine(s1: int, s2: int) -> int:
    return (s1 & 0xFFFF) | ((s2 & 0xFFFF) << 16)


# ============================================================================
# COMPRESSION - instruction stream codecs
# ============================================================================

# Wire values stored in the .df5 header
CPRES_NONE = 0
CPRES_ZLIB = 1
CPRES_LZ4 = 3
CPRES_ZSTD = 4


class CompressionType(Enum):
    """Compression applied to the .df5 instruction stream."""
    NONE = "none"
    ZLIB = "zlib"
    LZ4 = "lz4"
    ZSTD = "zstd"

    @property
    def wire_value(self) -> int:
        return _COMPRESSION_WIRE[self]

    @classmethod
    def from_wire(cls, value: int) -> 'CompressionType':
        for comp_type, wire in _COMPRESSION_WIRE.items():
            if wire == value:
                return comp_type
        raise DeltaError(f"Unknown delta compression type: {value}")


_COMPRESSION_WIRE: Dict[CompressionType, int] = {
    CompressionType.NONE: CPRES_NONE,
    CompressionType.ZLIB: CPRES_ZLIB,
    CompressionType.LZ4: CPRES_LZ4,
    CompressionType.ZSTD: CPRES_ZSTD,
}


class CompressionRegistry:
    """Unified compress/decompress over zlib, lz4 and zstandard."""

    @classmethod
    def compress(cls, data: bytes, comp_type: CompressionType,
                 level: Optional[int] = None) -> bytes:
        if level is None:
            level = cls.get_compression_level(comp_type)
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.ZLIB:
            return zlib.compress(data, level)
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.compress(data, compression_level=level))
        elif comp_type == CompressionType.ZSTD:
            return cast(bytes, _zstandard.ZstdCompressor(level=level).compress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @classmethod
    def decompress(cls, data: bytes, comp_type: CompressionType) -> bytes:
        if comp_type == CompressionType.NONE:
            return data
        elif comp_type == CompressionType.ZLIB:
            return zlib.decompress(data)
        elif comp_type == CompressionType.LZ4:
            return cast(bytes, _lz4_frame.decompress(data))
        elif comp_type == CompressionType.ZSTD:
            return cast(bytes, _zstandard.ZstdDecompressor().decompress(data))
        else:
            raise ValueError(f"Unsupported compression type: {comp_type}")

    @staticmethod
    def get_compression_level(comp_type: CompressionType) -> int:
        levels = {
            CompressionType.NONE: 0,
            CompressionType.ZLIB: 6,
            CompressionType.LZ4: 1,
            CompressionType.ZSTD: 3,
        }
        return levels.get(comp_type, 6)


# ============================================================================
# DELTA DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class DeltaHeader:
    """Fixed-size .df5 header."""
    compression: CompressionType
    block_size: int
    base_size: int
    target_size: int
    target_md5: bytes

    _STRUCT = struct.Struct('>4sBIQQ16s')

    @classmethod
    def size(cls) -> int:
        return cls._STRUCT.size

    def pack(self) -> bytes:
        return self._STRUCT.pack(
            DELTA_MAGIC,
            self.compression.wire_value,
            self.block_size,
            self.base_size,
            self.target_size,
            self.target_md5,
        )

    @classmethod
    def unpack(cls, raw: bytes) -> 'DeltaHeader':
        if len(raw) < cls._STRUCT.size:
            raise DeltaError(f"Delta too short: {len(raw)} bytes")
        magic, comp, block_size, base_size, target_size, target_md5 = \
            cls._STRUCT.unpack_from(raw)
        if magic != DELTA_MAGIC:
            raise DeltaError(f"Not a delta file (magic {magic!r})")
        return cls(
            compression=CompressionType.from_wire(comp),
            block_size=block_size,
            base_size=base_size,
            target_size=target_size,
            target_md5=target_md5,
        )


@dataclass(frozen=True)
class DeltaCopy:
    """Copy `length` bytes starting at `base_offset` of the base file."""
    base_offset: int
    length: int


@dataclass(frozen=True)
class DeltaLiteral:
    """Bytes carried inside the delta itself."""
    data: bytes

    def __repr__(self) -> str:
        return f"DeltaLiteral(len={len(self.data)})"


DeltaInstruction = Union[DeltaCopy, DeltaLiteral]


@dataclass
class DeltaStats:
    """Summary of a generated delta."""
    base_size: int
    target_size: int
    matched_bytes: int = 0
    literal_bytes: int = 0
    delta_size: int = 0

    @property
    def efficiency(self) -> float:
        """Share of the target reused from the base file."""
        return self.matched_bytes / self.target_size if self.target_size else 0.0


def _encode_instructions(instructions: List[DeltaInstruction]) -> bytes:
    out = bytearray()
    for instr in instructions:
        if isinstance(instr, DeltaCopy):
            out += _COPY_OP
            out += _COPY_STRUCT.pack(instr.base_offset, instr.length)
        else:
            out += _LITERAL_OP
            out += _LENGTH_STRUCT.pack(len(instr.data))
            out += instr.data
    return bytes(out)


def _iter_instructions(payload: bytes) -> Iterator[DeltaInstruction]:
    pos = 0
    end = len(payload)
    while pos < end:
        op = payload[pos:pos + 1]
        pos += 1
        if op == _COPY_OP:
            if pos + _COPY_STRUCT.size > end:
                raise DeltaError("Truncated copy instruction")
            base_offset, length = _COPY_STRUCT.unpack_from(payload, pos)
            pos += _COPY_STRUCT.size
            yield DeltaCopy(base_offset, length)
        elif op == _LITERAL_OP:
            if pos + _LENGTH_STRUCT.size > end:
                raise DeltaError("Truncated literal instruction")
            (length,) = _LENGTH_STRUCT.unpack_from(payload, pos)
            pos += _LENGTH_STRUCT.size
            if pos + length > end:
                raise DeltaError("Truncated literal data")
            yield DeltaLiteral(payload[pos:pos + length])
            pos += length
        else:
            raise DeltaError(f"Unknown delta instruction {op!r} at offset {pos - 1}")


def read_delta(delta_path: Union[str, os.PathLike]) -> Tuple[DeltaHeader, List[DeltaInstruction]]:
    """
    Load and decode a .df5 file.

    Raises:
        DeltaError: If the file is not a well-formed delta
    """
    with open(delta_path, 'rb') as f:
        raw = f.read()
    header = DeltaHeader.unpack(raw)
    try:
        payload = CompressionRegistry.decompress(raw[DeltaHeader.size():], header.compression)
    except Exception as e:
        raise DeltaError(f"Corrupt delta payload: {e}") from e
    return header, list(_iter_instructions(payload))


# ============================================================================
# DELTA GENERATION (server side)
# ============================================================================

def _build_block_table(base: bytes, block_size: int) -> Dict[int, List[Tuple[int, bytes]]]:
    """Map weak checksum -> [(offset, strong checksum)] for every full block."""
    table: Dict[int, List[Tuple[int, bytes]]] = {}
    for offset in range(0, len(base) - block_size + 1, block_size):
        block = base[offset:offset + block_size]
        weak = _combine(*_weak_checksum(block))
        strong = ChecksumRegistry.strong_block_checksum(block)
        table.setdefault(weak, []).append((offset, strong))
    return table


def _append_literal(instructions: List[DeltaInstruction], data: bytes) -> None:
    for start in range(0, len(data), _MAX_LITERAL):
        instructions.append(DeltaLiteral(data[start:start + _MAX_LITERAL]))


def _append_copy(instructions: List[DeltaInstruction], offset: int, length: int) -> None:
    if instructions:
        last = instructions[-1]
        if isinstance(last, DeltaCopy) and last.base_offset + last.length == offset:
            instructions[-1] = DeltaCopy(last.base_offset, last.length + length)
            return
    instructions.append(DeltaCopy(offset, length))


def compute_instructions(base: bytes, target: bytes,
                         block_size: int = DEFAULT_DELTA_BLOCK_SIZE) -> List[DeltaInstruction]:
    """
    Block-match `target` against `base` and return the instruction list.

    The weak checksum window slides byte by byte over the target; on a
    strong-checksum hit the whole block is emitted as a copy and the window
    jumps past it.
    """
    if block_size <= 0:
        raise ValueError(f"Invalid block size: {block_size}")

    instructions: List[DeltaInstruction] = []
    table = _build_block_table(base, block_size)
    n = len(target)
    pos = 0
    literal_start = 0

    if table and n >= block_size:
        s1, s2 = _weak_checksum(target[0:block_size])
        while pos + block_size <= n:
            matched: Optional[int] = None
            candidates = table.get(_combine(s1, s2))
            if candidates:
                strong = ChecksumRegistry.strong_block_checksum(target[pos:pos + block_size])
                for offset, block_strong in candidates:
                    if block_strong == strong:
                        matched = offset
                        break

            if matched is not None:
                if literal_start < pos:
                    _append_literal(instructions, target[literal_start:pos])
                _append_copy(instructions, matched, block_size)
                pos += block_size
                literal_start = pos
                if pos + block_size <= n:
                    s1, s2 = _weak_checksum(target[pos:pos + block_size])
            else:
                if pos + block_size < n:
                    s1, s2 = _rolling_update(target[pos], target[pos + block_size],
                                             s1, s2, block_size)
                pos += 1

    if literal_start < n:
        _append_literal(instructions, target[literal_start:n])
    return instructions


def generate_delta(base_path: Union[str, os.PathLike],
                   target_path: Union[str, os.PathLike],
                   output_path: Union[str, os.PathLike],
                   block_size: int = DEFAULT_DELTA_BLOCK_SIZE,
                   compression: CompressionType = CompressionType.ZSTD) -> DeltaStats:
    """
    Write a .df5 delta that turns `base_path` into `target_path`.

    Example:
        >>> stats = generate_delta("old.rd5", "new.rd5", "old_md5.df5")
        >>> print(f"Reused: {stats.efficiency:.1%}")
    """
    with open(base_path, 'rb') as f:
        base = f.read()
    with open(target_path, 'rb') as f:
        target = f.read()

    instructions = compute_instructions(base, target, block_size)
    header = DeltaHeader(
        compression=compression,
        block_size=block_size,
        base_size=len(base),
        target_size=len(target),
        target_md5=hashlib.md5(target).digest(),
    )
    payload = CompressionRegistry.compress(_encode_instructions(instructions), compression)
    with open(output_path, 'wb') as f:
        f.write(header.pack())
        f.write(payload)

    stats = DeltaStats(base_size=len(base), target_size=len(target))
    for instr in instructions:
        if isinstance(instr, DeltaCopy):
            stats.matched_bytes += instr.length
        else:
            stats.literal_bytes += len(instr.data)
    stats.delta_size = header.size() + len(payload)
    logger.info(
        f"Delta {output_path}: {stats.delta_size:,} bytes, "
        f"matched={stats.matched_bytes:,} literal={stats.literal_bytes:,}"
    )
    return stats


# ============================================================================
# DELTA APPLICATION (client side)
# ============================================================================

def apply_delta(base_path: Union[str, os.PathLike],
                delta_path: Union[str, os.PathLike],
                output_path: Union[str, os.PathLike],
                listener: Optional[ProgressListener] = None) -> int:
    """
    Rebuild the target file from `base_path` and a .df5 delta.

    The cancel flag is polled before every instruction and byte progress is
    reported after it. The finished output is checked against the size and
    MD5 recorded in the delta header. A partially written output is left
    for the caller to remove.

    Returns:
        Number of bytes written to `output_path`

    Raises:
        DeltaError: Malformed delta, wrong base file, or output mismatch
        SyncInterrupted: Cancellation observed
    """
    listener = listener or NullProgressListener()
    header, instructions = read_delta(delta_path)

    base_size = os.path.getsize(base_path)
    if base_size != header.base_size:
        raise DeltaError(
            f"Delta expects a {header.base_size:,} byte base, found {base_size:,} bytes"
        )

    digest = hashlib.md5()
    written = 0
    with open(base_path, 'rb') as src, open(output_path, 'wb') as out:
        for instr in instructions:
            if listener.is_cancelled():
                raise SyncInterrupted("Delta application cancelled")

            if isinstance(instr, DeltaCopy):
                if instr.base_offset + instr.length > base_size:
                    raise DeltaError(
                        f"Copy beyond end of base file: {instr.base_offset}+{instr.length}"
                    )
                src.seek(instr.base_offset)
                remaining = instr.length
                while remaining > 0:
                    data = src.read(min(remaining, Config.HASH_CHUNK_SIZE))
                    if not data:
                        raise DeltaError("Unexpected end of base file")
                    out.write(data)
                    digest.update(data)
                    remaining -= len(data)
                written += instr.length
            else:
                out.write(instr.data)
                digest.update(instr.data)
                written += len(instr.data)

            listener.update_progress(header.target_size, written)

    if written != header.target_size:
        raise DeltaError(f"Delta produced {written:,} bytes, expected {header.target_size:,}")
    if digest.digest() != header.target_md5:
        raise DeltaError("Checksum mismatch after applying delta")
    return written


# ============================================================================
# INTEGRITY CHECK
# ============================================================================

def check_file_integrity(path: Union[str, os.PathLike]) -> None:
    """
    Verify the segment index of `path`.

    Raises:
        IntegrityError: If the file is too short or its index is inconsistent
    """
    file_size = os.path.getsize(path)
    if file_size < SEGMENT_HEADER_SIZE:
        raise IntegrityError(f"{path}: file too short for segment index ({file_size} bytes)")

    with open(path, 'rb') as f:
        raw = f.read(SEGMENT_HEADER_SIZE)
    entries = struct.unpack(f'>{SEGMENT_INDEX_ENTRIES}q', raw)

    previous = SEGMENT_HEADER_SIZE
    for i, entry in enumerate(entries):
        offset = entry & _SEGMENT_OFFSET_MASK
        if offset < previous:
            raise IntegrityError(
                f"{path}: index entry {i} points to {offset}, before {previous}"
            )
        previous = offset

    if previous != file_size:
        raise IntegrityError(
            f"{path}: index ends at {previous} but file has {file_size} bytes"
        )
