#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
delta-mirror: Byte-Level Delta Engine for Directory Mirroring
==============================================================

The engine behind delta-mirror. A client describes its stale copy of a file
with a compact block signature, the server answers with the instructions
needed to turn those bytes into the authoritative ones, and the client
replays them locally.

Quick Start:
-----------
    >>> from delta_mirror import DeltaEngine, apply_patch
    >>>
    >>> engine = DeltaEngine(block_size=4096, strong_hash_size=8)
    >>> signature = engine.build_signature(old_data)
    >>> patch = engine.compute_delta(signature, new_data)
    >>> assert apply_patch(old_data, patch) == new_data
    >>> print(f"Literal bytes: {patch.literal_bytes}")

Wire Formats:
------------
    Signature and patch have their own self-describing binary encodings
    (see encode_signature/decode_signature and encode_patch/decode_patch).
    Block size, strong hash algorithm and length, and instruction tags all
    travel inside the encoded bytes, so builder and applier never need
    out-of-band configuration.

Algorithm:
---------
    1. Weak checksum: Adler-style rolling sum, O(1) per byte slide
    2. Strong checksum: truncated digest (MD5 by default, xxHash available)
    3. Hash table keyed on the weak checksum, verified by the strong one

References:
----------
    [1] Tridgell (1999): PhD Thesis - https://www.samba.org/~tridge/phd_thesis.pdf
    [2] rsync match.c / checksum.c
"""

from __future__ import annotations

__version__ = "0.3.0"
__license__ = "GPL-3.0-or-later"

__all__ = [
    # Main classes
    'DeltaEngine',
    'Checksum',
    'ChecksumType',
    'ChecksumRegistry',
    'HashTable',

    # Data structures
    'BlockChecksum',
    'Signature',
    'CopyOp',
    'InsertOp',
    'Patch',
    'DeltaStats',

    # Functional API
    'hash_bytes',
    'hash_file',
    'build_signature',
    'compute_delta',
    'apply_patch',

    # Wire codecs
    'encode_signature',
    'decode_signature',
    'encode_patch',
    'decode_patch',

    # Exceptions
    'MirrorError',
    'ValidationError',
    'PathTraversalError',
    'TransportError',
    'DecodeError',
    'RangeError',
    'FilesystemError',
    'DataIntegrityError',

    # Configuration
    'Config',

    # Validation
    'validate_block_size',
    'validate_strong_hash_size',
    'validate_data',
    'validate_signature',

    # Constants
    'MAX_BLOCK_SIZE',
    'SIGNATURE_MAGIC',
    'PATCH_MAGIC',
    'FORMAT_VERSION',

    'format_size',
]

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Callable, ClassVar, Dict, List, Optional, Protocol, Sequence, Tuple, Union,
)

import xxhash


# ============================================================================
# TYPE DEFINITIONS
# ============================================================================

class ChecksumAccumulator(Protocol):
    """Protocol for incremental hash objects (hashlib and xxhash alike)."""
    def update(self, data: bytes) -> None: ...
    def digest(self) -> bytes: ...


# ============================================================================
# CONSTANTS
# ============================================================================

MAX_BLOCK_SIZE = 1 << 20  # 1 MiB, far above any sensible block size
CHAR_OFFSET = 0  # rsync.h: must stay 0 so the weak sum matches rsync's

# Binary formats
SIGNATURE_MAGIC = b"DMSG"
PATCH_MAGIC = b"DMPT"
FORMAT_VERSION = 1

# magic, version, strong type id, block size, strong hash size, file size, block count
_SIG_HEADER = struct.Struct(">4sBBIBQI")
_SIG_WEAK = struct.Struct(">I")
# magic, version, target size
_PATCH_HEADER = struct.Struct(">4sBQ")
_U64 = struct.Struct(">Q")
_U64_PAIR = struct.Struct(">QQ")

OP_END = 0x00
OP_COPY = 0x01
OP_INSERT = 0x02


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

class Config:
    """
    Global configuration for delta-mirror.

    Attributes:
        DEFAULT_BLOCK_SIZE (int): Block size used when none is given
        DEFAULT_STRONG_HASH_SIZE (int): Bytes of strong digest kept per block
        DEFAULT_STRONG_TYPE (str): Strong checksum algorithm for blocks
        DEFAULT_CONTENT_HASH (str): Whole-file hash used by listings
        CHUNK_SIZE_STREAMING (int): Read size when hashing files
        VERIFY_AFTER_PATCH (bool): Check patched bytes against the listing hash
        COLLECT_STATS (bool): Attach DeltaStats to computed patches
        VERBOSE_LOGGING (bool): Log a match report for every delta
        USE_COLORS (bool): Colored terminal summaries

    Example:
        >>> Config.DEFAULT_BLOCK_SIZE = 1024
        >>> Config.reset_defaults()
    """
    DEFAULT_BLOCK_SIZE: ClassVar[int] = 4096
    DEFAULT_STRONG_HASH_SIZE: ClassVar[int] = 8
    DEFAULT_STRONG_TYPE: ClassVar[str] = "md5"
    DEFAULT_CONTENT_HASH: ClassVar[str] = "sha256"
    CHUNK_SIZE_STREAMING: ClassVar[int] = 1024 * 1024

    VERIFY_AFTER_PATCH: ClassVar[bool] = True
    COLLECT_STATS: ClassVar[bool] = True

    VERBOSE_LOGGING: ClassVar[bool] = False
    USE_COLORS: ClassVar[bool] = True

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "DEFAULT_BLOCK_SIZE": 4096,
            "DEFAULT_STRONG_HASH_SIZE": 8,
            "DEFAULT_STRONG_TYPE": "md5",
            "DEFAULT_CONTENT_HASH": "sha256",
            "CHUNK_SIZE_STREAMING": 1024 * 1024,
            "VERIFY_AFTER_PATCH": True,
            "COLLECT_STATS": True,
            "VERBOSE_LOGGING": False,
            "USE_COLORS": True,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


logger = logging.getLogger('delta-mirror')


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def format_size(size: int) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1536)
        '1.50 KB'
    """
    value = float(size)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(value) < 1024.0:
            if unit == 'B':
                return f"{int(value)} B"
            return f"{value:.2f} {unit}"
        value /= 1024.0
    return f"{value:.2f} PB"


# ============================================================================
# CUSTOM EXCEPTIONS - Closed hierarchy, one class per failure kind
# ============================================================================

class MirrorError(Exception):
    """
    Base exception for all delta-mirror errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code, also used as the CLI exit status family
    """
    retryable: ClassVar[bool] = False

    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(MirrorError):
    """
    Raised when input validation fails.

    Invalid block sizes, hash lengths, unknown algorithms or wrongly typed
    data all end up here.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class PathTraversalError(ValidationError):
    """Raised when a wire path could escape the configured root."""


class TransportError(MirrorError):
    """
    Raised when a request fails or its response is malformed.

    Transport failures are the only retryable kind.
    """
    retryable = True

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, code=5)
        self.status = status


class DecodeError(MirrorError):
    """Raised for a corrupt signature or instruction stream."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


class RangeError(MirrorError):
    """
    Raised when a copy instruction points outside the original bytes.

    This means the patch is corrupt or was computed against different
    original bytes. No output may be written.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=7)


class FilesystemError(MirrorError):
    """
    Wraps OS-level read/write/permission failures with path context.

    ``missing`` is set when the path simply does not exist (or is not a
    regular file), which the HTTP layer reports as 404 rather than 500.
    """
    def __init__(self, message: str, path: Optional[str] = None, missing: bool = False) -> None:
        super().__init__(message, code=8)
        self.path = path
        self.missing = missing


class DataIntegrityError(MirrorError):
    """Raised when patched bytes do not hash to the expected content hash."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=9)


# ============================================================================
# CHECKSUM TYPES - Strong and whole-file digests
# ============================================================================

class ChecksumType(Enum):
    """
    Supported digest algorithms.

    The wire ids reuse rsync's CSUM_* numbering (lib/md-defines.h) where
    rsync has one; BLAKE2b gets the next free id.

        CSUM_MD5       = 5   -> ChecksumType.MD5
        CSUM_XXH64     = 6   -> ChecksumType.XXH64
        CSUM_XXH3_64   = 7   -> ChecksumType.XXH3
        CSUM_XXH3_128  = 8   -> ChecksumType.XXH128
        CSUM_SHA1      = 9   -> ChecksumType.SHA1
        CSUM_SHA256    = 10  -> ChecksumType.SHA256
        (none)         = 12  -> ChecksumType.BLAKE2B

    Example:
        >>> engine = DeltaEngine(strong_type=ChecksumType.XXH3)
    """
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    BLAKE2B = "blake2b"
    XXH64 = "xxh64"
    XXH3 = "xxh3"
    XXH128 = "xxh128"

    @property
    def wire_id(self) -> int:
        return _WIRE_IDS[self]

    @classmethod
    def from_wire_id(cls, wire_id: int) -> 'ChecksumType':
        for checksum_type, value in _WIRE_IDS.items():
            if value == wire_id:
                return checksum_type
        raise DecodeError(f"Unknown strong checksum id {wire_id}")

    @classmethod
    def parse(cls, value: Union[str, 'ChecksumType']) -> 'ChecksumType':
        """Accept either an enum member or its name ("sha256", "xxh3", ...)."""
        if isinstance(value, ChecksumType):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ", ".join(t.value for t in cls)
            raise ValidationError(f"Unknown checksum algorithm {value!r} (choose from {choices})") from None


_WIRE_IDS: Dict[ChecksumType, int] = {
    ChecksumType.MD5: 5,
    ChecksumType.XXH64: 6,
    ChecksumType.XXH3: 7,
    ChecksumType.XXH128: 8,
    ChecksumType.SHA1: 9,
    ChecksumType.SHA256: 10,
    ChecksumType.BLAKE2B: 12,
}


class ChecksumRegistry:
    """
    Registry of available digest algorithms.

    Abstracts hashlib and xxhash behind one interface: a one-shot function
    for block checksums and an accumulator for streaming whole files.

    Example:
        >>> func = ChecksumRegistry.get_checksum_function(ChecksumType.MD5)
        >>> func(b"Hello, World!").hex()
        '65a8e27d8879283831b664bd8b7f0ad4'
    """

    _FACTORIES: ClassVar[Dict[ChecksumType, Callable[[], ChecksumAccumulator]]] = {
        ChecksumType.MD5: hashlib.md5,
        ChecksumType.SHA1: hashlib.sha1,
        ChecksumType.SHA256: hashlib.sha256,
        ChecksumType.BLAKE2B: hashlib.blake2b,
        ChecksumType.XXH64: xxhash.xxh64,
        ChecksumType.XXH3: xxhash.xxh3_64,
        ChecksumType.XXH128: xxhash.xxh3_128,
    }

    _DIGEST_LENGTHS: ClassVar[Dict[ChecksumType, int]] = {
        ChecksumType.MD5: 16,
        ChecksumType.SHA1: 20,
        ChecksumType.SHA256: 32,
        ChecksumType.BLAKE2B: 64,
        ChecksumType.XXH64: 8,
        ChecksumType.XXH3: 8,
        ChecksumType.XXH128: 16,
    }

    @classmethod
    def get_checksum_accumulator(cls, checksum_type: ChecksumType) -> ChecksumAccumulator:
        """Return a fresh incremental hasher with update()/digest()."""
        try:
            return cls._FACTORIES[checksum_type]()
        except KeyError:
            raise ValidationError(f"Unsupported checksum type: {checksum_type}") from None

    @classmethod
    def get_checksum_function(cls, checksum_type: ChecksumType) -> Callable[[bytes], bytes]:
        """
        Get a one-shot checksum function for the given type.

        Raises:
            ValidationError: If checksum type is not supported
        """
        if checksum_type == ChecksumType.MD5:
            return cls._md5_checksum
        elif checksum_type == ChecksumType.SHA1:
            return cls._sha1_checksum
        elif checksum_type == ChecksumType.SHA256:
            return cls._sha256_checksum
        elif checksum_type == ChecksumType.BLAKE2B:
            return cls._blake2b_checksum
        elif checksum_type == ChecksumType.XXH64:
            return cls._xxh64_checksum
        elif checksum_type == ChecksumType.XXH3:
            return cls._xxh3_checksum
        elif checksum_type == ChecksumType.XXH128:
            return cls._xxh128_checksum
        else:
            raise ValidationError(f"Unsupported checksum type: {checksum_type}")

    @staticmethod
    def _md5_checksum(data: bytes) -> bytes:
        return hashlib.md5(data).digest()

    @staticmethod
    def _sha1_checksum(data: bytes) -> bytes:
        return hashlib.sha1(data).digest()

    @staticmethod
    def _sha256_checksum(data: bytes) -> bytes:
        return hashlib.sha256(data).digest()

    @staticmethod
    def _blake2b_checksum(data: bytes) -> bytes:
        return hashlib.blake2b(data).digest()

    @staticmethod
    def _xxh64_checksum(data: bytes) -> bytes:
        return xxhash.xxh64(data).digest()

    @staticmethod
    def _xxh3_checksum(data: bytes) -> bytes:
        return xxhash.xxh3_64(data).digest()

    @staticmethod
    def _xxh128_checksum(data: bytes) -> bytes:
        return xxhash.xxh3_128(data).digest()

    @classmethod
    def get_digest_length(cls, checksum_type: ChecksumType) -> int:
        """Get the digest length in bytes for a checksum type."""
        return cls._DIGEST_LENGTHS[checksum_type]


def hash_bytes(data: Union[bytes, bytearray, memoryview],
               algorithm: Union[str, ChecksumType, None] = None) -> bytes:
    """
    Content fingerprint of a byte buffer (whole-file identity check).

    Example:
        >>> hash_bytes(b"abc", "sha256").hex()[:8]
        'ba7816bf'
    """
    checksum_type = ChecksumType.parse(algorithm or Config.DEFAULT_CONTENT_HASH)
    return ChecksumRegistry.get_checksum_function(checksum_type)(bytes(data))


def hash_file(path: str, algorithm: Union[str, ChecksumType, None] = None) -> bytes:
    """
    Stream a file through the content hash without loading it whole.

    Raises:
        OSError: Whatever the underlying open/read raises; callers decide
            whether a single unreadable file is fatal.
    """
    checksum_type = ChecksumType.parse(algorithm or Config.DEFAULT_CONTENT_HASH)
    acc = ChecksumRegistry.get_checksum_accumulator(checksum_type)
    chunk_size = Config.CHUNK_SIZE_STREAMING
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            acc.update(chunk)
    return acc.digest()


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class BlockChecksum:
    """
    Checksums of a single block of the signed buffer.

    Only ``weak_checksum`` and ``strong_checksum`` travel on the wire; the
    offset and length are derived from the block index and the file size.

    Attributes:
        weak_checksum: 32-bit rolling checksum
        strong_checksum: Truncated strong digest
        offset: Byte offset of this block in the signed buffer
        length: Length of this block (shorter only for the last block)
    """
    weak_checksum: int
    strong_checksum: bytes
    offset: int
    length: int

    def __repr__(self) -> str:
        return (
            f"BlockChecksum(weak=0x{self.weak_checksum:08x}, "
            f"strong={self.strong_checksum.hex()}, offset={self.offset}, len={self.length})"
        )


@dataclass(frozen=True)
class Signature:
    """
    Compact description of a byte buffer, block by block.

    Block ``i`` covers ``[i * block_size, min((i + 1) * block_size, file_size))``.
    An empty buffer has no blocks.

    Attributes:
        block_size: Size of each full block
        strong_hash_size: Number of strong digest bytes kept per block
        strong_type: Algorithm used for the strong checksum
        file_size: Length of the signed buffer
        blocks: Block checksums in offset order
    """
    block_size: int
    strong_hash_size: int
    strong_type: ChecksumType
    file_size: int
    blocks: Tuple[BlockChecksum, ...]

    @property
    def num_blocks(self) -> int:
        return len(self.blocks)

    @property
    def remainder(self) -> int:
        """Length of the trailing partial block, 0 when the size is a multiple."""
        return self.file_size % self.block_size

    def __repr__(self) -> str:
        return (
            f"Signature(file_size={format_size(self.file_size)}, blocks={self.num_blocks}, "
            f"block_size={self.block_size}, strong={self.strong_type.value}/{self.strong_hash_size})"
        )


@dataclass(frozen=True)
class CopyOp:
    """Copy ``length`` bytes starting at ``source_offset`` of the original buffer."""
    source_offset: int
    length: int

    def __repr__(self) -> str:
        return f"CopyOp(offset={self.source_offset}, len={self.length})"


@dataclass(frozen=True)
class InsertOp:
    """Literal bytes that were not found in the original buffer."""
    data: bytes

    @property
    def length(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        preview = self.data[:16].hex() + ('...' if len(self.data) > 16 else '')
        return f"InsertOp(len={len(self.data)}, data={preview})"


Instruction = Union[CopyOp, InsertOp]


@dataclass
class DeltaStats:
    """
    Matching statistics for one delta, after rsync's match.c counters.

    Attributes:
        hash_hits: Windows whose weak checksum hit the table
        false_alarms: Strong checksum mismatches after a weak hit
        matches: Blocks matched
        matched_data: Bytes covered by copies
        literal_data: Bytes sent as literals
    """
    hash_hits: int = 0
    false_alarms: int = 0
    matches: int = 0
    matched_data: int = 0
    literal_data: int = 0

    @property
    def efficiency(self) -> float:
        """Share of the target reused from the original."""
        total = self.literal_data + self.matched_data
        return self.matched_data / total if total > 0 else 0.0

    def __repr__(self) -> str:
        return (
            f"DeltaStats(matches={self.matches}, false_alarms={self.false_alarms}, "
            f"hash_hits={self.hash_hits}, efficiency={self.efficiency:.1%})"
        )


@dataclass(frozen=True)
class Patch:
    """
    An ordered instruction stream plus the size of the buffer it produces.

    Example:
        >>> patch = engine.compute_delta(signature, new_data)
        >>> print(f"{patch.num_copies} copies, {patch.literal_bytes} literal bytes")
    """
    target_size: int
    instructions: Tuple[Instruction, ...]
    stats: Optional[DeltaStats] = field(default=None, compare=False)

    @property
    def num_copies(self) -> int:
        return sum(1 for op in self.instructions if isinstance(op, CopyOp))

    @property
    def num_inserts(self) -> int:
        return sum(1 for op in self.instructions if isinstance(op, InsertOp))

    @property
    def copied_bytes(self) -> int:
        return sum(op.length for op in self.instructions if isinstance(op, CopyOp))

    @property
    def literal_bytes(self) -> int:
        return sum(len(op.data) for op in self.instructions if isinstance(op, InsertOp))

    def __repr__(self) -> str:
        return (
            f"Patch(target={format_size(self.target_size)}, copies={self.num_copies}, "
            f"inserts={self.num_inserts}, literal={self.literal_bytes})"
        )


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def validate_block_size(block_size: int) -> None:
    """
    Raises:
        ValidationError: If block_size is not in [1, MAX_BLOCK_SIZE]
    """
    if not isinstance(block_size, int) or isinstance(block_size, bool):
        raise ValidationError(f"block_size must be an integer, got {type(block_size).__name__}")
    if block_size <= 0:
        raise ValidationError(f"block_size must be positive, got {block_size}")
    if block_size > MAX_BLOCK_SIZE:
        raise ValidationError(
            f"block_size too large ({block_size}), maximum is {MAX_BLOCK_SIZE} bytes"
        )


def validate_strong_hash_size(strong_hash_size: int, strong_type: ChecksumType) -> None:
    """
    Raises:
        ValidationError: If strong_hash_size is not in [1, digest length]
    """
    digest_len = ChecksumRegistry.get_digest_length(strong_type)
    if not isinstance(strong_hash_size, int) or isinstance(strong_hash_size, bool):
        raise ValidationError(
            f"strong_hash_size must be an integer, got {type(strong_hash_size).__name__}"
        )
    if not 1 <= strong_hash_size <= digest_len:
        raise ValidationError(
            f"strong_hash_size must be between 1 and {digest_len} for "
            f"{strong_type.value}, got {strong_hash_size}"
        )


def validate_data(data: Union[bytes, bytearray, memoryview]) -> None:
    """
    Raises:
        ValidationError: If data is not a bytes-like buffer
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ValidationError(
            f"data must be bytes, bytearray or memoryview, got {type(data).__name__}"
        )


def _expected_block_count(file_size: int, block_size: int) -> int:
    return (file_size + block_size - 1) // block_size


def validate_signature(signature: Signature) -> None:
    """
    Check that a signature's block table is internally consistent.

    A signature that arrived over the wire is attacker-controlled input, so
    the delta encoder never trusts it without this check.

    Raises:
        DecodeError: If the block table does not tile [0, file_size) exactly
    """
    if signature.block_size <= 0 or signature.block_size > MAX_BLOCK_SIZE:
        raise DecodeError(f"Signature has invalid block_size {signature.block_size}")
    if signature.file_size < 0:
        raise DecodeError(f"Signature has negative file_size {signature.file_size}")
    digest_len = ChecksumRegistry.get_digest_length(signature.strong_type)
    if not 1 <= signature.strong_hash_size <= digest_len:
        raise DecodeError(
            f"Signature strong_hash_size {signature.strong_hash_size} outside [1, {digest_len}]"
        )

    expected = _expected_block_count(signature.file_size, signature.block_size)
    if len(signature.blocks) != expected:
        raise DecodeError(
            f"Signature inconsistent: file_size={signature.file_size} needs {expected} "
            f"blocks but block table has {len(signature.blocks)}"
        )

    for i, block in enumerate(signature.blocks):
        expected_offset = i * signature.block_size
        expected_length = min(signature.block_size, signature.file_size - expected_offset)
        if block.offset != expected_offset or block.length != expected_length:
            raise DecodeError(
                f"Block {i} covers [{block.offset}, {block.offset + block.length}), "
                f"expected [{expected_offset}, {expected_offset + expected_length})"
            )
        if len(block.strong_checksum) != signature.strong_hash_size:
            raise DecodeError(
                f"Block {i} strong checksum is {len(block.strong_checksum)} bytes, "
                f"expected {signature.strong_hash_size}"
            )
        if not 0 <= block.weak_checksum <= 0xFFFFFFFF:
            raise DecodeError(f"Block {i} weak checksum out of 32-bit range")


# ============================================================================
# CHECKSUM IMPLEMENTATION - rolling weak sum + strong digest
# ============================================================================

class Checksum:
    """
    Rolling (weak) and strong checksum calculations.

    1. Rolling checksum, after rsync's get_checksum1():

           s1 = Σ(data[i] + CHAR_OFFSET) mod 2^16
           s2 = Σ s1 (cumulative) mod 2^16
           checksum = (s2 << 16) | s1

    2. Strong checksum: a registered digest, truncated by the caller to the
       signature's strong_hash_size.

    Example:
        >>> cs = Checksum(block_size=4096)
        >>> f"0x{cs.rolling_checksum(b'abc'):08x}"
        '0x024a0126'
    """

    def __init__(self, block_size: int = 4096,
                 checksum_type: ChecksumType = ChecksumType.MD5) -> None:
        self.block_size = block_size
        self.checksum_type = checksum_type
        self.strong_checksum_func = ChecksumRegistry.get_checksum_function(checksum_type)

    @staticmethod
    def rolling_checksum(
        data: Union[bytes, bytearray, memoryview],
        offset: int = 0,
        length: Optional[int] = None
    ) -> int:
        """
        Weak checksum of ``data[offset:offset + length]``.

        Processes 4 bytes per iteration, like the unrolled loop in
        checksum.c get_checksum1().

        Returns:
            32-bit checksum as (s1 & 0xFFFF) | (s2 << 16)
        """
        if length is None:
            length = len(data) - offset

        s1 = 0
        s2 = 0
        i = 0

        while i < length - 3:
            b0 = data[offset + i] + CHAR_OFFSET
            b1 = data[offset + i + 1] + CHAR_OFFSET
            b2 = data[offset + i + 2] + CHAR_OFFSET
            b3 = data[offset + i + 3] + CHAR_OFFSET

            # s2 += 4*s1 + 4*b0 + 3*b1 + 2*b2 + b3
            s2 = (s2 + 4 * (s1 + b0) + 3 * b1 + 2 * b2 + b3) & 0xFFFF
            s1 = (s1 + b0 + b1 + b2 + b3) & 0xFFFF
            i += 4

        while i < length:
            s1 = (s1 + data[offset + i] + CHAR_OFFSET) & 0xFFFF
            s2 = (s2 + s1) & 0xFFFF
            i += 1

        return (s1 & 0xFFFF) | (s2 << 16)

    @staticmethod
    def rolling_update(
        old_byte: int,
        new_byte: int,
        old_s1: int,
        old_s2: int,
        length: int
    ) -> Tuple[int, int]:
        """
        Slide the window one byte in O(1).

            s1_new = s1_old - old_byte + new_byte
            s2_new = s2_old - length * old_byte + s1_new

        Returns:
            Tuple of (new_s1, new_s2)
        """
        old_val = old_byte + CHAR_OFFSET
        new_val = new_byte + CHAR_OFFSET

        new_s1 = (old_s1 - old_val + new_val) & 0xFFFF
        new_s2 = (old_s2 - length * old_val + new_s1) & 0xFFFF

        return new_s1, new_s2

    @staticmethod
    def rolling_shrink(old_byte: int, old_s1: int, old_s2: int, length: int) -> Tuple[int, int]:
        """Drop the first byte of a window of ``length`` bytes (end of input)."""
        old_val = old_byte + CHAR_OFFSET
        return (old_s1 - old_val) & 0xFFFF, (old_s2 - length * old_val) & 0xFFFF

    @staticmethod
    def combine_checksum(s1: int, s2: int) -> int:
        """Combine s1 and s2 components into 32-bit checksum."""
        return (s1 & 0xFFFF) | ((s2 & 0xFFFF) << 16)

    @staticmethod
    def checksum_components(checksum: int) -> Tuple[int, int]:
        """Extract s1 and s2 components from 32-bit checksum."""
        return checksum & 0xFFFF, (checksum >> 16) & 0xFFFF

    def strong_checksum(self, data: Union[bytes, bytearray, memoryview]) -> bytes:
        """Full (untruncated) strong digest of ``data``."""
        return self.strong_checksum_func(bytes(data))

    def block_checksums(self, data: Union[bytes, bytearray, memoryview]) -> List[Tuple[int, bytes]]:
        """
        (weak, strong) pairs for every block of ``data``.

        Example:
            >>> cs = Checksum(block_size=512)
            >>> len(cs.block_checksums(b"x" * 1025))
            3
        """
        blocks: List[Tuple[int, bytes]] = []
        block_size = self.block_size
        mv = memoryview(data)

        for offset in range(0, len(mv), block_size):
            block = mv[offset:offset + block_size]
            blocks.append((self.rolling_checksum(block), self.strong_checksum(block)))

        return blocks


# ============================================================================
# HASH TABLE - weak checksum -> candidate block indices
# ============================================================================

class HashTable:
    """
    Lookup table from weak checksum to the blocks that carry it.

    Candidate indices are kept in ascending order so that, among blocks
    sharing a weak checksum, the lowest index is tried first. That makes
    patches reproducible for a given signature and target.

    Example:
        >>> ht = HashTable(signature.blocks)
        >>> ht.lookup_indices(weak, length=4096)
        [0, 7]
    """

    def __init__(self, blocks: Sequence[BlockChecksum]) -> None:
        self.blocks = blocks
        self.count = len(blocks)
        self._table: Dict[int, List[int]] = {}
        self._build()

    def _build(self) -> None:
        for i, block in enumerate(self.blocks):
            self._table.setdefault(block.weak_checksum, []).append(i)

    def lookup_indices(self, weak_checksum: int, length: Optional[int] = None) -> List[int]:
        """
        Block indices with this weak checksum (and, if given, this length).

        The length filter keeps a full-size window from matching the short
        final block and vice versa.
        """
        indices = self._table.get(weak_checksum)
        if not indices:
            return []
        if length is None:
            return list(indices)
        return [i for i in indices if self.blocks[i].length == length]

    def __len__(self) -> int:
        return self.count


# ============================================================================
# DELTA ENGINE - signature, delta, apply
# ============================================================================

class DeltaEngine:
    """
    Engine for building signatures, computing deltas and applying patches.

    The engine's block size and strong checksum settings only apply to
    signatures it builds. compute_delta() always follows the settings
    carried by the signature it is given.

    Attributes:
        block_size: Block size for new signatures
        strong_hash_size: Strong digest bytes kept per block
        strong_type: Strong checksum algorithm for new signatures
        last_stats: Statistics of the last compute_delta() call

    Example:
        >>> engine = DeltaEngine(block_size=4096)
        >>> sig = engine.build_signature(original_data)
        >>> patch = engine.compute_delta(sig, new_data)
        >>> assert engine.apply_patch(original_data, patch) == new_data
    """

    def __init__(
        self,
        block_size: Optional[int] = None,
        strong_hash_size: Optional[int] = None,
        strong_type: Union[str, ChecksumType, None] = None,
    ) -> None:
        """
        Raises:
            ValidationError: If block_size or strong_hash_size is invalid
        """
        block_size = Config.DEFAULT_BLOCK_SIZE if block_size is None else block_size
        strong_hash_size = (
            Config.DEFAULT_STRONG_HASH_SIZE if strong_hash_size is None else strong_hash_size
        )
        checksum_type = ChecksumType.parse(strong_type or Config.DEFAULT_STRONG_TYPE)

        validate_block_size(block_size)
        validate_strong_hash_size(strong_hash_size, checksum_type)

        self.block_size = block_size
        self.strong_hash_size = strong_hash_size
        self.strong_type = checksum_type
        self.checksum = Checksum(block_size=block_size, checksum_type=checksum_type)

        self.last_stats: Optional[DeltaStats] = None

    def build_signature(self, data: Union[bytes, bytearray, memoryview]) -> Signature:
        """
        Split ``data`` into blocks and checksum each one.

        Empty input yields a signature with zero blocks, meaning "nothing
        known": every delta against it is a single literal insert.
        """
        validate_data(data)

        size = len(data)
        shs = self.strong_hash_size
        blocks = tuple(
            BlockChecksum(
                weak_checksum=weak,
                strong_checksum=strong[:shs],
                offset=i * self.block_size,
                length=min(self.block_size, size - i * self.block_size),
            )
            for i, (weak, strong) in enumerate(self.checksum.block_checksums(data))
        )

        return Signature(
            block_size=self.block_size,
            strong_hash_size=shs,
            strong_type=self.strong_type,
            file_size=size,
            blocks=blocks,
        )

    def compute_delta(self, signature: Signature,
                      target: Union[bytes, bytearray, memoryview]) -> Patch:
        """
        Instructions that turn the signed buffer into ``target``.

        Follows rsync's hash_search() (match.c):
            1. Weak checksum of the window at the current offset
            2. Table lookup; on a hit verify with the strong checksum
            3. Match: flush pending literals, emit a copy, jump past the window
            4. No match: the byte becomes literal, the window slides by one

        Near the end of the target the window shrinks one byte at a time so
        the signature's short final block can still be matched.

        Raises:
            DecodeError: If the signature's block table is inconsistent
            ValidationError: If target is not a bytes-like buffer
        """
        validate_signature(signature)
        validate_data(target)

        mv = memoryview(target)
        file_len = len(mv)
        stats = DeltaStats()
        instructions: List[Instruction] = []

        def _emit_literal(start: int, stop: int) -> None:
            if stop > start:
                instructions.append(InsertOp(bytes(mv[start:stop])))
                stats.literal_data += stop - start

        def _emit_copy(source_offset: int, length: int) -> None:
            stats.matches += 1
            stats.matched_data += length
            if instructions:
                prev = instructions[-1]
                if isinstance(prev, CopyOp) and prev.source_offset + prev.length == source_offset:
                    instructions[-1] = CopyOp(prev.source_offset, prev.length + length)
                    return
            instructions.append(CopyOp(source_offset, length))

        if not signature.blocks:
            _emit_literal(0, file_len)
            return self._finish(signature, file_len, instructions, stats)

        checksum = self.checksum
        if signature.strong_type != self.strong_type:
            checksum = Checksum(block_size=signature.block_size, checksum_type=signature.strong_type)

        hash_table = HashTable(signature.blocks)
        blength = signature.block_size
        shs = signature.strong_hash_size
        last_block_len = signature.blocks[-1].length

        # match.c: end = len + 1 - s->sums[s->count-1].len;
        end = file_len + 1 - last_block_len

        offset = 0
        lit_start = 0
        k = min(blength, file_len)
        s1, s2 = checksum.checksum_components(checksum.rolling_checksum(mv, 0, k))

        while offset < end and k > 0:
            weak = checksum.combine_checksum(s1, s2)

            candidates = hash_table.lookup_indices(weak, length=k)
            if candidates:
                stats.hash_hits += 1
                strong = checksum.strong_checksum(mv[offset:offset + k])[:shs]

                matched_index: Optional[int] = None
                for idx in candidates:
                    if signature.blocks[idx].strong_checksum == strong:
                        matched_index = idx
                        break
                    stats.false_alarms += 1

                if matched_index is not None:
                    _emit_literal(lit_start, offset)
                    _emit_copy(signature.blocks[matched_index].offset, k)

                    offset += k
                    lit_start = offset
                    if offset >= file_len:
                        break

                    k = min(blength, file_len - offset)
                    s1, s2 = checksum.checksum_components(checksum.rolling_checksum(mv, offset, k))
                    continue

            old_byte = mv[offset]
            if offset + k < file_len:
                s1, s2 = checksum.rolling_update(old_byte, mv[offset + k], s1, s2, k)
            else:
                s1, s2 = checksum.rolling_shrink(old_byte, s1, s2, k)
                k -= 1
            offset += 1

        _emit_literal(lit_start, file_len)
        return self._finish(signature, file_len, instructions, stats)

    def _finish(self, signature: Signature, target_size: int,
                instructions: List[Instruction], stats: DeltaStats) -> Patch:
        self.last_stats = stats
        if Config.VERBOSE_LOGGING:
            logger.info(
                f"delta: blocks={signature.num_blocks} matches={stats.matches} "
                f"hash_hits={stats.hash_hits} false_alarms={stats.false_alarms} "
                f"literal={stats.literal_data} matched={stats.matched_data}"
            )
        return Patch(
            target_size=target_size,
            instructions=tuple(instructions),
            stats=stats if Config.COLLECT_STATS else None,
        )

    @staticmethod
    def apply_patch(original: Union[bytes, bytearray, memoryview],
                    patch: Union[Patch, Sequence[Instruction]]) -> bytes:
        """See :func:`apply_patch`."""
        return apply_patch(original, patch)


def apply_patch(original: Union[bytes, bytearray, memoryview],
                patch: Union[Patch, Sequence[Instruction]]) -> bytes:
    """
    Replay an instruction stream against the original bytes.

    Pure function: the output buffer is the only thing produced, so a bad
    patch can never leave partial output behind.

    Args:
        original: The exact bytes the signature was computed over
        patch: A Patch, or a bare sequence of CopyOp/InsertOp

    Returns:
        The reconstructed target bytes

    Raises:
        RangeError: If a copy reaches outside ``original`` or the output
            length differs from the patch's target_size
        DecodeError: If the stream holds something that is not an instruction
    """
    validate_data(original)
    source = memoryview(original)
    source_len = len(source)

    if isinstance(patch, Patch):
        instructions: Sequence[Instruction] = patch.instructions
        expected_size: Optional[int] = patch.target_size
    else:
        instructions = patch
        expected_size = None

    result = bytearray()
    for i, op in enumerate(instructions):
        if isinstance(op, CopyOp):
            start = op.source_offset
            stop = start + op.length
            if start < 0 or op.length < 0 or stop > source_len:
                raise RangeError(
                    f"Instruction {i}: copy [{start}, {stop}) outside original of {source_len} bytes"
                )
            result += source[start:stop]
        elif isinstance(op, InsertOp):
            result += op.data
        else:
            raise DecodeError(f"Instruction {i}: unknown instruction {op!r}")

    if expected_size is not None and len(result) != expected_size:
        raise RangeError(
            f"Patched output is {len(result)} bytes, patch declares {expected_size}"
        )

    return bytes(result)


def build_signature(data: Union[bytes, bytearray, memoryview],
                    block_size: Optional[int] = None,
                    strong_hash_size: Optional[int] = None,
                    strong_type: Union[str, ChecksumType, None] = None) -> Signature:
    """Functional form of :meth:`DeltaEngine.build_signature`."""
    return DeltaEngine(block_size, strong_hash_size, strong_type).build_signature(data)


def compute_delta(signature: Signature, target: Union[bytes, bytearray, memoryview]) -> Patch:
    """Functional form of :meth:`DeltaEngine.compute_delta`."""
    validate_signature(signature)
    engine = DeltaEngine(signature.block_size, signature.strong_hash_size, signature.strong_type)
    return engine.compute_delta(signature, target)


# ============================================================================
# WIRE CODECS - self-describing binary formats
# ============================================================================
#
# Signature (big-endian):
#   "DMSG" | u8 version | u8 strong id | u32 block size | u8 strong size
#   | u64 file size | u32 block count | count x (u32 weak | strong bytes)
#
# Patch (big-endian):
#   "DMPT" | u8 version | u64 target size | instruction* | u8 END
#   COPY   = 0x01 u64 offset u64 length
#   INSERT = 0x02 u64 length <bytes>

def encode_signature(signature: Signature) -> bytes:
    """Serialize a signature; the output carries every setting needed to use it."""
    validate_signature(signature)
    out = bytearray(_SIG_HEADER.pack(
        SIGNATURE_MAGIC,
        FORMAT_VERSION,
        signature.strong_type.wire_id,
        signature.block_size,
        signature.strong_hash_size,
        signature.file_size,
        len(signature.blocks),
    ))
    for block in signature.blocks:
        out += _SIG_WEAK.pack(block.weak_checksum)
        out += block.strong_checksum
    return bytes(out)


def decode_signature(data: Union[bytes, bytearray, memoryview]) -> Signature:
    """
    Parse an encoded signature.

    The body length is checked against the header before any block is
    read, so a hostile block count cannot trigger a large allocation.

    Raises:
        DecodeError: On bad magic, unknown version or algorithm, invalid
            sizes, a block count that does not match the file size, or a
            truncated/overlong body
    """
    mv = memoryview(bytes(data))
    if len(mv) < _SIG_HEADER.size:
        raise DecodeError(f"Signature truncated: {len(mv)} bytes, header needs {_SIG_HEADER.size}")

    magic, version, type_id, block_size, shs, file_size, count = _SIG_HEADER.unpack_from(mv, 0)
    if magic != SIGNATURE_MAGIC:
        raise DecodeError(f"Not a signature (magic {bytes(magic)!r})")
    if version != FORMAT_VERSION:
        raise DecodeError(f"Unsupported signature version {version}")

    strong_type = ChecksumType.from_wire_id(type_id)
    if block_size <= 0 or block_size > MAX_BLOCK_SIZE:
        raise DecodeError(f"Signature has invalid block_size {block_size}")
    digest_len = ChecksumRegistry.get_digest_length(strong_type)
    if not 1 <= shs <= digest_len:
        raise DecodeError(f"Signature strong_hash_size {shs} outside [1, {digest_len}]")

    expected = _expected_block_count(file_size, block_size)
    if count != expected:
        raise DecodeError(
            f"Signature inconsistent: file_size={file_size} needs {expected} blocks, header says {count}"
        )

    entry_size = _SIG_WEAK.size + shs
    body_len = len(mv) - _SIG_HEADER.size
    if body_len != count * entry_size:
        raise DecodeError(
            f"Signature body is {body_len} bytes, expected {count * entry_size} for {count} blocks"
        )

    blocks: List[BlockChecksum] = []
    pos = _SIG_HEADER.size
    for i in range(count):
        (weak,) = _SIG_WEAK.unpack_from(mv, pos)
        pos += _SIG_WEAK.size
        strong = bytes(mv[pos:pos + shs])
        pos += shs
        offset = i * block_size
        blocks.append(BlockChecksum(
            weak_checksum=weak,
            strong_checksum=strong,
            offset=offset,
            length=min(block_size, file_size - offset),
        ))

    return Signature(
        block_size=block_size,
        strong_hash_size=shs,
        strong_type=strong_type,
        file_size=file_size,
        blocks=tuple(blocks),
    )


def encode_patch(patch: Patch) -> bytes:
    """Serialize a patch into the binary instruction stream."""
    out = bytearray(_PATCH_HEADER.pack(PATCH_MAGIC, FORMAT_VERSION, patch.target_size))
    for op in patch.instructions:
        if isinstance(op, CopyOp):
            out.append(OP_COPY)
            out += _U64_PAIR.pack(op.source_offset, op.length)
        elif isinstance(op, InsertOp):
            out.append(OP_INSERT)
            out += _U64.pack(len(op.data))
            out += op.data
        else:
            raise ValidationError(f"Cannot encode instruction {op!r}")
    out.append(OP_END)
    return bytes(out)


def decode_patch(data: Union[bytes, bytearray, memoryview]) -> Patch:
    """
    Parse a binary instruction stream.

    Raises:
        DecodeError: On bad magic or version, unknown tags, truncation,
            bytes after END, or instruction lengths that do not add up to
            the declared target size
    """
    mv = memoryview(bytes(data))
    total = len(mv)
    if total < _PATCH_HEADER.size:
        raise DecodeError(f"Patch truncated: {total} bytes, header needs {_PATCH_HEADER.size}")

    magic, version, target_size = _PATCH_HEADER.unpack_from(mv, 0)
    if magic != PATCH_MAGIC:
        raise DecodeError(f"Not a patch (magic {bytes(magic)!r})")
    if version != FORMAT_VERSION:
        raise DecodeError(f"Unsupported patch version {version}")

    instructions: List[Instruction] = []
    produced = 0
    pos = _PATCH_HEADER.size
    while True:
        if pos >= total:
            raise DecodeError("Patch truncated: missing END marker")
        tag = mv[pos]
        pos += 1

        if tag == OP_END:
            break
        elif tag == OP_COPY:
            if pos + _U64_PAIR.size > total:
                raise DecodeError(f"Patch truncated inside COPY at byte {pos}")
            offset, length = _U64_PAIR.unpack_from(mv, pos)
            pos += _U64_PAIR.size
            instructions.append(CopyOp(offset, length))
            produced += length
        elif tag == OP_INSERT:
            if pos + _U64.size > total:
                raise DecodeError(f"Patch truncated inside INSERT at byte {pos}")
            (length,) = _U64.unpack_from(mv, pos)
            pos += _U64.size
            if pos + length > total:
                raise DecodeError(
                    f"INSERT of {length} bytes runs past end of patch ({total - pos} left)"
                )
            instructions.append(InsertOp(bytes(mv[pos:pos + length])))
            pos += length
            produced += length
        else:
            raise DecodeError(f"Unknown instruction tag 0x{tag:02x} at byte {pos - 1}")

    if pos != total:
        raise DecodeError(f"{total - pos} trailing bytes after END marker")
    if produced != target_size:
        raise DecodeError(
            f"Instructions produce {produced} bytes, header declares {target_size}"
        )

    return Patch(target_size=target_size, instructions=tuple(instructions))
