"""XP3 Tempo - KiriKiri XP3 archive codec.

Layout (all integers little-endian):

    0x00  magic "XP3\\r\\n \\n\\x1a\\x8b\\x67\\x01"
    0x0B  u64 index offset (old header), or u64 0x17 (current header)
    0x13  u32 minor version                                  (current only)
    0x17  u8 0x80, u64 index size offset, u64 index offset   (current only)

The index is a flag byte (low bits: 0 raw, 1 zlib) followed by its size(s)
and a run of chunks (4-byte tag, u64 size, payload). Each "File" chunk holds
"info", "segm", "adlr" and optionally "time" sub-chunks. Segment offsets are
absolute file positions.

Protected entries are stored encrypted by a game-specific cipher; their
bytes are returned exactly as stored.
"""

from __future__ import annotations

import logging
import struct
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO

from xp3tempo.archive.base import (
    ArchiveEntryInfo,
    ArchiveError,
    HeaderVersion,
    IndexCompression,
    ProtectionFlag,
    SegmentCompression,
)
from xp3tempo.config import COPY_CHUNK_SIZE, XP3_MINOR_VERSION

logger = logging.getLogger(__name__)

# --- Format Constants ---

XP3_MAGIC = b"XP3\r\n \n\x1a\x8b\x67\x01"

# Value stored at 0x0B by current headers; also the cushion position
CUSHION_OFFSET = 0x17
INDEX_CONTINUE = 0x80

ENCODE_METHOD_MASK = 0x07
ENCODE_RAW = 0
ENCODE_ZLIB = 1

CHUNK_FILE = b"File"
CHUNK_INFO = b"info"
CHUNK_SEGMENT = b"segm"
CHUNK_ADLER = b"adlr"
CHUNK_TIME = b"time"

_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_CHUNK_HEADER = struct.Struct("<4sQ")
_ZLIB_INDEX_SIZES = struct.Struct("<QQ")
_INFO_HEADER = struct.Struct("<IQQH")
_SEGMENT = struct.Struct("<IQQQ")

_OLD_INDEX_OFFSET_POS = len(XP3_MAGIC)
_CURRENT_INDEX_OFFSET_POS = CUSHION_OFFSET + _U8.size + _U64.size

_MAX_NAME_UNITS = 0xFFFF
_MAX_U64 = 2**64 - 1


# --- Index Types ---


@dataclass(frozen=True)
class XP3Segment:
    """One stored run of an entry's bytes."""

    flag: int
    start: int
    original_size: int
    packed_size: int

    @property
    def compressed(self) -> bool:
        return self.flag & ENCODE_METHOD_MASK == ENCODE_ZLIB


@dataclass(frozen=True)
class XP3FileIndex:
    """Decoded "File" chunk."""

    info: ArchiveEntryInfo
    segments: tuple[XP3Segment, ...]
    adler32: int | None = None


# --- Low-level Helpers ---


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ArchiveError(f"Unexpected end of archive: wanted {size} bytes, got {len(data)}")
    return data


def _check_remaining(stream: BinaryIO, size: int) -> None:
    # Corrupted size fields must not turn into multi-gigabyte allocations
    pos = stream.tell()
    end = stream.seek(0, 2)
    stream.seek(pos)
    if size > end - pos:
        raise ArchiveError(f"Index claims {size} bytes but only {end - pos} remain")


def _chunk(tag: bytes, payload: bytes) -> bytes:
    return _CHUNK_HEADER.pack(tag, len(payload)) + payload


def _iter_chunks(data: bytes) -> Iterator[tuple[bytes, bytes]]:
    pos = 0
    while pos < len(data):
        if pos + _CHUNK_HEADER.size > len(data):
            raise ArchiveError("Truncated chunk header in index")
        tag, size = _CHUNK_HEADER.unpack_from(data, pos)
        pos += _CHUNK_HEADER.size
        end = pos + size
        if end > len(data):
            raise ArchiveError(f"Truncated {tag!r} chunk in index")
        yield tag, data[pos:end]
        pos = end


def _read_index_offset(stream: BinaryIO) -> int:
    stream.seek(0)
    if _read_exact(stream, len(XP3_MAGIC)) != XP3_MAGIC:
        raise ArchiveError("Not an XP3 archive (bad magic)")

    (offset,) = _U64.unpack(_read_exact(stream, _U64.size))
    if offset == CUSHION_OFFSET:
        stream.seek(CUSHION_OFFSET)
        (flag,) = _U8.unpack(_read_exact(stream, _U8.size))
        if flag != INDEX_CONTINUE:
            raise ArchiveError(f"Unexpected header cushion flag 0x{flag:02x}")
        _read_exact(stream, _U64.size)  # index size offset, unused
        (offset,) = _U64.unpack(_read_exact(stream, _U64.size))
    return offset


def _read_index(stream: BinaryIO, offset: int) -> bytes:
    stream.seek(offset)
    (flag,) = _U8.unpack(_read_exact(stream, _U8.size))
    method = flag & ENCODE_METHOD_MASK

    if method == ENCODE_ZLIB:
        packed_size, raw_size = _ZLIB_INDEX_SIZES.unpack(_read_exact(stream, _ZLIB_INDEX_SIZES.size))
        _check_remaining(stream, packed_size)
        try:
            data = zlib.decompress(_read_exact(stream, packed_size))
        except zlib.error as e:
            raise ArchiveError(f"Corrupted index: {e}") from e
        if len(data) != raw_size:
            raise ArchiveError(f"Index size mismatch: expected {raw_size}, got {len(data)}")
        return data

    if method == ENCODE_RAW:
        (size,) = _U64.unpack(_read_exact(stream, _U64.size))
        _check_remaining(stream, size)
        return _read_exact(stream, size)

    raise ArchiveError(f"Unknown index encoding {method}")


def _parse_file_chunk(body: bytes) -> XP3FileIndex:
    info_fields = None
    name = None
    segments: list[XP3Segment] | None = None
    adler32 = None
    timestamp_ms = None

    for tag, payload in _iter_chunks(body):
        if tag == CHUNK_INFO:
            if len(payload) < _INFO_HEADER.size:
                raise ArchiveError("Truncated info chunk")
            info_fields = _INFO_HEADER.unpack_from(payload)
            name_len = info_fields[3] * 2
            name_bytes = payload[_INFO_HEADER.size : _INFO_HEADER.size + name_len]
            if len(name_bytes) != name_len:
                raise ArchiveError("Truncated entry name")
            # Lone surrogates survive decoding and fail later, per entry, at file creation
            name = name_bytes.decode("utf-16-le", errors="surrogatepass")
        elif tag == CHUNK_SEGMENT:
            if len(payload) % _SEGMENT.size:
                raise ArchiveError("Malformed segm chunk")
            segments = [XP3Segment(*fields) for fields in _SEGMENT.iter_unpack(payload)]
        elif tag == CHUNK_ADLER:
            if len(payload) != _U32.size:
                raise ArchiveError("Malformed adlr chunk")
            (adler32,) = _U32.unpack(payload)
        elif tag == CHUNK_TIME:
            if len(payload) != _U64.size:
                raise ArchiveError("Malformed time chunk")
            (timestamp_ms,) = _U64.unpack(payload)

    if info_fields is None or name is None:
        raise ArchiveError("File chunk without info")
    if segments is None:
        raise ArchiveError(f"File chunk without segments: {name}")

    flags, original_size, packed_size, _ = info_fields
    info = ArchiveEntryInfo(
        name=name,
        size=original_size,
        packed_size=packed_size,
        timestamp_ms=timestamp_ms,
        protection=(
            ProtectionFlag.PROTECTED if flags & ProtectionFlag.PROTECTED else ProtectionFlag.NOT_PROTECTED
        ),
        segment_compression=(
            SegmentCompression.COMPRESSED
            if any(seg.compressed for seg in segments)
            else SegmentCompression.UNCOMPRESSED
        ),
    )
    return XP3FileIndex(info=info, segments=tuple(segments), adler32=adler32)


def _encode_name(name: str) -> bytes:
    name_bytes = name.encode("utf-16-le", errors="surrogatepass")
    if len(name_bytes) // 2 > _MAX_NAME_UNITS:
        raise ArchiveError(f"Entry name too long: {name[:64]}...")
    return name_bytes


def _encode_file_index(file_index: XP3FileIndex) -> bytes:
    info = file_index.info
    name_bytes = _encode_name(info.name)
    info_payload = (
        _INFO_HEADER.pack(int(info.protection), info.size, info.packed_size, len(name_bytes) // 2)
        + name_bytes
    )
    segm_payload = b"".join(
        _SEGMENT.pack(seg.flag, seg.start, seg.original_size, seg.packed_size)
        for seg in file_index.segments
    )
    body = _chunk(CHUNK_INFO, info_payload) + _chunk(CHUNK_SEGMENT, segm_payload)
    if file_index.adler32 is not None:
        body += _chunk(CHUNK_ADLER, _U32.pack(file_index.adler32))
    if info.timestamp_ms is not None:
        body += _chunk(CHUNK_TIME, _U64.pack(info.timestamp_ms))
    return _chunk(CHUNK_FILE, body)


# --- Reader ---


class XP3Reader:
    """Random-access reader over a seekable XP3 byte stream."""

    def __init__(self, stream: BinaryIO, index: dict[str, XP3FileIndex]):
        self._stream = stream
        self._index = index

    @classmethod
    def open_archive(cls, stream: BinaryIO) -> XP3Reader:
        """Parse the header and index.

        Raises:
            ArchiveError: If the stream is not a well-formed XP3 archive.
        """
        offset = _read_index_offset(stream)
        data = _read_index(stream, offset)

        index: dict[str, XP3FileIndex] = {}
        for tag, body in _iter_chunks(data):
            if tag != CHUNK_FILE:
                logger.debug("Skipping %r index chunk", tag)
                continue
            file_index = _parse_file_chunk(body)
            if file_index.info.name in index:
                logger.warning("Duplicate entry %s in index; keeping the last one", file_index.info.name)
            index[file_index.info.name] = file_index

        logger.debug("Opened XP3 archive with %d entries", len(index))
        return cls(stream, index)

    def entries(self) -> list[tuple[str, ArchiveEntryInfo]]:
        return [(name, file_index.info) for name, file_index in self._index.items()]

    def file_index(self, name: str) -> XP3FileIndex:
        try:
            return self._index[name]
        except KeyError:
            raise ArchiveError(f"No such entry: {name}") from None

    def unpack(self, name: str, sink: BinaryIO) -> int:
        """Stream one entry's decoded bytes into sink.

        Returns:
            Number of bytes written.

        Raises:
            ArchiveError: On truncated data, bad zlib data, size mismatch, or a
                checksum mismatch on an entry that is not protected.
            OSError: If reading the archive or writing the sink fails.
        """
        file_index = self.file_index(name)
        adler = 1
        total = 0

        for seg in file_index.segments:
            self._stream.seek(seg.start)
            method = seg.flag & ENCODE_METHOD_MASK
            if method == ENCODE_ZLIB:
                written, adler = self._copy_compressed(seg, sink, adler)
            elif method == ENCODE_RAW:
                written, adler = self._copy_raw(seg, sink, adler)
            else:
                raise ArchiveError(f"Unknown segment encoding {method} in {name}")
            if written != seg.original_size:
                raise ArchiveError(
                    f"Segment size mismatch in {name}: expected {seg.original_size}, got {written}"
                )
            total += written

        if total != file_index.info.size:
            raise ArchiveError(f"Size mismatch in {name}: expected {file_index.info.size}, got {total}")
        if file_index.adler32 is not None and adler != file_index.adler32:
            # Protected entries are stored encrypted; adlr covers the plaintext
            if file_index.info.protection != ProtectionFlag.PROTECTED:
                raise ArchiveError(f"Checksum mismatch in {name}")
            logger.warning("Checksum not verifiable for protected entry %s; keeping stored bytes", name)
        return total

    def _copy_raw(self, seg: XP3Segment, sink: BinaryIO, adler: int) -> tuple[int, int]:
        remaining = seg.packed_size
        while remaining:
            chunk = self._stream.read(min(COPY_CHUNK_SIZE, remaining))
            if not chunk:
                raise ArchiveError("Unexpected end of archive inside a segment")
            sink.write(chunk)
            adler = zlib.adler32(chunk, adler)
            remaining -= len(chunk)
        return seg.packed_size, adler

    def _copy_compressed(self, seg: XP3Segment, sink: BinaryIO, adler: int) -> tuple[int, int]:
        decompressor = zlib.decompressobj()
        remaining = seg.packed_size
        written = 0
        try:
            while remaining:
                chunk = self._stream.read(min(COPY_CHUNK_SIZE, remaining))
                if not chunk:
                    raise ArchiveError("Unexpected end of archive inside a segment")
                remaining -= len(chunk)
                out = decompressor.decompress(chunk)
                sink.write(out)
                adler = zlib.adler32(out, adler)
                written += len(out)
            out = decompressor.flush()
        except zlib.error as e:
            raise ArchiveError(f"Corrupted segment data: {e}") from e
        sink.write(out)
        adler = zlib.adler32(out, adler)
        written += len(out)
        if not decompressor.eof:
            raise ArchiveError("Truncated compressed segment")
        return written, adler


# --- Writer ---


class XP3EntryWriter:
    """Collects the segments of one entry; obtained from XP3Writer.enter_file."""

    def __init__(
        self,
        writer: XP3Writer,
        protection: ProtectionFlag,
        name: str,
        timestamp_ms: int | None,
    ):
        self._writer = writer
        self._protection = protection
        self._name = name
        self._timestamp_ms = timestamp_ms
        self._segments: list[XP3Segment] = []
        self._adler = 1
        self._size = 0
        self._packed_size = 0
        self._finished = False

    def write_segment(self, flag: SegmentCompression, data: bytes) -> None:
        if self._finished:
            raise ArchiveError(f"Entry {self._name} already finished")
        payload = zlib.compress(data) if flag == SegmentCompression.COMPRESSED else bytes(data)
        start = self._writer._write_payload(payload)
        self._segments.append(XP3Segment(int(flag), start, len(data), len(payload)))
        self._adler = zlib.adler32(data, self._adler)
        self._size += len(data)
        self._packed_size += len(payload)

    def finish(self) -> None:
        if self._finished:
            raise ArchiveError(f"Entry {self._name} already finished")
        info = ArchiveEntryInfo(
            name=self._name,
            size=self._size,
            packed_size=self._packed_size,
            timestamp_ms=self._timestamp_ms,
            protection=self._protection,
            segment_compression=(
                SegmentCompression.COMPRESSED
                if any(seg.compressed for seg in self._segments)
                else SegmentCompression.UNCOMPRESSED
            ),
        )
        self._writer._close_entry(self, XP3FileIndex(info, tuple(self._segments), self._adler))
        self._finished = True


class XP3Writer:
    """Sequential XP3 writer over a seekable, writable byte stream.

    Segment data is written as entries arrive; the index is written and the
    header patched by finish().
    """

    def __init__(
        self,
        stream: BinaryIO,
        header_version: HeaderVersion,
        index_compression: IndexCompression,
    ):
        self._stream = stream
        self._header_version = header_version
        self._index_compression = index_compression
        self._files: list[XP3FileIndex] = []
        self._current: XP3EntryWriter | None = None
        self._finished = False

    @classmethod
    def start(
        cls,
        stream: BinaryIO,
        header_version: HeaderVersion = HeaderVersion.CURRENT,
        index_compression: IndexCompression = IndexCompression.COMPRESSED,
    ) -> XP3Writer:
        """Write the header and return a writer ready for entries.

        Raises:
            OSError: If writing the header fails.
        """
        writer = cls(stream, header_version, index_compression)
        writer._write_header()
        return writer

    @property
    def entry_count(self) -> int:
        return len(self._files)

    def _write_header(self) -> None:
        if self._header_version == HeaderVersion.CURRENT:
            header = (
                XP3_MAGIC
                + _U64.pack(CUSHION_OFFSET)
                + _U32.pack(XP3_MINOR_VERSION)
                + _U8.pack(INDEX_CONTINUE)
                + _U64.pack(0)
                + _U64.pack(0)
            )
        else:
            header = XP3_MAGIC + _U64.pack(0)
        self._stream.write(header)

    def _write_payload(self, payload: bytes) -> int:
        start = self._stream.tell()
        self._stream.write(payload)
        return start

    def enter_file(
        self,
        protection: ProtectionFlag,
        name: str,
        timestamp_ms: int | None = None,
    ) -> XP3EntryWriter:
        """Begin a new entry. The previous entry must be finished first."""
        if self._finished:
            raise ArchiveError("Archive already finished")
        if self._current is not None:
            raise ArchiveError(f"Entry {self._current._name} not finished")
        _encode_name(name)
        if timestamp_ms is not None and not 0 <= timestamp_ms <= _MAX_U64:
            raise ArchiveError(f"Timestamp out of range for {name}: {timestamp_ms}")
        self._current = XP3EntryWriter(self, protection, name, timestamp_ms)
        return self._current

    def _close_entry(self, entry: XP3EntryWriter, file_index: XP3FileIndex) -> None:
        if entry is not self._current:
            raise ArchiveError(f"Entry {file_index.info.name} does not belong to the open slot")
        self._files.append(file_index)
        self._current = None

    def finish(self) -> None:
        """Write the index, patch the header and flush.

        Raises:
            ArchiveError: If an entry is still open or finish was already called.
            OSError: If writing fails.
        """
        if self._finished:
            raise ArchiveError("Archive already finished")
        if self._current is not None:
            raise ArchiveError(f"Entry {self._current._name} not finished")

        index = b"".join(_encode_file_index(file_index) for file_index in self._files)
        index_offset = self._stream.tell()
        if self._index_compression == IndexCompression.COMPRESSED:
            packed = zlib.compress(index)
            self._stream.write(_U8.pack(ENCODE_ZLIB) + _ZLIB_INDEX_SIZES.pack(len(packed), len(index)))
            self._stream.write(packed)
        else:
            self._stream.write(_U8.pack(ENCODE_RAW) + _U64.pack(len(index)))
            self._stream.write(index)
        end = self._stream.tell()

        patch_pos = (
            _CURRENT_INDEX_OFFSET_POS
            if self._header_version == HeaderVersion.CURRENT
            else _OLD_INDEX_OFFSET_POS
        )
        self._stream.seek(patch_pos)
        self._stream.write(_U64.pack(index_offset))
        self._stream.seek(end)
        self._stream.flush()
        self._finished = True
        logger.debug("Wrote XP3 index with %d entries at offset %d", len(self._files), index_offset)


class XP3Backend:
    """ArchiveBackend implementation for XP3."""

    def open_archive(self, stream: BinaryIO) -> XP3Reader:
        return XP3Reader.open_archive(stream)

    def start_writer(
        self,
        stream: BinaryIO,
        header_version: HeaderVersion = HeaderVersion.CURRENT,
        index_compression: IndexCompression = IndexCompression.COMPRESSED,
    ) -> XP3Writer:
        return XP3Writer.start(stream, header_version, index_compression)
