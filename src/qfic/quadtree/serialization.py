import logging
import struct
import zlib
from contextlib import contextmanager
from typing import BinaryIO, Iterator

from qfic.errors import CorruptPayload, MalformedHeader, PersistenceError
from qfic.grid import NUM_ORIENTATIONS, Block, Orientation
from qfic.quadtree.common import Codebook, TransformCode

logger = logging.getLogger(__name__)

"""
Binary format v1, little-endian:

    header:  magic "QFIC" | version u8 | channels u8 | width u32 | height u32 | record_count u32 | crc32 u32
    payload: zlib stream of record_count records, checksum covers the inflated records

    record:  channel u8 | range x u32, y u32, side u16 | domain x u32, y u32, side u16 | orientation u8 |
             scale i16 | offset i32

scale and offset are fixed point numbers with FIXED_POINT_SCALE units per 1.0
"""

QFIC_MAGIC = b"QFIC"
FORMAT_VERSION = 1

STRUCT_BYTE_ORDER = "<"
HEADER_STRUCT_FMT = f"{STRUCT_BYTE_ORDER}4sBBIIII"
HEADER_SIZE = struct.calcsize(HEADER_STRUCT_FMT)
RECORD_STRUCT_FMT = f"{STRUCT_BYTE_ORDER}BIIHIIHBhi"
RECORD_SIZE = struct.calcsize(RECORD_STRUCT_FMT)

FIXED_POINT_SCALE = 4096
# keeps |scale| < 1 after rounding
MAX_QUANTIZED_SCALE = FIXED_POINT_SCALE - 1
COMPRESSION_LEVEL = 9


def quantize_scale(scale: float) -> int:
    return max(-MAX_QUANTIZED_SCALE, min(MAX_QUANTIZED_SCALE, round(scale * FIXED_POINT_SCALE)))


def quantize_offset(offset: float) -> int:
    return round(offset * FIXED_POINT_SCALE)


def dequantize(v: int) -> float:
    return v / FIXED_POINT_SCALE


def encode(codebook: Codebook) -> bytes:
    records = bytearray()
    for code in codebook.codes:
        r, d = code.range_block, code.domain_block
        if d.side != 2 * r.side:
            raise PersistenceError(f"domain side {d.side} is not twice the range side {r.side}")
        try:
            records += struct.pack(RECORD_STRUCT_FMT, code.channel, r.x, r.y, r.side, d.x, d.y, d.side,
                                   int(code.orientation), quantize_scale(code.scale), quantize_offset(code.offset))
        except struct.error as e:
            raise PersistenceError(f"transform code doesn't fit binary format v1: {code}") from e

    try:
        header = struct.pack(HEADER_STRUCT_FMT, QFIC_MAGIC, FORMAT_VERSION, codebook.channels,
                             codebook.width, codebook.height, len(codebook.codes), zlib.crc32(records))
    except struct.error as e:
        raise PersistenceError("codebook header doesn't fit binary format v1") from e
    return header + zlib.compress(bytes(records), COMPRESSION_LEVEL)


def decode(data: bytes) -> Codebook:
    if len(data) < HEADER_SIZE:
        raise MalformedHeader(f"header is too short ({len(data)} < {HEADER_SIZE} bytes), empty file?")

    magic, version, channels, width, height, record_count, checksum = struct.unpack_from(HEADER_STRUCT_FMT, data)
    if magic != QFIC_MAGIC:
        raise MalformedHeader("missing qfic magic")
    if version != FORMAT_VERSION:
        raise MalformedHeader(f"unsupported format version {version}")
    if width == 0 or height == 0:
        raise MalformedHeader(f"invalid image dimensions {width}x{height}")
    if channels == 0 and record_count > 0:
        raise MalformedHeader("records present in codebook without channels")

    records = _inflate(data[HEADER_SIZE:], record_count * RECORD_SIZE)
    if zlib.crc32(records) != checksum:
        raise CorruptPayload("checksum mismatch")
    if len(records) != record_count * RECORD_SIZE:
        raise MalformedHeader(
            f"header declares {record_count} records but payload holds {len(records)} bytes")

    codes = [_decode_record(fields, width, height, channels)
             for fields in struct.iter_unpack(RECORD_STRUCT_FMT, records)]
    return Codebook(width, height, channels, tuple(codes))


def _inflate(payload: bytes, expected_size: int) -> bytes:
    """Inflates at most expected_size + 1 bytes, a longer payload is never expanded in full."""
    decompressor = zlib.decompressobj()
    try:
        records = decompressor.decompress(payload, expected_size + 1)
    except zlib.error as e:
        raise CorruptPayload(f"payload is not a valid deflate stream: {e}") from e
    if len(records) > expected_size:
        raise MalformedHeader(f"payload holds more than the {expected_size} bytes of records declared in header")
    if not decompressor.eof or decompressor.unused_data:
        raise CorruptPayload("payload is truncated or followed by garbage")
    return records


def _decode_record(fields: tuple, width: int, height: int, channels: int) -> TransformCode:
    channel, rx, ry, rside, dx, dy, dside, orientation, scale, offset = fields
    if orientation >= NUM_ORIENTATIONS:
        raise CorruptPayload(f"invalid orientation {orientation}")
    if rside == 0 or dside != 2 * rside:
        raise CorruptPayload(f"invalid block sides: range {rside}, domain {dside}")
    if channel >= channels:
        raise MalformedHeader(f"record references channel {channel} of {channels}")
    for x, y, side in ((rx, ry, rside), (dx, dy, dside)):
        if x + side > width or y + side > height:
            raise MalformedHeader(f"block ({x}, {y}, {side}) lies outside of {width}x{height} image")

    return TransformCode(Block(rx, ry, rside), Block(dx, dy, dside), Orientation(orientation),
                         dequantize(scale), dequantize(offset), channel)


@contextmanager
def open_binary(target: str | BinaryIO, mode: str) -> Iterator[BinaryIO]:
    if isinstance(target, str):
        with open(target, mode) as f:
            yield f
    else:
        yield target


class QuadtreeSerializer:
    def serialize(self, codebook: Codebook, output: str | BinaryIO) -> int:
        data = encode(codebook)
        with open_binary(output, "wb") as f:
            f.write(data)
        logger.debug("Serialized %d transform codes into %d bytes", len(codebook.codes), len(data))
        return len(data)


class QuadtreeDeserializer:
    def deserialize(self, input: str | BinaryIO) -> Codebook:
        with open_binary(input, "rb") as f:
            data = f.read()
        return decode(data)

