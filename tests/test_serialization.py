import io
import struct
import zlib

import pytest

from qfic import generate
from qfic.errors import CorruptPayload, MalformedHeader, PersistenceError
from qfic.grid import Block, Orientation
from qfic.quadtree.common import Codebook, TransformCode
from qfic.quadtree.encoder import QuadtreeEncoder
from qfic.quadtree.partition import PartitionPolicy
from qfic.quadtree.serialization import (FORMAT_VERSION, HEADER_SIZE, HEADER_STRUCT_FMT, MAX_QUANTIZED_SCALE,
                                         QFIC_MAGIC, RECORD_SIZE, RECORD_STRUCT_FMT, QuadtreeDeserializer,
                                         QuadtreeSerializer, decode, encode, quantize_offset, quantize_scale)

QUANTIZATION_ERROR = 1 / 8192 + 1e-12


@pytest.fixture(scope="module")
def codebook() -> Codebook:
    return QuadtreeEncoder(PartitionPolicy(4, 16, 1.), domain_step=4).encode(generate.circle(64, 16))


def with_header(data: bytes, **fields) -> bytes:
    names = ("magic", "version", "channels", "width", "height", "record_count", "checksum")
    header = dict(zip(names, struct.unpack_from(HEADER_STRUCT_FMT, data)))
    header.update(fields)
    return struct.pack(HEADER_STRUCT_FMT, *(header[n] for n in names)) + data[HEADER_SIZE:]


def raw_file(records: bytes, record_count: int, width: int = 64, height: int = 64, channels: int = 1) -> bytes:
    header = struct.pack(HEADER_STRUCT_FMT, QFIC_MAGIC, FORMAT_VERSION, channels, width, height,
                         record_count, zlib.crc32(records))
    return header + zlib.compress(records)


class TestRoundTrip:
    def test_structure_is_exact(self, codebook):
        restored = decode(encode(codebook))
        assert (restored.width, restored.height, restored.channels) == (64, 64, 1)
        assert len(restored.codes) == len(codebook.codes)
        for before, after in zip(codebook.codes, restored.codes):
            assert after.range_block == before.range_block
            assert after.domain_block == before.domain_block
            assert after.orientation == before.orientation
            assert after.channel == before.channel

    def test_coefficients_within_quantization_error(self, codebook):
        restored = decode(encode(codebook))
        for before, after in zip(codebook.codes, restored.codes):
            assert abs(after.scale - before.scale) <= QUANTIZATION_ERROR
            assert abs(after.offset - before.offset) <= QUANTIZATION_ERROR
            assert abs(after.scale) < 1.

    def test_encoding_is_stable(self, codebook):
        data = encode(codebook)
        assert encode(decode(data)) == data

    def test_empty_codebook(self):
        data = encode(Codebook(16, 16, 1, ()))
        assert decode(data) == Codebook(16, 16, 1, ())

    def test_file_and_stream(self, codebook, tmp_path):
        path = str(tmp_path / "circle.qfic")
        size = QuadtreeSerializer().serialize(codebook, path)
        assert size == (tmp_path / "circle.qfic").stat().st_size
        assert QuadtreeDeserializer().deserialize(path) == decode(encode(codebook))

        stream = io.BytesIO()
        QuadtreeSerializer().serialize(codebook, stream)
        stream.seek(0)
        assert QuadtreeDeserializer().deserialize(stream) == decode(encode(codebook))


class TestLayout:
    def test_header(self, codebook):
        data = encode(codebook)
        magic, version, channels, width, height, record_count, checksum = struct.unpack_from(HEADER_STRUCT_FMT, data)
        assert HEADER_SIZE == 22
        assert (magic, version, channels, width, height) == (b"QFIC", 1, 1, 64, 64)
        assert record_count == len(codebook.codes)
        records = zlib.decompress(data[HEADER_SIZE:])
        assert len(records) == RECORD_SIZE * record_count
        assert zlib.crc32(records) == checksum

    def test_record(self):
        code = TransformCode(Block(4, 8, 4), Block(16, 0, 8), Orientation.FLIP_V, -0.5, 100.25, 0)
        records = zlib.decompress(encode(Codebook(32, 32, 1, (code,)))[HEADER_SIZE:])
        assert RECORD_SIZE == 28
        assert struct.unpack(RECORD_STRUCT_FMT, records) == (0, 4, 8, 4, 16, 0, 8, 5, -2048, 410624)

    @pytest.mark.parametrize("scale, expected", [(0.5, 2048), (1., MAX_QUANTIZED_SCALE), (-3., -MAX_QUANTIZED_SCALE),
                                                 (0.9, 3686)])
    def test_quantize_scale(self, scale, expected):
        assert quantize_scale(scale) == expected

    def test_quantize_offset(self):
        assert quantize_offset(-10.5) == -43008


class TestEncodeErrors:
    def test_domain_side_must_be_twice_range_side(self):
        code = TransformCode(Block(0, 0, 4), Block(0, 0, 4), Orientation.IDENTITY, 0.5, 1.)
        with pytest.raises(PersistenceError):
            encode(Codebook(16, 16, 1, (code,)))

    def test_offset_overflow(self):
        code = TransformCode(Block(0, 0, 4), Block(0, 0, 8), Orientation.IDENTITY, 0.5, 1e9)
        with pytest.raises(PersistenceError):
            encode(Codebook(16, 16, 1, (code,)))


class TestDecodeErrors:
    def test_empty(self):
        with pytest.raises(MalformedHeader):
            decode(b"")

    def test_short_header(self, codebook):
        with pytest.raises(MalformedHeader):
            decode(encode(codebook)[:HEADER_SIZE - 1])

    def test_bad_magic(self, codebook):
        with pytest.raises(MalformedHeader):
            decode(with_header(encode(codebook), magic=b"QFIX"))

    def test_unsupported_version(self, codebook):
        with pytest.raises(MalformedHeader):
            decode(with_header(encode(codebook), version=2))

    def test_zero_dimensions(self, codebook):
        with pytest.raises(MalformedHeader):
            decode(with_header(encode(codebook), width=0))

    def test_record_count_mismatch(self, codebook):
        data = encode(codebook)
        with pytest.raises(MalformedHeader):
            decode(with_header(data, record_count=len(codebook.codes) + 1))

    def test_fewer_records_declared(self, codebook):
        with pytest.raises(MalformedHeader):
            decode(with_header(encode(codebook), record_count=len(codebook.codes) - 1))

    def test_oversized_payload_isnt_expanded(self):
        records = bytes(RECORD_SIZE * 200_000)
        data = raw_file(records, 1)
        assert len(data) < len(records) // 100
        with pytest.raises(MalformedHeader, match="more than the 28 bytes"):
            decode(data)

    def test_blocks_outside_image(self, codebook):
        with pytest.raises(MalformedHeader):
            decode(with_header(encode(codebook), width=16))

    def test_channel_outside_image(self):
        record = struct.pack(RECORD_STRUCT_FMT, 1, 0, 0, 4, 0, 0, 8, 0, 0, 0)
        with pytest.raises(MalformedHeader):
            decode(raw_file(record, 1))

    def test_checksum_mismatch(self, codebook):
        data = encode(codebook)
        _, _, _, _, _, _, checksum = struct.unpack_from(HEADER_STRUCT_FMT, data)
        with pytest.raises(CorruptPayload):
            decode(with_header(data, checksum=checksum ^ 1))

    def test_flipped_payload_byte(self, codebook):
        data = bytearray(encode(codebook))
        data[HEADER_SIZE + (len(data) - HEADER_SIZE) // 2] ^= 0xFF
        with pytest.raises(PersistenceError):
            decode(bytes(data))

    def test_flipped_stream_checksum(self, codebook):
        data = bytearray(encode(codebook))
        data[-1] ^= 0xFF
        with pytest.raises(CorruptPayload):
            decode(bytes(data))

    def test_truncated_payload(self, codebook):
        with pytest.raises(CorruptPayload):
            decode(encode(codebook)[:-5])

    def test_trailing_garbage(self, codebook):
        with pytest.raises(CorruptPayload):
            decode(encode(codebook) + b"garbage")

    def test_invalid_orientation(self):
        record = struct.pack(RECORD_STRUCT_FMT, 0, 0, 0, 4, 0, 0, 8, 8, 0, 0)
        with pytest.raises(CorruptPayload):
            decode(raw_file(record, 1))

    def test_invalid_domain_side(self):
        record = struct.pack(RECORD_STRUCT_FMT, 0, 0, 0, 4, 0, 0, 4, 0, 0, 0)
        with pytest.raises(CorruptPayload):
            decode(raw_file(record, 1))

    def test_errors_are_persistence_errors(self):
        assert issubclass(CorruptPayload, PersistenceError)
        assert issubclass(MalformedHeader, PersistenceError)
