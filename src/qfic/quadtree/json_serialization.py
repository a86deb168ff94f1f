import json
from typing import BinaryIO

from qfic.errors import CorruptPayload, MalformedHeader
from qfic.grid import Block, Orientation
from qfic.quadtree.common import Codebook, TransformCode
from qfic.quadtree.serialization import FORMAT_VERSION, open_binary

JSON_FORMAT = "qfic-json"


def _block_to_dict(block: Block) -> dict:
    return {"x": block.x, "y": block.y, "size": block.side}


def _block_from_dict(d: dict) -> Block:
    return Block(int(d["x"]), int(d["y"]), int(d["size"]))


def to_dict(codebook: Codebook) -> dict:
    return {
        "format": JSON_FORMAT,
        "version": FORMAT_VERSION,
        "width": codebook.width,
        "height": codebook.height,
        "channels": codebook.channels,
        "mappings": [
            {
                "channel": code.channel,
                "range": _block_to_dict(code.range_block),
                "domain": _block_to_dict(code.domain_block),
                "orientation": int(code.orientation),
                "scale": code.scale,
                "offset": code.offset,
            }
            for code in codebook.codes
        ],
    }


def from_dict(contents: dict) -> Codebook:
    try:
        if contents.get("format") != JSON_FORMAT or contents.get("version") != FORMAT_VERSION:
            raise MalformedHeader(f"not a {JSON_FORMAT} v{FORMAT_VERSION} document")
        width, height, channels = int(contents["width"]), int(contents["height"]), int(contents["channels"])
        if width <= 0 or height <= 0:
            raise MalformedHeader(f"invalid image dimensions {width}x{height}")
        codes = []
        for mapping in contents["mappings"]:
            code = TransformCode(
                _block_from_dict(mapping["range"]),
                _block_from_dict(mapping["domain"]),
                Orientation(int(mapping["orientation"])),
                float(mapping["scale"]),
                float(mapping["offset"]),
                int(mapping["channel"]),
            )
            if not 0 <= code.channel < channels:
                raise MalformedHeader(f"mapping references channel {code.channel} of {channels}")
            codes.append(code)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedHeader(f"invalid {JSON_FORMAT} document: {e!r}") from e
    return Codebook(width, height, channels, tuple(codes))


def encode(codebook: Codebook) -> bytes:
    return json.dumps(to_dict(codebook), indent=1).encode("utf-8")


def decode(data: bytes | str) -> Codebook:
    try:
        contents = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CorruptPayload(f"invalid json: {e}") from e
    if not isinstance(contents, dict):
        raise MalformedHeader("json document is not an object")
    return from_dict(contents)


def serialize(codebook: Codebook, output: str | BinaryIO) -> int:
    data = encode(codebook)
    with open_binary(output, "wb") as f:
        f.write(data)
    return len(data)


def deserialize(input: str | BinaryIO) -> Codebook:
    with open_binary(input, "rb") as f:
        return decode(f.read())
