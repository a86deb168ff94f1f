import argparse
import logging
import os
import sys
from time import time

import numpy as np
from tqdm import tqdm

from qfic import generate
from qfic.errors import FractalError
from qfic.metrics import psnr
from qfic.quadtree import json_serialization, serialization
from qfic.quadtree.common import Codebook
from qfic.quadtree.decoder import DEFAULT_EPSILON, DEFAULT_MAX_ITERATIONS, QuadtreeDecoder
from qfic.quadtree.encoder import QuadtreeEncoder
from qfic.quadtree.matcher import DEFAULT_MAX_SCALE
from qfic.quadtree.partition import (DEFAULT_MAX_RANGE_SIDE, DEFAULT_MIN_RANGE_SIDE,
                                     DEFAULT_VARIANCE_TOLERANCE, PartitionPolicy)
from qfic.utils import load_pixels, save_pixels

logger = logging.getLogger("qfic")

CLI_DOMAIN_STEP = 4
FORMATS = ("binary", "json")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qfic", description="Quadtree fractal image compression")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug logs")
    sub = parser.add_subparsers(dest="command", required=True)

    compress = sub.add_parser("compress", help="compress an image")
    compress.add_argument("input_path")
    compress.add_argument("output_path")
    compress.add_argument("--format", choices=FORMATS, default="binary")
    compress.add_argument("--color", action="store_true", help="encode RGB channels instead of grayscale")
    compress.add_argument("--crop", action="store_true",
                          help="crop the image to a multiple of the max range side instead of rejecting it")
    _add_encoder_args(compress)
    compress.add_argument("--progress", action="store_true", help="show progress bar")

    decompress = sub.add_parser("decompress", help="decompress a compressed image")
    decompress.add_argument("input_path")
    decompress.add_argument("output_path")
    _add_decoder_args(decompress)
    decompress.add_argument("--keep", action="store_true",
                            help="also save the image after every iteration as <name>.<iteration>.<ext>")

    info = sub.add_parser("info", help="describe a compressed image")
    info.add_argument("input_path")

    demo = sub.add_parser("demo", help="compress and decompress generated circle and square images")
    demo.add_argument("output_dir")
    demo.add_argument("--size", type=int, default=64)
    _add_encoder_args(demo)
    _add_decoder_args(demo)
    return parser


def _add_encoder_args(parser: argparse.ArgumentParser):
    parser.add_argument("--min-range-side", type=int, default=DEFAULT_MIN_RANGE_SIDE)
    parser.add_argument("--max-range-side", type=int, default=DEFAULT_MAX_RANGE_SIDE)
    parser.add_argument("--variance-tolerance", type=float, default=DEFAULT_VARIANCE_TOLERANCE)
    parser.add_argument("--domain-step", type=int, default=CLI_DOMAIN_STEP)
    parser.add_argument("--max-scale", type=float, default=DEFAULT_MAX_SCALE)
    parser.add_argument("--no-prefilter", action="store_true", help="search all domains exhaustively")
    parser.add_argument("--prefilter-tolerance", type=float, default=0.)
    parser.add_argument("--workers", type=int, default=None)


def _add_decoder_args(parser: argparse.ArgumentParser):
    parser.add_argument("--epsilon", type=float, default=DEFAULT_EPSILON)
    parser.add_argument("--max-iterations", type=int, default=DEFAULT_MAX_ITERATIONS)
    parser.add_argument("--decode-workers", type=int, default=1)


def _encoder_from_args(args: argparse.Namespace, progress=None) -> QuadtreeEncoder:
    policy = PartitionPolicy(args.min_range_side, args.max_range_side, args.variance_tolerance)
    return QuadtreeEncoder(policy, domain_step=args.domain_step, max_scale=args.max_scale,
                           use_prefilter=not args.no_prefilter, prefilter_tolerance=args.prefilter_tolerance,
                           workers=args.workers, progress=progress)


def _decoder_from_args(args: argparse.Namespace, keep_iterations: bool = False) -> QuadtreeDecoder:
    return QuadtreeDecoder(args.epsilon, args.max_iterations, workers=args.decode_workers,
                           keep_iterations=keep_iterations)


def _read_codebook(path: str) -> Codebook:
    with open(path, "rb") as f:
        data = f.read()
    if data.startswith(serialization.QFIC_MAGIC):
        return serialization.decode(data)
    return json_serialization.decode(data)


def _crop(pixels: np.ndarray, side: int) -> np.ndarray:
    height = pixels.shape[0] - pixels.shape[0] % side
    width = pixels.shape[1] - pixels.shape[1] % side
    if (height, width) != pixels.shape[:2]:
        logger.warning("Cropping image from %dx%d to %dx%d", pixels.shape[1], pixels.shape[0], width, height)
    return pixels[:height, :width]


def compress(args: argparse.Namespace):
    pixels = load_pixels(args.input_path, color=args.color)
    if args.crop:
        pixels = _crop(pixels, args.max_range_side)
    logger.info("Image width: %d, height: %d", pixels.shape[1], pixels.shape[0])

    progress_bar = None
    progress = None
    if args.progress:
        progress_bar = tqdm(total=pixels.shape[0] * pixels.shape[1] * (pixels.shape[2] if pixels.ndim == 3 else 1),
                            desc="Mapping blocks", unit="px")

        def progress(covered: int, total: int):
            progress_bar.update(covered - progress_bar.n)

    start = time()
    try:
        codebook = _encoder_from_args(args, progress).encode(pixels)
    finally:
        if progress_bar is not None:
            progress_bar.close()
    logger.info("Encoding time: %.2fs, %d transform codes", time() - start, len(codebook.codes))

    if args.format == "json":
        size = json_serialization.serialize(codebook, args.output_path)
    else:
        size = serialization.QuadtreeSerializer().serialize(codebook, args.output_path)
    print(f"{args.output_path}: {len(codebook.codes)} transform codes, {size} bytes")


def decompress(args: argparse.Namespace):
    codebook = _read_codebook(args.input_path)
    start = time()
    result = _decoder_from_args(args, keep_iterations=args.keep).decode(codebook)
    logger.info("Decoding time: %.2fs", time() - start)
    save_pixels(result.to_pixels(), args.output_path)

    if args.keep:
        stem, ext = os.path.splitext(args.output_path)
        for i in range(result.iterations):
            snapshots = [c.snapshots[min(i, len(c.snapshots) - 1)].to_pixels() for c in result.channels]
            pixels = snapshots[0] if len(snapshots) == 1 else np.stack(snapshots, axis=-1)
            save_pixels(pixels, f"{stem}.{i}{ext or '.png'}")
    print(f"{args.output_path}: {result.state.name.lower()} after {result.iterations} iterations")


def info(args: argparse.Namespace):
    codebook = _read_codebook(args.input_path)
    sides: dict[int, int] = {}
    for code in codebook.codes:
        sides[code.range_block.side] = sides.get(code.range_block.side, 0) + 1
    print(f"size: {codebook.width}x{codebook.height}, channels: {codebook.channels}")
    print(f"transform codes: {len(codebook.codes)}, max |scale|: {codebook.max_scale:.4f}")
    for side in sorted(sides):
        print(f"  range side {side}: {sides[side]}")


def demo(args: argparse.Namespace):
    os.makedirs(args.output_dir, exist_ok=True)
    images = {
        "circle": generate.circle(args.size, args.size / 4),
        "square": generate.square(args.size, args.size // 2),
    }
    encoder = _encoder_from_args(args)
    decoder = _decoder_from_args(args)
    for name, pixels in images.items():
        codebook = encoder.encode(pixels)
        result = decoder.decode(codebook)
        save_pixels(pixels, os.path.join(args.output_dir, f"{name}.png"))
        save_pixels(result.to_pixels(), os.path.join(args.output_dir, f"{name}.decoded.png"))
        size = serialization.QuadtreeSerializer().serialize(codebook, os.path.join(args.output_dir, f"{name}.qfic"))
        print(f"{name}: {len(codebook.codes)} codes, {size} bytes, "
              f"psnr {psnr(pixels, result.to_pixels()):.2f} dB, {result.iterations} iterations")


COMMANDS = {
    "compress": compress,
    "decompress": decompress,
    "info": info,
    "demo": demo,
}


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    level = logging.WARNING if args.verbose == 0 else logging.INFO if args.verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        COMMANDS[args.command](args)
    except (FractalError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
