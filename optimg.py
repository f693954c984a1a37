#!/usr/bin/env python3
"""
optimg - Resize and Transcode a Single Image for Web Delivery
==============================================================

Purpose
-------
Shrink one image for web/client delivery by:
- reconciling the sizing flags (explicit size, percentage, max width/height,
  longest/shortest side) into one target size and resize mode,
- resizing and re-encoding through Pillow (format follows the output extension),
- protecting an existing destination unless forced,
- printing a before/after summary.

Dependencies
------------
- Pillow (PIL)

Usage
-----
    optimg -i <input> [-o <output>] [sizing flags] [-stretch] [-f] [-n] [-d]

    Sizing:
        -w, -h          explicit output width / height
        -mw, -mh        maximum output width / height
        -max            maximum length of the longest side
        -min            target length of the shortest side
        -pct            resize to a percentage of the original dimensions

    Options:
        -stretch        stretch to the target box instead of fit-and-crop
        -f              overwrite the output file if it exists
        -n              don't write files; just display results
        -d              print debug messages to stderr
"""
from __future__ import annotations

import argparse
import enum
import logging
import sys
from dataclasses import dataclass, field
from fractions import Fraction
from io import BytesIO
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError


__version__ = "1.0.0"


# -----------------------------
# Errors
# -----------------------------
class OptimgError(Exception):
    """Base class for every failure that ends a run with exit code 1."""


class InputReadError(OptimgError):
    """Input file is missing or unreadable."""


class DecodeError(OptimgError):
    """Input bytes are not a known image format."""


class HeaderError(OptimgError):
    """Image format was recognized but its contents are corrupt or unsupported."""


class CollisionError(OptimgError):
    """Destination exists and overwriting was not requested."""


class RemovalError(OptimgError):
    """Existing destination could not be removed."""


class TransformError(OptimgError):
    """Resize or encode failed."""


class OutputWriteError(OptimgError):
    """Destination could not be written."""


# -----------------------------
# Configuration
# -----------------------------
@dataclass(frozen=True)
class OptimizeConfig:
    """Resolved command-line inputs. Zero means "unset" for every sizing field."""
    input_path: str = ""
    output_path: Optional[str] = None
    width: int = 0
    height: int = 0
    max_width: int = 0
    max_height: int = 0
    max_longest: int = 0
    min_shortest: int = 0
    scale_pct: float = 0.0
    stretch: bool = False
    force: bool = False
    dry_run: bool = False
    debug: bool = False


@dataclass(frozen=True)
class CodecConfig:
    """Limits of the codec working buffers."""
    max_dimension: int = 8192                          # widest/tallest resize target
    max_output_bytes: int = 50 * 1024 * 1024           # encoded output cap


DEFAULT_CODEC_CONFIG = CodecConfig()

# Per-extension encoder settings; unknown extensions use Pillow defaults.
ENCODE_OPTIONS: Dict[str, Dict[str, int]] = {
    ".jpeg": {"quality": 85},
    ".jpg": {"quality": 85},
    ".png": {"compress_level": 7},
    ".webp": {"quality": 85},
}

ANIMATED_FORMATS = {"GIF", "PNG", "WEBP"}


# -----------------------------
# Logging setup
# -----------------------------
logger = logging.getLogger(__name__)


# -----------------------------
# Image model
# -----------------------------
# Supplied percentages are floats; ones derived from a pixel ratio are exact.
Percent = Union[float, Fraction]


class ResizeMode(str, enum.Enum):
    NO_RESIZE = "no-resize"
    FIT = "fit-crop"
    STRETCH = "free-stretch"


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: str = ""
    duration: Optional[float] = None                   # seconds, animated input only

    @property
    def longest(self) -> int:
        return max(self.width, self.height)

    @property
    def shortest(self) -> int:
        return min(self.width, self.height)


@dataclass(frozen=True)
class ResolvedTarget:
    width: int
    height: int
    mode: ResizeMode
    rule: Optional[str] = None                         # name of the scale rule that fired
    scale_pct: Optional[Percent] = None


# -----------------------------
# Dimension resolution
# -----------------------------
@dataclass(frozen=True)
class ScaleRule:
    """A named way of deriving a percentage scale from the image and config."""
    name: str
    compute: Callable[[ImageInfo, OptimizeConfig], Optional[Percent]]
    announce: str = ""


def _max_longest_pct(info: ImageInfo, config: OptimizeConfig) -> Optional[Percent]:
    if config.max_longest > 0 and info.longest > config.max_longest:
        return Fraction(config.max_longest * 100, info.longest)
    return None


def _min_shortest_pct(info: ImageInfo, config: OptimizeConfig) -> Optional[Percent]:
    if config.min_shortest > 0 and info.shortest > config.min_shortest:
        return Fraction(config.min_shortest * 100, info.shortest)
    return None


def _explicit_pct(info: ImageInfo, config: OptimizeConfig) -> Optional[Percent]:
    if config.scale_pct > 0:
        return config.scale_pct
    return None


# Evaluated in order; the first rule producing a percentage wins.
SCALE_RULES: Tuple[ScaleRule, ...] = (
    ScaleRule("max-longest", _max_longest_pct, "Resizing to longest dimension of {config.max_longest} px"),
    ScaleRule("min-shortest", _min_shortest_pct, "Resizing shortest dimension to {config.min_shortest} px"),
    ScaleRule("pct", _explicit_pct),
)

def scale(pct: Percent, size: int) -> int:
    """Pixel length of `size` scaled by `pct` percent, truncated toward zero."""
    return int(size * pct / 100)


def resolve_axis(length: int, scale_pct: Optional[Percent], axis_max: int, explicit: int) -> int:
    """Target length of one axis: percentage, then axis max, then explicit value, then intrinsic."""
    if scale_pct is not None and scale_pct > 0:
        return scale(scale_pct, length)
    if axis_max > 0:
        return axis_max
    if explicit <= 0:
        return length
    return explicit


def resolve_scale(
    info: ImageInfo,
    config: OptimizeConfig,
    rules: Sequence[ScaleRule] = SCALE_RULES,
) -> Tuple[Optional[ScaleRule], Optional[Percent]]:
    for rule in rules:
        pct = rule.compute(info, config)
        if pct is not None and pct > 0:
            return rule, pct
    return None, None


def resolve(
    info: ImageInfo,
    config: OptimizeConfig,
    rules: Sequence[ScaleRule] = SCALE_RULES,
) -> ResolvedTarget:
    """
    Reconcile the sizing flags into a target size and resize mode.

    Pure: neither argument is modified. The resize mode is STRETCH or FIT
    depending on the stretch flag, except when the target equals the intrinsic
    size, which always yields NO_RESIZE.
    """
    rule, pct = resolve_scale(info, config, rules)
    width = resolve_axis(info.width, pct, config.max_width, config.width)
    height = resolve_axis(info.height, pct, config.max_height, config.height)

    mode = ResizeMode.STRETCH if config.stretch else ResizeMode.FIT
    if width == info.width and height == info.height:
        mode = ResizeMode.NO_RESIZE

    return ResolvedTarget(
        width=width,
        height=height,
        mode=mode,
        rule=rule.name if rule else None,
        scale_pct=pct,
    )


# -----------------------------
# Output path handling
# -----------------------------
def default_output_path(input_path: str) -> str:
    """`photo.jpg` -> `photo_opt.jpg`, next to the input."""
    path = Path(input_path)
    return str(path.with_name(f"{path.stem}_opt{path.suffix}"))


def resolve_output_path(input_path: str, explicit_output: Optional[str] = None) -> str:
    if explicit_output:
        return explicit_output
    return default_output_path(input_path)


def validate_output_path(path: str, force: bool) -> bool:
    """
    Make sure the destination can be freshly written.

    Without `force` an existing file raises CollisionError. With `force` the
    file is removed in a single unlink; a file that is already gone counts as
    success. Returns True when an existing file was removed.
    """
    target = Path(path)
    if not force:
        if target.exists():
            raise CollisionError(f"output filename {path} exists. To overwrite, use -f to force.")
        return False

    try:
        target.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        raise RemovalError(f"unable to remove existing file {path}; aborting.") from e
    return True


# -----------------------------
# Codec (Pillow)
# -----------------------------
# EXIF orientations that rotate by 90 or 270 degrees.
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}
_EXIF_ORIENTATION_TAG = 0x0112


@dataclass(frozen=True)
class TransformOptions:
    format: str
    width: int
    height: int
    mode: ResizeMode
    normalize_orientation: bool = True
    encode_options: Mapping[str, int] = field(default_factory=dict)


class DecodedImage:
    """Handle on a decoded input image."""

    def __init__(self, image: Image.Image):
        self.image = image

    def header(self) -> Tuple[int, int]:
        """Width and height as displayed, i.e. after EXIF orientation."""
        try:
            self.image.load()
        except (OSError, SyntaxError, ValueError) as e:
            raise HeaderError(f"error reading image header: {e}") from e

        width, height = self.image.size
        if width <= 0 or height <= 0:
            raise HeaderError(f"error reading image header: invalid dimensions {width}x{height}")
        if self.orientation() in _TRANSPOSED_ORIENTATIONS:
            width, height = height, width
        return width, height

    def orientation(self) -> int:
        try:
            return int(self.image.getexif().get(_EXIF_ORIENTATION_TAG, 1))
        except (TypeError, ValueError):
            return 1

    def description(self) -> str:
        return self.image.format or ""

    @property
    def frame_count(self) -> int:
        return int(getattr(self.image, "n_frames", 1))

    def duration(self) -> Optional[float]:
        """Total animation length in seconds, None for still images."""
        if self.frame_count <= 1:
            return None
        total_ms = 0
        for frame in ImageSequence.Iterator(self.image):
            total_ms += int(frame.info.get("duration", 0) or 0)
        self.image.seek(0)
        return total_ms / 1000.0


def output_format(output_path: str, fallback: str) -> str:
    """Pillow format name for the output extension; unknown extensions keep `fallback`."""
    ext = Path(output_path).suffix.lower()
    return Image.registered_extensions().get(ext) or fallback


def encode_options_for(output_path: str) -> Dict[str, int]:
    return dict(ENCODE_OPTIONS.get(Path(output_path).suffix.lower(), {}))


def fit_and_crop(image: Image.Image, target_size: Tuple[int, int]) -> Image.Image:
    """Resize to cover the target box while preserving aspect ratio, then center-crop."""
    tw, th = target_size
    aspect_ratio = image.width / image.height
    target_ratio = tw / th

    if aspect_ratio > target_ratio:
        # Wider than target: fit height, crop width
        new_height = th
        new_width = max(tw, int(round(new_height * aspect_ratio)))
    else:
        # Taller than target: fit width, crop height
        new_width = tw
        new_height = max(th, int(round(new_width / aspect_ratio)))

    image = image.resize((new_width, new_height), Image.Resampling.LANCZOS)
    left = max(0, (new_width - tw) // 2)
    top = max(0, (new_height - th) // 2)
    return image.crop((left, top, left + tw, top + th))


def flatten_alpha(image: Image.Image) -> Image.Image:
    """Composite transparency onto white; JPEG has no alpha channel."""
    if image.mode == "P":
        image = image.convert("RGBA")
    if image.mode in ("RGBA", "LA"):
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image, mask=image.getchannel("A"))
        return background
    if image.mode not in ("RGB", "L", "CMYK"):
        return image.convert("RGB")
    return image


class PillowCodec:
    """Decode probe and resize/encode pipeline backed by Pillow."""

    def __init__(self, config: CodecConfig = DEFAULT_CODEC_CONFIG):
        self.config = config

    def decode(self, data: bytes) -> DecodedImage:
        # Only the magic bytes and basic header are checked here; pixel data is
        # validated by DecodedImage.header().
        try:
            image = Image.open(BytesIO(data))
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as e:
            raise DecodeError(f"error decoding image: {e}") from e
        return DecodedImage(image)

    def _check_target(self, options: TransformOptions) -> None:
        if options.width <= 0 or options.height <= 0:
            raise TransformError(f"error transforming image: invalid target dimensions {options.width}x{options.height}")
        limit = self.config.max_dimension
        if options.width > limit or options.height > limit:
            raise TransformError(
                f"error transforming image: requested dimensions {options.width}x{options.height} "
                f"exceed maximum working size of {limit}x{limit}"
            )

    def _render_frame(self, frame: Image.Image, options: TransformOptions, mode: Optional[str] = None) -> Image.Image:
        if options.normalize_orientation:
            frame = ImageOps.exif_transpose(frame)
        if mode and frame.mode != mode:
            frame = frame.convert(mode)

        size = (options.width, options.height)
        if options.mode == ResizeMode.FIT and frame.size != size:
            frame = fit_and_crop(frame, size)
        elif options.mode == ResizeMode.STRETCH and frame.size != size:
            frame = frame.resize(size, Image.Resampling.LANCZOS)

        if options.format == "JPEG":
            frame = flatten_alpha(frame)
        elif frame.mode == "CMYK":
            frame = frame.convert("RGB")
        return frame

    def transform(self, decoded: DecodedImage, options: TransformOptions) -> bytes:
        """Resize and encode `decoded` according to `options`, returning the encoded bytes."""
        self._check_target(options)
        logger.debug(f"Transform options: {options}")

        source = decoded.image
        buffer = BytesIO()
        try:
            if decoded.frame_count > 1 and options.format in ANIMATED_FORMATS:
                frames: List[Image.Image] = []
                durations: List[int] = []
                for frame in ImageSequence.Iterator(source):
                    durations.append(int(frame.info.get("duration", 0) or 0))
                    frames.append(self._render_frame(frame.copy(), options, mode="RGBA"))
                source.seek(0)
                frames[0].save(
                    buffer,
                    format=options.format,
                    save_all=True,
                    append_images=frames[1:],
                    duration=durations,
                    loop=int(source.info.get("loop", 0)),
                    **options.encode_options,
                )
            else:
                frame = self._render_frame(source, options)
                frame.save(buffer, format=options.format, **options.encode_options)
        except (OSError, ValueError, KeyError) as e:
            raise TransformError(f"error transforming image: {e}") from e

        data = buffer.getvalue()
        if len(data) > self.config.max_output_bytes:
            raise TransformError(
                f"error transforming image: encoded image of {len(data)} bytes exceeds output buffer of {self.config.max_output_bytes} bytes"
            )
        return data


# -----------------------------
# Reporting
# -----------------------------
_UNITS = ("", "K", "M", "G", "T", "P", "E", "Z")


def humanize(num_bytes: int) -> str:
    """Byte count in 1024-based units: 1536 -> '1.5KB'."""
    num = float(num_bytes)
    for unit in _UNITS:
        if num < 1024.0:
            return f"{num:3.1f}{unit}B"
        num /= 1024.0
    return f"{num:.1f}YB"


def size_reduction(input_size: int, output_size: int) -> float:
    """Percent saved; negative when the output grew."""
    if input_size <= 0:
        return 0.0
    return 100.0 - (output_size / input_size * 100)


@dataclass(frozen=True)
class SizeReport:
    input_path: str
    output_path: str
    input_width: int
    input_height: int
    output_width: int
    output_height: int
    input_bytes: int
    output_bytes: int

    @property
    def reduction(self) -> float:
        return size_reduction(self.input_bytes, self.output_bytes)


def align_columns(rows: Sequence[Sequence[str]], padding: int = 4) -> List[str]:
    """
    Left-align cells into columns. The last cell of each row is left as-is and
    does not widen its column.
    """
    widths: List[int] = []
    for row in rows:
        for i, cell in enumerate(row[:-1]):
            if i == len(widths):
                widths.append(0)
            widths[i] = max(widths[i], len(cell))

    lines = []
    for row in rows:
        cells = [cell.ljust(widths[i] + padding) for i, cell in enumerate(row[:-1])]
        cells.append(row[-1])
        lines.append("".join(cells))
    return lines


def format_report(report: SizeReport) -> str:
    rows = [
        ("File Name", report.input_path, " -> ", report.output_path),
        (
            "File Dimensions",
            f"{report.input_width} x {report.input_height} px",
            " -> ",
            f"{report.output_width} x {report.output_height} px",
        ),
        ("File Size", humanize(report.input_bytes), " -> ", humanize(report.output_bytes)),
        ("Size Reduction", f"{report.reduction:.1f}%"),
    ]
    return "\n".join(align_columns(rows))


# -----------------------------
# Pipeline
# -----------------------------
@dataclass(frozen=True)
class OptimizeResult:
    info: ImageInfo
    target: ResolvedTarget
    output_path: str
    data: bytes
    report: SizeReport
    written: bool = False
    replaced: bool = False


def read_input(path: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise InputReadError(f"failed to read input file, {e}") from e


def probe(codec: PillowCodec, data: bytes) -> Tuple[DecodedImage, ImageInfo]:
    decoded = codec.decode(data)
    width, height = decoded.header()
    info = ImageInfo(
        width=width,
        height=height,
        format=decoded.description(),
        duration=decoded.duration(),
    )
    return decoded, info


def build_transform_options(
    target: ResolvedTarget,
    output_path: str,
    source_format: str,
) -> TransformOptions:
    return TransformOptions(
        format=output_format(output_path, source_format),
        width=target.width,
        height=target.height,
        mode=target.mode,
        normalize_orientation=True,
        encode_options=encode_options_for(output_path),
    )


def write_output(path: str, data: bytes) -> None:
    try:
        with open(path, "wb") as f:
            f.write(data)
    except OSError as e:
        raise OutputWriteError(f"error writing resized image: {e}") from e


def optimize(config: OptimizeConfig, codec: Optional[PillowCodec] = None) -> OptimizeResult:
    """
    Run one resize/transcode. Raises an OptimgError subclass on the first failure.

    Dry-run computes everything, including the encoded bytes, but never touches
    the destination.
    """
    codec = codec or PillowCodec()
    logger.debug(f"Command line options: {config}")

    input_data = read_input(config.input_path)
    decoded, info = probe(codec, input_data)
    logger.debug(f"Input image: {info}")

    if info.duration:
        print(f"duration: {info.duration:.2f} s")

    target = resolve(info, config)
    logger.debug(f"Resolved target: {target}")
    for rule in SCALE_RULES:
        if rule.name == target.rule and rule.announce:
            print(rule.announce.format(config=config))

    output_path = resolve_output_path(config.input_path, config.output_path)

    replaced = False
    if config.dry_run:
        print("**Displaying results only**")
    else:
        replaced = validate_output_path(output_path, config.force)
        if replaced:
            print("output file exists; replacing due to -f.")

    options = build_transform_options(target, output_path, info.format)
    output_data = codec.transform(decoded, options)

    if not config.dry_run:
        write_output(output_path, output_data)

    logger.debug(f"Input buf size: {len(input_data)}")
    logger.debug(f"Output buf size: {len(output_data)}")

    report = SizeReport(
        input_path=config.input_path,
        output_path=output_path,
        input_width=info.width,
        input_height=info.height,
        output_width=target.width,
        output_height=target.height,
        input_bytes=len(input_data),
        output_bytes=len(output_data),
    )
    return OptimizeResult(
        info=info,
        target=target,
        output_path=output_path,
        data=output_data,
        report=report,
        written=not config.dry_run,
        replaced=replaced,
    )


# -----------------------------
# Main entry point
# -----------------------------
def build_parser() -> argparse.ArgumentParser:
    # -h is the height flag, so help lives on --help only.
    parser = argparse.ArgumentParser(
        prog="optimg",
        description="Resize and transcode a single image for web delivery.",
        add_help=False,
    )
    parser.add_argument("--help", action="help", help="Show this help message and exit.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-i", dest="input_path", default="", help="name of input file to resize/transcode")
    parser.add_argument("-o", dest="output_path", default="", help="name of output file, also determines output type")
    parser.add_argument("-w", dest="width", type=int, default=0, help="width of output file")
    parser.add_argument("-h", dest="height", type=int, default=0, help="height of output file")
    parser.add_argument("-mw", dest="max_width", type=int, default=0, help="maximum width of output file")
    parser.add_argument("-mh", dest="max_height", type=int, default=0, help="maximum height of output file")
    parser.add_argument("-max", dest="max_longest", type=int, default=0, help="maximum length of either dimension")
    parser.add_argument("-min", dest="min_shortest", type=int, default=0, help="minimum length of shortest side")
    parser.add_argument("-pct", dest="scale_pct", type=float, default=0.0, help="resize to pct of original dimensions")
    parser.add_argument("-stretch", action="store_true", help="perform stretching resize instead of cropping")
    parser.add_argument("-f", dest="force", action="store_true", help="overwrite output file if it exists")
    parser.add_argument("-d", dest="debug", action="store_true", help="print debug messages to console")
    parser.add_argument("-n", dest="dry_run", action="store_true", help="don't write files; just display results")
    parser.add_argument("extra", nargs="*", help=argparse.SUPPRESS)
    return parser


def config_from_args(args: argparse.Namespace) -> OptimizeConfig:
    return OptimizeConfig(
        input_path=args.input_path,
        output_path=args.output_path or None,
        width=args.width,
        height=args.height,
        max_width=args.max_width,
        max_height=args.max_height,
        max_longest=args.max_longest,
        min_shortest=args.min_shortest,
        scale_pct=args.scale_pct,
        stretch=args.stretch,
        force=args.force,
        dry_run=args.dry_run,
        debug=args.debug,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = config_from_args(args)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    if args.extra:
        logger.debug(f"Ignoring additional arguments: {args.extra}")

    if not config.input_path:
        print("No input filename provided, quitting.")
        parser.print_usage(sys.stdout)
        return 1

    try:
        result = optimize(config)
    except OptimgError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.critical(f"Fatal: Unexpected error: {e}", exc_info=True)
        return 3

    print(format_report(result.report))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
