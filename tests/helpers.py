"""Image and filesystem helpers shared by the test modules."""

import base64
import io
import struct
import zlib
from pathlib import Path

from PIL import Image


def make_data_url(
    width: int = 64,
    height: int = 48,
    fmt: str = "PNG",
    mode: str = "RGB",
    color=(200, 30, 30),
) -> str:
    """Render a solid-colour image and return it as a data URL."""
    image = Image.new(mode, (width, height), color=color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    mime = "image/jpeg" if fmt == "JPEG" else f"image/{fmt.lower()}"
    return f"data:{mime};base64,{base64.b64encode(buffer.getvalue()).decode('ascii')}"


def count_files(root: Path) -> int:
    """Count stored images below *root*, ignoring hidden temp files."""
    if not root.exists():
        return 0
    return sum(1 for p in root.rglob("*") if p.is_file() and not p.name.startswith("."))


def _png_chunk(chunk_type: bytes, data: bytes) -> bytes:
    crc = zlib.crc32(chunk_type + data) & 0xFFFFFFFF
    return struct.pack(">I", len(data)) + chunk_type + data + struct.pack(">I", crc)


def make_broken_png() -> bytes:
    """A PNG that opens but fails while decoding pixel data.

    The compressed pixels are split over two chunks and the second one has
    an invalid chunk type, so Pillow only notices after ``Image.open()``.
    """
    image = Image.frombytes("RGB", (32, 32), bytes(range(256)) * 12)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    png = buffer.getvalue()

    idat = png.index(b"IDAT") - 4
    (length,) = struct.unpack(">I", png[idat : idat + 4])
    pixels = png[idat + 8 : idat + 8 + length]
    half = len(pixels) // 2
    return (
        png[:idat]
        + _png_chunk(b"IDAT", pixels[:half])
        + _png_chunk(b"\x00\x01\x02\x03", pixels[half:])
        + _png_chunk(b"IEND", b"")
    )


def make_exif_rotated_jpeg(width: int = 40, height: int = 20, orientation: int = 6) -> bytes:
    """A JPEG whose EXIF orientation tag asks viewers to rotate it."""
    exif = Image.Exif()
    exif[0x0112] = orientation
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(10, 120, 200)).save(buffer, format="JPEG", exif=exif)
    return buffer.getvalue()


def to_data_url(raw: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"
