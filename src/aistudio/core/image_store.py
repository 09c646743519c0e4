"""Durable storage for uploaded generation images.

Images arrive as ``data:image/<type>;base64,<body>`` URLs.  :class:`ImageStore`
decodes them, normalises them with Pillow and writes them to a per-user
partition of the uploads directory::

    uploads/
        3/
            9f0c2a1e....jpg
        7/
            41b7d2c0....png

Normalisation rules
-------------------
- Images wider than ``max_width`` are downscaled, aspect ratio preserved.
  Images are never upscaled.
- Every decodable image is re-encoded as JPEG (``jpeg_quality``), so stored
  files share one format.
- If Pillow cannot decode or re-encode the image the original bytes are
  stored unmodified instead.  The request still succeeds.

Image references
----------------
``persist()`` returns a *reference* of the form ``"{user_id}/{filename}"``.
References never contain the HTTP prefix under which files are served;
:func:`reference_to_url` and :func:`url_to_reference` are the only places
that know about it.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import mimetypes
import os
import re
import tempfile
import uuid
from pathlib import Path, PurePosixPath

from PIL import Image, ImageOps

from aistudio.core.errors import InvalidPayload, ProcessingError

logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(
    r"^data:(?P<mime>image/[A-Za-z0-9.+-]+);base64,(?P<body>[A-Za-z0-9+/=\s]+)$",
    re.DOTALL,
)

_FALLBACK_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def is_data_url(value: str) -> bool:
    """Return ``True`` if *value* is structurally a base64 image data URL."""
    return bool(value) and DATA_URL_PATTERN.match(value) is not None


def decode_data_url(value: str) -> tuple[str, bytes]:
    """Split a data URL into its MIME type and decoded bytes.

    Args:
        value: ``data:image/<type>;base64,<body>`` string.

    Returns:
        Tuple of ``(mime_type, raw_bytes)``.

    Raises:
        InvalidPayload: If the URL is malformed, the body is not valid
            base64, or it decodes to zero bytes.
    """
    match = DATA_URL_PATTERN.match(value or "")
    if match is None:
        raise InvalidPayload("imageUpload must be a base64 image data URL")

    body = re.sub(r"\s+", "", match.group("body"))
    try:
        raw = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidPayload("imageUpload is not valid base64") from e

    if not raw:
        raise InvalidPayload("imageUpload is empty")

    return match.group("mime").lower(), raw


def reference_to_url(image_ref: str, prefix: str = "/uploads") -> str:
    """Map a stored image reference to its client-facing URL."""
    return f"{prefix.rstrip('/')}/{image_ref.lstrip('/')}"


def url_to_reference(url: str, prefix: str = "/uploads") -> str:
    """Map a client-facing URL back to the stored image reference.

    Raises:
        ValueError: If *url* is not under *prefix*.
    """
    base = prefix.rstrip("/") + "/"
    if not url.startswith(base):
        raise ValueError(f"URL {url!r} is not under {base!r}")
    return url[len(base) :]


def make_reference(user_id: int | str, filename: str) -> str:
    """Build the reference for *filename* in *user_id*'s partition.

    Raises:
        ValueError: If the result is not a well-formed reference.
    """
    image_ref = f"{user_id}/{filename}"
    parse_reference(image_ref)
    return image_ref


def parse_reference(image_ref: str) -> tuple[int, str]:
    """Split a reference into ``(user_id, filename)``.

    References are exactly two path components: a numeric user id and a
    plain filename.  Anything else (absolute paths, ``..``, nested
    directories) is rejected.

    Raises:
        ValueError: If the reference is malformed.
    """
    path = PurePosixPath(image_ref)
    parts = path.parts
    if path.is_absolute() or len(parts) != 2:
        raise ValueError(f"Malformed image reference: {image_ref!r}")

    user_part, filename = parts
    if not user_part.isdigit() or filename in (".", "..") or filename.startswith("."):
        raise ValueError(f"Malformed image reference: {image_ref!r}")

    return int(user_part), filename


class ImageStore:
    """Write, locate and remove image files under a per-user directory tree.

    Attributes:
        root: Uploads root directory.
        max_width: Width above which images are downscaled.
        jpeg_quality: JPEG quality used for re-encoding.
        max_bytes: Maximum accepted decoded payload size.
    """

    def __init__(
        self,
        root: Path,
        *,
        max_width: int = 1920,
        jpeg_quality: int = 90,
        max_bytes: int = 12 * 1024 * 1024,
    ) -> None:
        self.root = Path(root)
        self.max_width = max_width
        self.jpeg_quality = jpeg_quality
        self.max_bytes = max_bytes
        self.root.mkdir(parents=True, exist_ok=True)

    # -- Write path ---------------------------------------------------------

    def persist(self, encoded_payload: str, user_id: int) -> str:
        """Decode, normalise and store an uploaded image.

        Exactly one file exists for the returned reference when this method
        returns, and no file (not even a temporary one) is left behind when
        it raises.

        Args:
            encoded_payload: ``data:image/...;base64,...`` string.
            user_id: Owner of the image; selects the storage partition.

        Returns:
            Image reference ``"{user_id}/{filename}"``.

        Raises:
            InvalidPayload: If the payload is malformed or too large.
            ProcessingError: If the file cannot be written.
        """
        mime, raw = decode_data_url(encoded_payload)
        if len(raw) > self.max_bytes:
            raise InvalidPayload(f"imageUpload exceeds {self.max_bytes} bytes")

        normalised = self._normalise(raw)
        if normalised is not None:
            data, extension = normalised, ".jpg"
        else:
            data, extension = raw, _extension_for(mime)

        filename = f"{uuid.uuid4().hex}{extension}"
        image_ref = make_reference(int(user_id), filename)
        self._write_atomic(self.root / str(int(user_id)), filename, data)

        logger.debug(
            f"Stored {image_ref} ({len(data)} bytes, {'normalised' if normalised else 'original'})"
        )
        return image_ref

    def _normalise(self, raw: bytes) -> bytes | None:
        """Downscale and re-encode *raw* as JPEG.

        Returns:
            JPEG bytes, or ``None`` when Pillow cannot process the image and
            the caller should keep the original bytes.
        """
        try:
            with Image.open(io.BytesIO(raw)) as source:
                source.load()
                # Apply the EXIF orientation; the re-encoded JPEG carries no EXIF.
                image = ImageOps.exif_transpose(source)

                if image.width > self.max_width:
                    height = max(1, round(image.height * self.max_width / image.width))
                    image = image.resize((self.max_width, height), Image.Resampling.LANCZOS)

                # JPEG has no alpha channel or palette.
                if image.mode not in ("RGB", "L"):
                    image = image.convert("RGB")

                buffer = io.BytesIO()
                image.save(buffer, format="JPEG", quality=self.jpeg_quality)
                return buffer.getvalue()

        except Exception as e:
            logger.warning(f"Image normalisation failed, storing original bytes: {e}")
            return None

    def _write_atomic(self, directory: Path, filename: str, data: bytes) -> None:
        """Write *data* to ``directory/filename`` via a temp file and rename."""
        tmp_path: str | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".upload-", suffix=".tmp")
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, directory / filename)
            tmp_path = None
        except OSError as e:
            logger.error(f"Failed to write image {directory / filename}: {e}")
            raise ProcessingError("Could not store image") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    # -- Read / compensation path -------------------------------------------

    def resolve(self, image_ref: str) -> Path:
        """Return the absolute path for a reference.

        Raises:
            ValueError: If the reference is malformed or escapes the root.
        """
        user_id, filename = parse_reference(image_ref)
        root = self.root.resolve()
        path = (root / str(user_id) / filename).resolve()
        if path.parent.parent != root:
            raise ValueError(f"Image reference escapes storage root: {image_ref!r}")
        return path

    def exists(self, image_ref: str | None) -> bool:
        """Return ``True`` if the referenced file is present on disk.

        Malformed references are reported as missing.
        """
        if not image_ref:
            return False
        try:
            return self.resolve(image_ref).is_file()
        except ValueError:
            return False

    def delete(self, image_ref: str) -> bool:
        """Remove the referenced file.

        Returns:
            ``True`` if a file was removed, ``False`` if none existed.
        """
        try:
            path = self.resolve(image_ref)
        except ValueError:
            logger.warning(f"Refusing to delete malformed reference {image_ref!r}")
            return False

        try:
            path.unlink()
        except FileNotFoundError:
            return False

        logger.info(f"Deleted image {image_ref}")
        return True

    def count_files(self, user_id: int | None = None) -> int:
        """Count stored images (excluding temp files), optionally for one user."""
        base = self.root / str(user_id) if user_id is not None else self.root
        if not base.exists():
            return 0
        pattern = "*" if user_id is not None else "*/*"
        return sum(1 for p in base.glob(pattern) if p.is_file() and not p.name.startswith("."))


def _extension_for(mime: str) -> str:
    """Return a file extension for an image MIME type."""
    if mime in _FALLBACK_EXTENSIONS:
        return _FALLBACK_EXTENSIONS[mime]
    return mimetypes.guess_extension(mime) or ".img"
