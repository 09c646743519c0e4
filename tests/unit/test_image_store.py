"""Tests for aistudio.core.image_store — decoding, normalising and storing images.

Tests cover:
- Data URL parsing and rejection of malformed payloads.
- Downscaling above the width threshold, never upscaling.
- JPEG re-encoding and the store-original fallback for undecodable bytes.
- Per-user partitions, unique filenames, atomic writes.
- Reference resolution, existence checks and deletion.
- The reference <-> URL mapping.
"""

from __future__ import annotations

import base64
import io
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from aistudio.core.errors import InvalidInput, InvalidPayload, ProcessingError
from aistudio.core.image_store import (
    ImageStore,
    decode_data_url,
    is_data_url,
    make_reference,
    parse_reference,
    reference_to_url,
    url_to_reference,
)
from tests.helpers import (
    count_files,
    make_broken_png,
    make_data_url,
    make_exif_rotated_jpeg,
    to_data_url,
)


class TestDataUrlParsing:
    """Structural checks on ``data:image/...;base64,...`` payloads."""

    def test_valid_png_data_url(self):
        """A PNG data URL should decode to its MIME type and bytes."""
        mime, raw = decode_data_url("data:image/png;base64,AAAA")
        assert mime == "image/png"
        assert raw == b"\x00\x00\x00"

    @pytest.mark.parametrize(
        "value",
        [
            "not-a-data-url",
            "",
            "data:text/plain;base64,AAAA",
            "data:image/png,AAAA",
            "data:image/png;base64,",
            "data:image/png;base64,@@@@",
        ],
    )
    def test_malformed_payloads_rejected(self, value):
        """Anything that is not a base64 image data URL raises InvalidPayload."""
        assert not is_data_url(value) or value.endswith("@@@@")
        with pytest.raises(InvalidPayload):
            decode_data_url(value)

    def test_bad_base64_padding_rejected(self):
        """A body with broken padding should be rejected, not half-decoded."""
        with pytest.raises(InvalidPayload):
            decode_data_url("data:image/png;base64,AAA")

    def test_whitespace_in_body_tolerated(self):
        """Line-wrapped base64 bodies should decode."""
        mime, raw = decode_data_url("data:image/png;base64,AA\nAA")
        assert raw == b"\x00\x00\x00"

    def test_invalid_payload_is_invalid_input(self):
        """InvalidPayload maps to a 400 and carries an imageUpload issue."""
        error = InvalidPayload("bad")
        assert isinstance(error, InvalidInput)
        assert error.status_code == 400
        assert error.issues[0]["field"] == "imageUpload"


class TestPersist:
    """Test ImageStore.persist()."""

    def test_returns_user_scoped_reference(self, image_store: ImageStore):
        """The reference is ``{user_id}/{filename}`` with no URL prefix."""
        ref = image_store.persist(make_data_url(), 7)
        user_part, filename = ref.split("/")
        assert user_part == "7"
        assert filename.endswith(".jpg")
        assert not ref.startswith("/")
        assert (image_store.root / "7" / filename).is_file()

    def test_creates_user_directory(self, image_store: ImageStore):
        """The per-user directory is created on first write."""
        assert not (image_store.root / "42").exists()
        image_store.persist(make_data_url(), 42)
        assert (image_store.root / "42").is_dir()

    def test_filenames_are_unique(self, image_store: ImageStore):
        """Identical uploads never share a filename."""
        payload = make_data_url()
        refs = {image_store.persist(payload, 1) for _ in range(5)}
        assert len(refs) == 5
        assert count_files(image_store.root) == 5

    def test_reencodes_to_jpeg(self, image_store: ImageStore):
        """Decodable images are stored as JPEG."""
        ref = image_store.persist(make_data_url(fmt="PNG"), 1)
        with Image.open(image_store.resolve(ref)) as stored:
            assert stored.format == "JPEG"

    def test_alpha_images_converted(self, image_store: ImageStore):
        """RGBA images lose their alpha channel instead of failing."""
        ref = image_store.persist(make_data_url(mode="RGBA", color=(0, 0, 255, 128)), 1)
        with Image.open(image_store.resolve(ref)) as stored:
            assert stored.format == "JPEG"
            assert stored.mode == "RGB"

    def test_wide_image_downscaled(self, temp_dir: Path):
        """Images wider than max_width are downscaled with aspect ratio kept."""
        store = ImageStore(temp_dir / "img", max_width=100)
        ref = store.persist(make_data_url(width=400, height=200), 1)
        with Image.open(store.resolve(ref)) as stored:
            assert stored.size == (100, 50)

    def test_narrow_image_not_upscaled(self, temp_dir: Path):
        """Images at or below max_width keep their size."""
        store = ImageStore(temp_dir / "img", max_width=100)
        ref = store.persist(make_data_url(width=80, height=60), 1)
        with Image.open(store.resolve(ref)) as stored:
            assert stored.size == (80, 60)

    def test_undecodable_bytes_stored_unmodified(self, image_store: ImageStore):
        """Bytes Pillow cannot read are stored as-is with the MIME extension."""
        ref = image_store.persist("data:image/png;base64,AAAA", 1)
        assert ref.endswith(".png")
        assert image_store.resolve(ref).read_bytes() == b"\x00\x00\x00"

    def test_corrupt_pixel_data_stored_unmodified(self, image_store: ImageStore):
        """A PNG that opens but fails mid-decode falls back to the original bytes."""
        raw = make_broken_png()
        ref = image_store.persist(to_data_url(raw, "image/png"), 1)

        assert ref.endswith(".png")
        assert image_store.resolve(ref).read_bytes() == raw

    def test_exif_orientation_applied(self, image_store: ImageStore):
        """A photo tagged as rotated is stored upright."""
        ref = image_store.persist(to_data_url(make_exif_rotated_jpeg(40, 20), "image/jpeg"), 1)
        with Image.open(image_store.resolve(ref)) as stored:
            assert stored.size == (20, 40)

    def test_oversized_payload_rejected(self, temp_dir: Path):
        """Payloads above max_bytes are rejected and nothing is written."""
        store = ImageStore(temp_dir / "img", max_bytes=10)
        payload = "data:image/png;base64," + base64.b64encode(b"x" * 11).decode()
        with pytest.raises(InvalidPayload):
            store.persist(payload, 1)
        assert count_files(store.root) == 0

    def test_invalid_payload_writes_nothing(self, image_store: ImageStore):
        """A malformed payload leaves the store untouched."""
        with pytest.raises(InvalidPayload):
            image_store.persist("not-a-data-url", 1)
        assert count_files(image_store.root) == 0
        assert not (image_store.root / "1").exists()

    def test_write_failure_leaves_no_file(self, image_store: ImageStore):
        """If the final rename fails, the temp file is removed too."""
        with patch("aistudio.core.image_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(ProcessingError):
                image_store.persist(make_data_url(), 3)

        user_dir = image_store.root / "3"
        assert list(user_dir.iterdir()) == []


class TestReferences:
    """Reference parsing, resolution, existence and deletion."""

    def test_parse_reference(self):
        assert parse_reference("12/abc.jpg") == (12, "abc.jpg")

    def test_make_reference(self):
        assert make_reference(12, "abc.jpg") == "12/abc.jpg"
        assert parse_reference(make_reference(3, "f.png")) == (3, "f.png")

    @pytest.mark.parametrize("filename", ["..", ".upload-x.tmp", "a/b.jpg", ""])
    def test_make_reference_rejects_bad_filename(self, filename):
        with pytest.raises(ValueError):
            make_reference(1, filename)

    @pytest.mark.parametrize(
        "ref",
        ["../etc/passwd", "/1/abc.jpg", "1/../../x.jpg", "abc/def.jpg", "1/2/3.jpg", "1/.hidden"],
    )
    def test_malformed_references_rejected(self, ref):
        with pytest.raises(ValueError):
            parse_reference(ref)

    def test_exists_true_for_stored_image(self, image_store: ImageStore):
        ref = image_store.persist(make_data_url(), 1)
        assert image_store.exists(ref) is True

    def test_exists_false_after_manual_removal(self, image_store: ImageStore):
        """A file removed outside the store is reported as missing."""
        ref = image_store.persist(make_data_url(), 1)
        image_store.resolve(ref).unlink()
        assert image_store.exists(ref) is False

    def test_exists_false_for_bad_reference(self, image_store: ImageStore):
        assert image_store.exists("../../etc/passwd") is False
        assert image_store.exists(None) is False
        assert image_store.exists("") is False

    def test_delete_removes_file(self, image_store: ImageStore):
        ref = image_store.persist(make_data_url(), 1)
        assert image_store.delete(ref) is True
        assert not image_store.exists(ref)

    def test_delete_missing_file(self, image_store: ImageStore):
        assert image_store.delete("1/missing.jpg") is False

    def test_count_files(self, image_store: ImageStore):
        image_store.persist(make_data_url(), 1)
        image_store.persist(make_data_url(), 1)
        image_store.persist(make_data_url(), 2)
        assert image_store.count_files() == 3
        assert image_store.count_files(1) == 2
        assert image_store.count_files(99) == 0


class TestUrlMapping:
    """The single reference <-> URL mapping."""

    def test_reference_to_url(self):
        assert reference_to_url("3/abc.jpg") == "/uploads/3/abc.jpg"

    def test_reference_to_url_custom_prefix(self):
        assert reference_to_url("3/abc.jpg", "/media/") == "/media/3/abc.jpg"

    def test_url_to_reference(self):
        assert url_to_reference("/uploads/3/abc.jpg") == "3/abc.jpg"

    def test_url_to_reference_wrong_prefix(self):
        with pytest.raises(ValueError):
            url_to_reference("/static/3/abc.jpg")

    def test_mapping_is_inverse(self):
        ref = "9/f00.png"
        assert url_to_reference(reference_to_url(ref, "/u"), "/u") == ref


def test_jpeg_payload_roundtrip_size(image_store: ImageStore):
    """A JPEG upload is decoded and stored as a readable JPEG of the same size."""
    ref = image_store.persist(make_data_url(width=33, height=21, fmt="JPEG"), 5)
    with Image.open(io.BytesIO(image_store.resolve(ref).read_bytes())) as stored:
        assert stored.size == (33, 21)
