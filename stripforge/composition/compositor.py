"""Pillow-based panel and strip composition.

Composed images are written to the output directory and addressed by URL
under the service's public /generated/ path. File names are a digest of
the inputs, so composing the same inputs twice yields the same URL.
"""

import base64
import binascii
import hashlib
import io
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote, unquote_to_bytes, urlparse

import httpx
from PIL import Image, UnidentifiedImageError

from stripforge.config import Settings
from stripforge.errors import ImageDecodeError, ImageFetchError
from stripforge.composition.layout import (
    CharacterPlacement,
    StripLayout,
    apply_auto_layout,
    compute_strip_grid,
)

logger = logging.getLogger(__name__)

PlacementInput = Union[CharacterPlacement, str]


class Compositor:
    """Overlays character images on backgrounds and tiles panels into strips."""

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.output_dir = Path(settings.output_dir)
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(settings.fetch_timeout, connect=10.0),
            follow_redirects=True,
        )

    # --- Image sources ---

    def fetch_bytes(self, source: str) -> bytes:
        """Read the raw bytes behind an image reference.

        Supports http(s) URLs, data: URIs, file:// paths and this service's
        own /generated/ URLs.
        """
        if source.startswith("data:"):
            return self._decode_data_uri(source)

        generated_prefix = self.settings.generated_base_url.rstrip("/") + "/"
        if source.startswith(generated_prefix):
            name = source[len(generated_prefix):]
            if "/" in name or name.startswith("."):
                raise ImageFetchError(f"Invalid generated image path: {source}")
            return self._read_file(self.output_dir / name)

        parsed = urlparse(source)
        if parsed.scheme == "file":
            return self._read_file(Path(unquote(parsed.path)))
        if parsed.scheme in ("http", "https"):
            return self._download(source)
        raise ImageFetchError(f"Unsupported image source: {source[:80]}")

    def _download(self, url: str) -> bytes:
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise ImageFetchError(f"Failed to download image {url}: {e}") from e
        if response.status_code != 200:
            raise ImageFetchError(f"Failed to download image {url}: HTTP {response.status_code}")
        return response.content

    def _read_file(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise ImageFetchError(f"Failed to read image {path}: {e}") from e

    def _decode_data_uri(self, uri: str) -> bytes:
        header, sep, payload = uri.partition(",")
        if not sep:
            raise ImageDecodeError("Malformed data URI: missing ','")
        if header.endswith(";base64"):
            try:
                return base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ImageDecodeError(f"Invalid base64 in data URI: {e}") from e
        return unquote_to_bytes(payload)

    def load_image(self, source: str) -> Image.Image:
        data = self.fetch_bytes(source)
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise ImageDecodeError(f"Unsupported image data from {source[:80]}: {e}") from e
        return image.convert("RGBA")

    # --- Output ---

    def _digest(self, kind: str, payload: dict) -> str:
        encoded = json.dumps({"kind": kind, **payload}, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def _save(self, image: Image.Image, filename: str) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / filename
        fd, tmp_name = tempfile.mkstemp(dir=str(self.output_dir), prefix=".compose.", suffix=".png")
        try:
            with os.fdopen(fd, "wb") as f:
                image.save(f, format="PNG")
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return f"{self.settings.generated_base_url}/{filename}"

    @staticmethod
    def _filename(prefix: str, digest: str, name: Optional[str]) -> str:
        if name:
            safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in name)
            return f"{safe}-{digest[:12]}.png"
        return f"{prefix}-{digest[:16]}.png"

    # --- Composition ---

    def compose_panel(
        self,
        background_url: str,
        characters: list[PlacementInput],
        *,
        name: Optional[str] = None,
    ) -> str:
        """Overlay characters on a background and return the composed URL.

        Plain strings are treated as unpositioned character images. Raises
        ImageFetchError or ImageDecodeError if any source is unusable.
        """
        width = self.settings.panel_width
        height = self.settings.panel_height
        placements = [
            CharacterPlacement(image_url=c) if isinstance(c, str)
            else CharacterPlacement(c.image_url, c.x, c.y, c.scale, c.z_index)
            for c in characters
        ]
        apply_auto_layout(placements, width, height)

        digest = self._digest("panel", {
            "background": background_url,
            "characters": [
                [p.image_url, p.x, p.y, p.scale, p.z_index] for p in placements
            ],
            "size": [width, height],
            "character_scale": self.settings.character_scale,
        })

        canvas = self.load_image(background_url).resize((width, height), Image.LANCZOS)

        for placement in sorted(placements, key=lambda p: p.z_index):
            character = self.load_image(placement.image_url)
            factor = placement.scale * self.settings.character_scale
            target_w = max(1, round(character.width * factor))
            target_h = max(1, round(character.height * factor))
            character = character.resize((target_w, target_h), Image.LANCZOS)
            left = round(placement.x - target_w / 2)
            top = round(placement.y - target_h / 2)
            canvas.paste(character, (left, top), character)

        url = self._save(canvas, self._filename("panel", digest, name))
        logger.info(f"Composed panel with {len(placements)} characters -> {url}")
        return url

    def compose_strip(
        self,
        panel_urls: list[str],
        layout: Optional[StripLayout] = None,
        *,
        name: Optional[str] = None,
    ) -> str:
        """Tile panels into one strip image and return its URL."""
        if not panel_urls:
            raise ValueError("compose_strip needs at least one panel")
        layout = layout or StripLayout(
            panel_width=self.settings.panel_width,
            panel_height=self.settings.panel_height,
            gap=self.settings.panel_gap,
            padding=self.settings.strip_padding,
            max_width=self.settings.strip_max_width,
            max_height=self.settings.strip_max_height,
        )
        grid = compute_strip_grid(len(panel_urls), layout)

        digest = self._digest("strip", {
            "panels": list(panel_urls),
            "grid": [grid.cols, grid.rows, grid.cell_width, grid.cell_height, grid.gap, grid.padding],
        })

        canvas = Image.new("RGB", (grid.width, grid.height), "white")
        for index, url in enumerate(panel_urls):
            panel = self.load_image(url).resize((grid.cell_width, grid.cell_height), Image.LANCZOS)
            canvas.paste(panel, grid.cell_origin(index), panel)

        url = self._save(canvas, self._filename("strip", digest, name))
        logger.info(
            f"Composed strip of {len(panel_urls)} panels "
            f"({grid.cols}x{grid.rows}, {grid.width}x{grid.height}) -> {url}"
        )
        return url

    def close(self) -> None:
        self._client.close()
