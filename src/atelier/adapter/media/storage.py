"""Image reference resolution and artifact output.

Storage itself is an external collaborator; this adapter only:
- resolves request image references (data URIs, bare base64, local paths)
- writes result images under an artifacts directory and returns their URL,
  or returns data URIs when no directory is configured
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from atelier.models.domain import ImagePayload

logger = logging.getLogger(__name__)

_EXT_BY_MIME = {
    "image/png": "png",
    "image/webp": "webp",
    "image/jpeg": "jpg",
}
_MIME_BY_EXT = {ext: mime for mime, ext in _EXT_BY_MIME.items()}
_MIME_BY_EXT["jpeg"] = "image/jpeg"


class ImageResolver:
    """Resolve image references found in requests to payloads.

    Accepts ``data:`` URIs and local file paths (optionally ``file://``),
    relative paths being resolved against ``base_dir``.
    """

    def __init__(self, base_dir: Path | None = None):
        self.base_dir = Path(base_dir) if base_dir else None

    def resolve(self, reference: str) -> ImagePayload:
        """Load the image behind ``reference``.

        Raises:
            FileNotFoundError: If a path reference does not exist.
        """
        if reference.startswith("data:"):
            return ImagePayload.from_data_uri(reference)

        path = Path(reference.removeprefix("file://"))
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        if not path.exists():
            raise FileNotFoundError(f"Image not found: {reference}")

        mime = _MIME_BY_EXT.get(path.suffix.lower().lstrip("."), "image/png")
        return ImagePayload(data=path.read_bytes(), mime_type=mime)

    def resolve_source(self, source_image_id: str, source_image_data: str | None) -> ImagePayload:
        """Inline data wins over the id, as in the request contract."""
        if source_image_data:
            return ImagePayload.from_data_uri(source_image_data)
        return self.resolve(source_image_id)


class ArtifactStore:
    """Write result images and hand back their URL.

    Files are content-addressed (sha256 prefix), so storing the same image
    twice yields the same URL.
    """

    def __init__(self, root: Path | None = None, url_prefix: str = "/artifacts"):
        """Initialize store.

        Args:
            root: Output directory. None means results are returned inline
                as data URIs.
            url_prefix: URL prefix under which ``root`` is served.
        """
        self.root = Path(root) if root else None
        self.url_prefix = url_prefix.rstrip("/")
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)

    def save(self, payload: ImagePayload, namespace: str, name: str) -> str:
        """Persist ``payload`` and return its URL.

        Args:
            payload: Encoded image.
            namespace: Sub-directory, e.g. the idempotency key or job id.
            name: Logical name (stage or mask name).
        """
        if self.root is None:
            return payload.to_data_uri()

        digest = hashlib.sha256(payload.data).hexdigest()[:12]
        ext = _EXT_BY_MIME.get(payload.mime_type, "bin")
        directory = self.root / namespace
        directory.mkdir(parents=True, exist_ok=True)
        filename = f"{name}-{digest}.{ext}"
        path = directory / filename
        if not path.exists():
            path.write_bytes(payload.data)
            logger.debug(f"Stored artifact {path}")
        return f"{self.url_prefix}/{namespace}/{filename}"
