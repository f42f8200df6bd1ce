"""Local file storage for lab images and documents.

Files live under ``settings.UPLOAD_DIR/<bucket>/<folder>/`` and are served
publicly from ``/uploads/<bucket>/<folder>/<name>``.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple
from urllib.parse import urlsplit

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from labsite import settings
from labsite.helpers import iso

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/uploads/"


class UploadError(ValueError):
    """Raised when an upload is rejected; the message is user-facing."""


@dataclass(frozen=True)
class UploadRule:
    max_mb: int
    allowed_types: Tuple[str, ...]


IMAGE_RULE = UploadRule(settings.IMAGE_MAX_MB, ("image/",))
DOCUMENT_RULE = UploadRule(settings.DOCUMENT_MAX_MB, ("application/",))


def _stream_size(upload: FileStorage) -> int:
    stream = upload.stream
    position = stream.tell()
    stream.seek(0, 2)
    size = stream.tell()
    stream.seek(position)
    return size


def _bucket_root(bucket: str) -> Path:
    return (settings.UPLOAD_DIR / secure_filename(bucket)).resolve()


def store_upload(
    conn,
    upload: FileStorage,
    bucket: str,
    folder: str = "",
    rule: UploadRule = IMAGE_RULE,
    lab_id: Optional[int] = None,
    uploaded_by: Optional[int] = None,
) -> str:
    """Validate and save one file; returns its public URL path."""
    size = _stream_size(upload)
    if size > rule.max_mb * 1024 * 1024:
        raise UploadError(f"Fișierul este prea mare. Maxim {rule.max_mb}MB.")
    mimetype = (upload.mimetype or "").lower()
    if not any(mimetype.startswith(prefix) for prefix in rule.allowed_types):
        raise UploadError("Tip de fișier neacceptat.")

    original = secure_filename(upload.filename or "") or "file"
    ext = original.rsplit(".", 1)[-1].lower() if "." in original else "bin"
    name = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}.{ext}"
    parts = [secure_filename(bucket)] + [secure_filename(p) for p in folder.split("/") if secure_filename(p)]
    target_dir = settings.UPLOAD_DIR.joinpath(*parts)
    target_dir.mkdir(parents=True, exist_ok=True)
    upload.save(str(target_dir / name))

    rel_path = "/".join(parts + [name])
    conn.execute(
        "INSERT INTO media (lab_id, file_name, file_path, file_type, file_size, uploaded_by, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (lab_id, original, rel_path, mimetype, size, uploaded_by, iso()),
    )
    logger.info("Stored upload %s (%s bytes)", rel_path, size)
    return PUBLIC_PREFIX + rel_path


def resolve_public_path(url_path: str) -> Optional[Path]:
    """Map ``/uploads/...`` to a file inside the upload dir, or None."""
    if not url_path.startswith(PUBLIC_PREFIX):
        return None
    rel = url_path[len(PUBLIC_PREFIX):].strip("/")
    if not rel:
        return None
    root = settings.UPLOAD_DIR.resolve()
    candidate = (root / rel).resolve()
    if root not in candidate.parents:
        return None
    return candidate


def remove_file(target: Path) -> bool:
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    except OSError:
        logger.warning("Could not delete upload %s", target, exc_info=True)
        return False
    return True


def discard_files(urls: Iterable[str]) -> None:
    """Remove files written by an abandoned transaction.

    Their media rows go away with the rollback, so only the disk copies are
    touched here.
    """
    for url in urls:
        target = resolve_public_path(urlsplit(url).path)
        if target is not None and remove_file(target):
            logger.info("Discarded upload %s", url)


def delete_upload(conn, url: str, bucket: str) -> bool:
    """Remove a stored file and its media row given its public URL. Best effort."""
    path = urlsplit(url).path
    target = resolve_public_path(path)
    if target is None or _bucket_root(bucket) not in target.parents:
        return False
    if not remove_file(target):
        return False
    conn.execute("DELETE FROM media WHERE file_path = ?", (path[len(PUBLIC_PREFIX):].strip("/"),))
    return True
