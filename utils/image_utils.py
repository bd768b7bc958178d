"""Image validation and storage for complaint photos."""
import io
import os
import time
from typing import Dict, Tuple

from PIL import Image, UnidentifiedImageError
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

ALLOWED_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp"}
DEFAULT_MAX_IMAGE_BYTES = 8 * 1024 * 1024  # 8 MB

# Pillow format name -> (canonical extension, mime type)
_PIL_FORMATS: Dict[str, Tuple[str, str]] = {
    "JPEG": ("jpg", "image/jpeg"),
    "PNG": ("png", "image/png"),
    "WEBP": ("webp", "image/webp"),
}


def _fail_if(condition: bool, message: str) -> None:
    if condition:
        raise ValueError(message)


def has_upload(file: FileStorage | None) -> bool:
    return bool(file and file.filename)


def validate_image_file(file: FileStorage, max_bytes: int = DEFAULT_MAX_IMAGE_BYTES) -> Tuple[bytes, str, str]:
    """Return ``(content, extension, mime_type)`` for a verified JPEG/PNG/WebP upload."""
    _fail_if(not file, "No file provided")
    filename = secure_filename(file.filename or "")
    _fail_if(not filename or "." not in filename, "Unsupported file name")
    ext = filename.rsplit(".", 1)[1].lower()
    _fail_if(ext not in ALLOWED_IMAGE_EXTENSIONS, "Please upload an image (JPG, PNG, WebP)")

    content = file.read()
    _fail_if(len(content) == 0, "Empty file")
    _fail_if(len(content) > max_bytes, "File exceeds size limits")

    try:
        with Image.open(io.BytesIO(content)) as img:
            image_format = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValueError("Image validation failed") from exc
    _fail_if(image_format not in _PIL_FORMATS, "Invalid image data")

    file.stream.seek(0)
    canonical_ext, mime_type = _PIL_FORMATS[image_format]
    return content, canonical_ext, mime_type


def photo_storage_path(owner_id: str, extension: str, now_ms: int | None = None) -> str:
    """Relative object key: ``complaints/<owner>/<epoch-ms>.<ext>``."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return "/".join(["complaints", secure_filename(owner_id), f"{stamp}.{extension}"])


def store_photo(image_bytes: bytes, upload_root: str, relative_path: str) -> str:
    """Write the photo below ``upload_root`` and return its absolute path."""
    abs_root = os.path.abspath(upload_root)
    target = os.path.abspath(os.path.join(abs_root, relative_path))
    _fail_if(not target.startswith(abs_root + os.sep), "Invalid storage path")
    os.makedirs(os.path.dirname(target), exist_ok=True)
    with open(target, "wb") as handle:
        handle.write(image_bytes)
    return target
