from __future__ import annotations

import secrets
from dataclasses import dataclass
from pathlib import Path

from app.config import settings
from app.services.task_errors import InvalidPhoto, NotFound

EXTENSIONS_BY_CONTENT_TYPE = {
    'image/jpeg': '.jpg',
    'image/png': '.png',
    'image/webp': '.webp',
    'image/heic': '.heic',
}


@dataclass(frozen=True)
class StoredPhoto:
    content_ref: str
    size_bytes: int


def _storage_root() -> Path:
    return Path(settings.photo_storage_dir).resolve()


def check_photo_size(size_bytes: int) -> None:
    if size_bytes > settings.photo_max_bytes:
        raise InvalidPhoto(f'Photo is larger than {settings.photo_max_bytes // (1024 * 1024)} MB')


def save_photo_bytes(data: bytes, *, content_type: str | None) -> StoredPhoto:
    if not data:
        raise InvalidPhoto('No photo uploaded')
    check_photo_size(len(data))
    clean_type = (content_type or '').split(';', 1)[0].strip().lower()
    if clean_type not in settings.photo_allowed_content_types:
        raise InvalidPhoto('Unsupported photo type')

    root = _storage_root()
    root.mkdir(parents=True, exist_ok=True)
    name = secrets.token_hex(16) + EXTENSIONS_BY_CONTENT_TYPE.get(clean_type, '')
    (root / name).write_bytes(data)
    return StoredPhoto(content_ref=name, size_bytes=len(data))


def open_photo_path(content_ref: str) -> Path:
    root = _storage_root()
    path = (root / content_ref).resolve()
    if path.parent != root or not path.is_file():
        raise NotFound('Photo content not found')
    return path


def discard_photo(content_ref: str) -> None:
    root = _storage_root()
    path = (root / content_ref).resolve()
    if path.parent == root:
        path.unlink(missing_ok=True)
