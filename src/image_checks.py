import hashlib
import io
import os

from PIL import Image, UnidentifiedImageError

from verification_errors import MalformedInputError


ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP"}


def content_hash(image_bytes: bytes) -> str:
    return hashlib.sha256(image_bytes).hexdigest()


def validate_image(image_bytes: bytes, max_bytes: int = 10 * 1024 * 1024) -> str:
    """画像として読めるか検証し、形式名（JPEG等）を返す"""
    if not image_bytes:
        raise MalformedInputError("empty image")
    if len(image_bytes) > max_bytes:
        raise MalformedInputError(f"image too large: {len(image_bytes)} bytes (max {max_bytes})")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise MalformedInputError(f"unreadable image: {e}") from e
    if fmt not in ALLOWED_FORMATS:
        raise MalformedInputError(f"unsupported image format: {fmt}")
    return fmt


class ImageVault:
    """アップロード画像をハッシュ名でディスク保存する"""

    def __init__(self, upload_dir: str):
        self.upload_dir = upload_dir
        os.makedirs(upload_dir, exist_ok=True)

    def put(self, digest: str, image_bytes: bytes) -> str:
        path = os.path.join(self.upload_dir, f"{digest}.bin")
        if not os.path.exists(path):
            tmp = path + ".tmp"
            with open(tmp, "wb") as f:
                f.write(image_bytes)
            os.replace(tmp, path)
        return path

    def get(self, image_ref: str) -> bytes:
        with open(image_ref, "rb") as f:
            return f.read()
