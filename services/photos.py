"""Photo uploads.

An uploaded image is read with Pillow for its dimensions and EXIF (capture
time, GPS position, camera settings), handed to the image host, and then
submitted through the ingestion pipeline as a ``photo`` item. Form fields
sent with the upload take precedence over what the EXIF block says.
"""
from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import requests
from PIL import ExifTags, Image

from core.categories import parse_timestamp
from core.errors import DependencyError, ValidationError
from services.ingest import IngestionPipeline

logger = logging.getLogger(__name__)

PHOTO_CATEGORY = "photo"
ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

_CAMERA_TAGS = {
    "make": ExifTags.Base.Make,
    "model": ExifTags.Base.Model,
    "software": ExifTags.Base.Software,
    "orientation": ExifTags.Base.Orientation,
}
_EXPOSURE_TAGS = {
    "lens_model": ExifTags.Base.LensModel,
    "iso": ExifTags.Base.ISOSpeedRatings,
    "f_number": ExifTags.Base.FNumber,
    "exposure_time": ExifTags.Base.ExposureTime,
    "focal_length": ExifTags.Base.FocalLength,
}


@dataclass
class PhotoMetadata:
    size: int
    mime_type: str
    width: int | None = None
    height: int | None = None
    format: str | None = None
    date_taken: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    camera: dict[str, Any] = field(default_factory=dict)

    def file_info(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "mime_type": self.mime_type,
            "width": self.width,
            "height": self.height,
            "format": self.format,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file_info(),
            "date_taken": self.date_taken,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "camera": dict(self.camera),
        }


def _exif_value(value: Any) -> Any:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        value = value.strip("\x00 ").strip()
        return value or None
    if isinstance(value, tuple):
        return _exif_value(value[0]) if value else None
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    return number if math.isfinite(number) else None


def exif_datetime(raw: Any, offset: Any = None) -> str | None:
    """``YYYY:MM:DD HH:MM:SS`` (plus an optional ``+HH:MM`` offset) as ISO-8601.

    EXIF times without an offset are taken as UTC.
    """
    text = _exif_value(raw)
    if not isinstance(text, str):
        return None
    try:
        parsed = datetime.strptime(text, "%Y:%m:%d %H:%M:%S")
    except ValueError:
        return None
    tz = timezone.utc
    offset_text = _exif_value(offset)
    if isinstance(offset_text, str):
        try:
            tz = datetime.strptime(offset_text, "%z").tzinfo
        except ValueError:
            pass
    return parsed.replace(tzinfo=tz).isoformat()


def gps_degrees(dms: Any, ref: Any) -> float | None:
    """Degrees/minutes/seconds rationals to signed decimal degrees."""
    if not isinstance(dms, tuple) or len(dms) != 3:
        return None
    try:
        degrees, minutes, seconds = (float(part) for part in dms)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    value = degrees + minutes / 60 + seconds / 3600
    if not math.isfinite(value):
        return None
    if _exif_value(ref) in ("S", "W"):
        value = -value
    return round(value, 7)


def extract_metadata(content: bytes, mime_type: str) -> PhotoMetadata:
    """Read dimensions and EXIF from image bytes.

    Raises:
        ValidationError: the bytes are not an image Pillow can open.
    """
    try:
        with Image.open(io.BytesIO(content)) as image:
            width, height = image.size
            fmt = (image.format or "").lower() or None
            exif = image.getexif()
            exif_ifd = exif.get_ifd(ExifTags.IFD.Exif)
            gps_ifd = exif.get_ifd(ExifTags.IFD.GPSInfo)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ValidationError("file", f"Not a readable image: {exc}") from exc

    camera: dict[str, Any] = {}
    for name, tag in _CAMERA_TAGS.items():
        value = _exif_value(exif.get(tag))
        if value is not None:
            camera[name] = value
    for name, tag in _EXPOSURE_TAGS.items():
        value = _exif_value(exif_ifd.get(tag))
        if value is not None:
            camera[name] = value

    taken = exif_datetime(
        exif_ifd.get(ExifTags.Base.DateTimeOriginal) or exif.get(ExifTags.Base.DateTime),
        exif_ifd.get(ExifTags.Base.OffsetTimeOriginal),
    )
    return PhotoMetadata(
        size=len(content),
        mime_type=mime_type,
        width=width,
        height=height,
        format=fmt,
        date_taken=taken,
        latitude=gps_degrees(gps_ifd.get(ExifTags.GPS.GPSLatitude), gps_ifd.get(ExifTags.GPS.GPSLatitudeRef)),
        longitude=gps_degrees(gps_ifd.get(ExifTags.GPS.GPSLongitude), gps_ifd.get(ExifTags.GPS.GPSLongitudeRef)),
        camera=camera,
    )


def _form_float(fields: dict[str, str], name: str) -> float | None:
    raw = (fields.get(name) or "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        value = math.nan
    if not math.isfinite(value):
        raise ValidationError(name, f"Missing or invalid field: {name} (expected a number)")
    return value


def build_photo_payload(
    metadata: PhotoMetadata,
    *,
    original_name: str,
    content_sha256: str,
    fields: dict[str, str] | None = None,
) -> dict[str, Any]:
    """The ``photo`` data for an upload, before the image host id is known."""
    fields = fields or {}
    date_taken = (fields.get("date_taken") or "").strip() or metadata.date_taken
    if not date_taken:
        raise ValidationError("date_taken", "No date_taken given and the image has no EXIF capture time")
    try:
        parse_timestamp(date_taken)
    except ValueError as exc:
        raise ValidationError("date_taken", f"Missing or invalid field: date_taken ({exc})") from exc
    data: dict[str, Any] = {
        "original_name": original_name,
        "date_taken": date_taken,
        "sha256": content_sha256,
        "image": metadata.file_info(),
    }
    latitude = _form_float(fields, "latitude")
    longitude = _form_float(fields, "longitude")
    if latitude is None and longitude is None:
        latitude, longitude = metadata.latitude, metadata.longitude
    if latitude is not None and longitude is not None:
        data["latitude"] = latitude
        data["longitude"] = longitude
    if metadata.camera:
        data["camera"] = dict(metadata.camera)
    publish = (fields.get("publish") or "").strip().lower()
    if publish:
        data["publish"] = publish in {"1", "true", "yes", "on"}
    tags = [t.strip() for t in (fields.get("tags") or "").split(",") if t.strip()]
    if tags:
        data["tags"] = tags
    for key in ("title", "caption"):
        value = (fields.get(key) or "").strip()
        if value:
            data[key] = value
    return data


class ImageHostClient:
    """Uploads image bytes to the image host and returns its image id."""

    def __init__(self, upload_url: str, *, api_token: str = "", timeout: float = 30.0):
        self.upload_url = upload_url
        self.api_token = api_token
        self.timeout = timeout

    async def upload(self, content: bytes, filename: str, content_type: str) -> str:
        if not self.upload_url:
            raise DependencyError("Image host is not configured")
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else {}

        def _do() -> Any:
            resp = requests.post(
                self.upload_url,
                files={"file": (filename, content, content_type)},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()

        try:
            payload = await asyncio.to_thread(_do)
        except (requests.RequestException, ValueError) as exc:
            logger.error(f"Image upload failed for {filename}: {exc}")
            raise DependencyError(f"Image host upload failed: {exc}") from exc
        result = payload.get("result") if isinstance(payload, dict) else None
        image_id = result.get("id") if isinstance(result, dict) else None
        if not isinstance(image_id, str) or not image_id:
            raise DependencyError("Image host reply carried no image id")
        return image_id


class PhotoUploader:
    def __init__(self, *, pipeline: IngestionPipeline, images: ImageHostClient):
        self.pipeline = pipeline
        self.images = images

    async def upload(
        self,
        content: bytes,
        *,
        filename: str,
        content_type: str,
        fields: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """
        Store an uploaded photo and queue it for indexing.

        Nothing is sent to the image host until the file type, the image
        bytes and the capture date have been checked.

        Raises:
            ValidationError: not an accepted image, or no capture date.
            DependencyError: the image host, a store or the queue failed.
        """
        if not content:
            raise ValidationError("file", "No file provided in request")
        if content_type not in ALLOWED_IMAGE_TYPES:
            raise ValidationError(
                "file",
                f"Invalid file type: {content_type}. Allowed types: {', '.join(ALLOWED_IMAGE_TYPES)}",
            )
        metadata = await asyncio.to_thread(extract_metadata, content, content_type)
        data = build_photo_payload(
            metadata,
            original_name=filename,
            content_sha256=hashlib.sha256(content).hexdigest(),
            fields=fields,
        )
        data["cf_image_id"] = await self.images.upload(content, filename, content_type)
        result = await self.pipeline.submit(PHOTO_CATEGORY, data)
        logger.info(f"Uploaded photo {filename} as image {data['cf_image_id']} ({result.id})")
        out = result.to_dict()
        out["imageId"] = data["cf_image_id"]
        out["metadata"] = metadata.to_dict()
        return out


__all__ = [
    "ALLOWED_IMAGE_TYPES",
    "ImageHostClient",
    "PhotoMetadata",
    "PhotoUploader",
    "build_photo_payload",
    "exif_datetime",
    "extract_metadata",
    "gps_degrees",
]
