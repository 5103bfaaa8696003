"""Photo payload helpers: data URLs, JPEG re-encoding and EXIF metadata."""

import base64
import binascii
import datetime
import io
import logging
from typing import Any, BinaryIO

import exifread
import pillow_heif  # pyright: ignore[reportMissingTypeStubs]
from PIL import Image

from routelogger.app.errors import CodecError

logger = logging.getLogger(__name__)

# Register HEIF opener for PIL
pillow_heif.register_heif_opener()  # type: ignore

JPEG_MIME = 'image/jpeg'
JPEG_QUALITY = 90


def to_data_url(content: bytes, mime_type: str = JPEG_MIME) -> str:
    """Wrap raw image bytes in a base64 data URL."""
    encoded = base64.b64encode(content).decode('ascii')
    return f'data:{mime_type};base64,{encoded}'


def from_data_url(data_url: str) -> bytes:
    """Decode the payload of a base64 data URL."""
    header, sep, payload = data_url.partition(',')
    if not sep or not header.startswith('data:') or ';base64' not in header:
        raise CodecError('not a base64 data URL')
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise CodecError(f'invalid base64 payload: {exc}') from exc


def mime_type_for(file_name: str) -> str:
    """Guess an image MIME type from a file extension."""
    suffix = file_name.rsplit('.', 1)[-1].lower()
    return {
        'jpg': JPEG_MIME,
        'jpeg': JPEG_MIME,
        'png': 'image/png',
        'gif': 'image/gif',
        'heic': 'image/heic',
        'heif': 'image/heif',
    }.get(suffix, 'application/octet-stream')


def reencode_jpeg(content: bytes, quality: int = JPEG_QUALITY) -> bytes:
    """Decode any supported image (HEIC included) and re-encode it as JPEG.

    Raises the PIL error (an OSError) when the bytes are not a readable image.
    """
    img = Image.open(io.BytesIO(content))

    # JPEG has no alpha or palette modes
    if img.mode != 'RGB':
        img = img.convert('RGB')

    output = io.BytesIO()
    img.save(output, format='JPEG', quality=quality)
    return output.getvalue()


def extract_metadata(file: BinaryIO) -> dict[str, Any]:
    """Extract capture time and GPS coordinates from an image's EXIF block.

    Returns a dict with any of ``date_taken``, ``latitude`` and ``longitude``;
    images without usable EXIF give an empty dict.
    """
    metadata: dict[str, Any] = {}

    try:
        tags = exifread.process_file(file, details=False)
    except Exception as exc:  # exifread raises a variety of errors on junk input
        logger.debug('EXIF extraction failed: %s', exc)
        return metadata

    if 'EXIF DateTimeOriginal' in tags:
        date_str = str(tags['EXIF DateTimeOriginal'])
        try:
            metadata['date_taken'] = datetime.datetime.strptime(
                date_str, '%Y:%m:%d %H:%M:%S'
            ).replace(tzinfo=datetime.UTC)
        except ValueError:
            logger.debug('Ignoring malformed EXIF date %r', date_str)

    gps_latitude = tags.get('GPS GPSLatitude')
    gps_latitude_ref = tags.get('GPS GPSLatitudeRef')
    gps_longitude = tags.get('GPS GPSLongitude')
    gps_longitude_ref = tags.get('GPS GPSLongitudeRef')

    if all([gps_latitude, gps_latitude_ref, gps_longitude, gps_longitude_ref]):
        try:
            lat = convert_to_degrees(gps_latitude)
            lon = convert_to_degrees(gps_longitude)
        except (AttributeError, IndexError, ZeroDivisionError) as exc:
            logger.debug('Ignoring malformed EXIF GPS data: %s', exc)
        else:
            if str(gps_latitude_ref) == 'S':
                lat = -lat
            if str(gps_longitude_ref) == 'W':
                lon = -lon
            metadata['latitude'] = lat
            metadata['longitude'] = lon

    return metadata


def convert_to_degrees(value: Any) -> float:
    """Convert GPS coordinates from DMS to decimal degrees."""
    degrees = float(value.values[0].num) / float(value.values[0].den)
    minutes = float(value.values[1].num) / float(value.values[1].den)
    seconds = float(value.values[2].num) / float(value.values[2].den)

    return degrees + (minutes / 60.0) + (seconds / 3600.0)
