"""KMZ containers: a zip holding one KML document plus packaged images."""

import datetime
import io
import re
import zipfile
from collections.abc import Mapping

from routelogger.app.errors import CodecError

KML_ENTRY = 'doc.kml'
ZIP_MAGIC = b'PK\x03\x04'
IMAGE_PATTERN = re.compile(r'\.(jpg|jpeg|png|gif)$', re.IGNORECASE)


def is_archive(content: bytes) -> bool:
    """True when the payload starts with a zip local file header."""
    return content.startswith(ZIP_MAGIC)


def archive_file_name(now: datetime.datetime | None = None) -> str:
    """Download name for an exported archive, e.g. ``RouteLog_20240501.kmz``."""
    now = now or datetime.datetime.now(datetime.UTC)
    return f'RouteLog_{now:%Y%m%d}.kmz'


def write_archive(kml: str, images: Mapping[str, bytes]) -> bytes:
    """Pack the KML document and the images keyed by archive-relative path."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zip_file:
        zip_file.writestr(KML_ENTRY, kml)
        for name, blob in images.items():
            zip_file.writestr(name, blob)
    return buffer.getvalue()


def read_archive(content: bytes) -> tuple[bytes, dict[str, bytes]]:
    """Unpack an archive into its raw KML document and its image entries.

    ``doc.kml`` is preferred; otherwise the first ``.kml`` entry is used. The
    KML is left undecoded so its XML declaration picks the encoding.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as zip_file:
            entries = [info for info in zip_file.infolist() if not info.is_dir()]
            kml_entries = [e for e in entries if e.filename.lower().endswith('.kml')]
            if not kml_entries:
                raise CodecError('No KML document found inside the archive')
            kml_entry = next(
                (e for e in kml_entries if e.filename == KML_ENTRY), kml_entries[0]
            )
            kml = zip_file.read(kml_entry)
            images = {
                e.filename: zip_file.read(e)
                for e in entries
                if IMAGE_PATTERN.search(e.filename)
            }
    except zipfile.BadZipFile as exc:
        raise CodecError(f'Archive could not be read: {exc}') from exc
    return kml, images
