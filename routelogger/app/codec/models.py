"""Import result types and coordinate helpers shared by both formats."""

import dataclasses
import math
from typing import Any, Literal

from routelogger.app.store import models as store_models


@dataclasses.dataclass
class NativeImport:
    """Route-log data reconstructed from one of our own files; not yet persisted."""

    tracks: list[store_models.Track]
    photos: list[store_models.Photo]
    kind: Literal['native'] = 'native'


@dataclasses.dataclass
class ForeignImport:
    """A third-party document already stored as an external dataset."""

    import_id: str
    dataset_id: int
    feature_collection: dict[str, Any]
    asset_count: int = 0
    kind: Literal['foreign'] = 'foreign'


ImportResult = NativeImport | ForeignImport


def parse_position(value: Any) -> dict[str, float] | None:
    """Turn a ``[lng, lat, ...]`` position into ``{lat, lng}``; None if unusable."""
    if not isinstance(value, list | tuple) or len(value) < 2:
        return None
    try:
        lng = float(value[0])
        lat = float(value[1])
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    return {'lat': lat, 'lng': lng}


def parse_direction(value: Any) -> store_models.Direction:
    """Read a direction back from a document: degrees, a facing name, or None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if text in store_models.Facing:
            return store_models.Facing(text).value
        try:
            degrees = float(text)
        except ValueError:
            return None
        return degrees if math.isfinite(degrees) else None
    return None
