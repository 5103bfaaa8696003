"""Database models for the RouteLogger local store."""

import datetime
import enum
import math
from collections.abc import Mapping
from typing import Any

import pydantic
import sqlalchemy
import sqlmodel


def utc_now() -> datetime.datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.datetime.now(datetime.UTC)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def isoformat(value: datetime.datetime) -> str:
    """ISO-8601 text for a stored timestamp, always in UTC with a Z suffix."""
    return as_utc(value).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_timestamp(value: Any) -> datetime.datetime | None:
    """Parse an ISO-8601 string, epoch milliseconds or datetime; None if unusable."""
    if isinstance(value, datetime.datetime):
        return as_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) and math.isfinite(value):
        return datetime.datetime.fromtimestamp(value / 1000, datetime.UTC)
    if isinstance(value, str) and value.strip():
        text = value.strip().replace('Z', '+00:00')
        try:
            return as_utc(datetime.datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


class LatLng(pydantic.BaseModel):
    """A single geographic point."""

    lat: float
    lng: float

    @pydantic.field_validator('lat', 'lng')
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError('coordinate must be a finite number')
        return value


def normalize_point(point: LatLng | Mapping[str, Any]) -> dict[str, float]:
    """Validate a point and return it in its stored ``{lat, lng}`` form."""
    if not isinstance(point, LatLng):
        point = LatLng.model_validate(dict(point))
    return {'lat': point.lat, 'lng': point.lng}


class Facing(enum.StrEnum):
    """Coarse camera facing recorded when no compass heading is available."""

    LEFT = 'left'
    RIGHT = 'right'
    UP = 'up'

    @property
    def degrees(self) -> int:
        """Signed offset from straight ahead."""
        return {Facing.LEFT: -60, Facing.RIGHT: 60, Facing.UP: 0}[self]


Direction = float | str | None


class Track(sqlmodel.SQLModel, table=True):
    """One continuous recorded path."""

    __tablename__ = 'routelog_track'  # type: ignore[misc]

    id: int | None = sqlmodel.Field(default=None, primary_key=True)
    timestamp: datetime.datetime = sqlmodel.Field(default_factory=utc_now, index=True)
    # Chronological {lat, lng} dicts; never reordered.
    points: list[dict[str, float]] = sqlmodel.Field(
        default_factory=list,
        sa_column=sqlalchemy.Column(sqlalchemy.JSON, nullable=False),
    )
    total_points: int = 0


class Photo(sqlmodel.SQLModel, table=True):
    """A geo-tagged photo; ``data`` holds a data URL or None for remote assets."""

    __tablename__ = 'routelog_photo'  # type: ignore[misc]

    id: int | None = sqlmodel.Field(default=None, primary_key=True)
    data: str | None = sqlmodel.Field(
        default=None, sa_column=sqlalchemy.Column(sqlalchemy.Text)
    )
    timestamp: datetime.datetime = sqlmodel.Field(default_factory=utc_now, index=True)
    location: dict[str, float] | None = sqlmodel.Field(
        default=None, sa_column=sqlalchemy.Column(sqlalchemy.JSON)
    )
    # Signed degrees, a Facing value, or None.
    direction: Direction = sqlmodel.Field(
        default=None, sa_column=sqlalchemy.Column(sqlalchemy.JSON)
    )
    text: str | None = None


class ExternalDataset(sqlmodel.SQLModel, table=True):
    """A foreign geographic document kept apart from the route log."""

    __tablename__ = 'routelog_external'  # type: ignore[misc]

    id: int | None = sqlmodel.Field(default=None, primary_key=True)
    type: str = 'geojson'
    name: str
    data: dict[str, Any] = sqlmodel.Field(
        sa_column=sqlalchemy.Column(sqlalchemy.JSON, nullable=False)
    )
    timestamp: datetime.datetime = sqlmodel.Field(default_factory=utc_now)


class ExternalPhotoAsset(sqlmodel.SQLModel, table=True):
    """An image file that arrived inside a foreign archive."""

    __tablename__ = 'routelog_external_photo'  # type: ignore[misc]

    id: int | None = sqlmodel.Field(default=None, primary_key=True)
    import_id: str = sqlmodel.Field(index=True)
    file_name: str
    blob: bytes
    timestamp: datetime.datetime = sqlmodel.Field(default_factory=utc_now)


class Setting(sqlmodel.SQLModel, table=True):
    """A keyed settings row; the only key in use is ``lastPosition``."""

    __tablename__ = 'routelog_setting'  # type: ignore[misc]

    key: str = sqlmodel.Field(primary_key=True)
    value: dict[str, Any] = sqlmodel.Field(
        default_factory=dict,
        sa_column=sqlalchemy.Column(sqlalchemy.JSON, nullable=False),
    )
    timestamp: datetime.datetime = sqlmodel.Field(default_factory=utc_now)


class Collection(enum.StrEnum):
    """Names of the local collections."""

    TRACKS = 'tracks'
    PHOTOS = 'photos'
    EXTERNALS = 'externals'
    EXTERNAL_PHOTOS = 'external_photos'
    SETTINGS = 'settings'

    @property
    def model(self) -> type[sqlmodel.SQLModel]:
        """Table model backing this collection."""
        return {
            Collection.TRACKS: Track,
            Collection.PHOTOS: Photo,
            Collection.EXTERNALS: ExternalDataset,
            Collection.EXTERNAL_PHOTOS: ExternalPhotoAsset,
            Collection.SETTINGS: Setting,
        }[self]


# Collections holding user data; settings are excluded.
DATA_COLLECTIONS = (
    Collection.TRACKS,
    Collection.PHOTOS,
    Collection.EXTERNALS,
    Collection.EXTERNAL_PHOTOS,
)


LAST_POSITION_KEY = 'lastPosition'
