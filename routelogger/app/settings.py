"""Application settings read from environment variables."""

import os
import pathlib

import pydantic

APP_NAME = 'RouteLogger'


class Position(pydantic.BaseModel):
    """A map position: centre coordinates plus zoom level."""

    lat: float
    lng: float
    zoom: int


class Settings(pydantic.BaseModel):
    """Runtime configuration for the store, codec and sync layers."""

    data_dir: pathlib.Path = pathlib.Path('data')
    database_url: str | None = None

    remote_url: str | None = None
    remote_key: str | None = None
    remote_bucket: str = 'routelogger'
    remote_table: str = 'tracks'
    user_id: str | None = None
    access_token: str | None = None

    # Limits on loops that would otherwise spin forever.
    name_attempt_limit: int = pydantic.Field(default=100, ge=1)
    reset_max_retries: int = pydantic.Field(default=5, ge=0)
    reset_backoff_seconds: float = pydantic.Field(default=0.5, ge=0)

    default_position: Position = Position(lat=35.6812, lng=139.7671, zoom=15)

    @property
    def resolved_database_url(self) -> str:
        """Database URL, defaulting to a SQLite file under data_dir."""
        if self.database_url:
            return self.database_url
        return f'sqlite:///{self.data_dir / "routelogger.db"}'

    @property
    def remote_configured(self) -> bool:
        """True when enough remote settings are present to build a client."""
        return bool(self.remote_url and self.remote_key)


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from the environment (or an explicit mapping)."""
    env = os.environ if environ is None else environ
    values: dict[str, object] = {}

    mapping = {
        'DATA_DIR': 'data_dir',
        'ROUTELOGGER_DATABASE_URL': 'database_url',
        'ROUTELOGGER_REMOTE_URL': 'remote_url',
        'ROUTELOGGER_REMOTE_KEY': 'remote_key',
        'ROUTELOGGER_REMOTE_BUCKET': 'remote_bucket',
        'ROUTELOGGER_REMOTE_TABLE': 'remote_table',
        'ROUTELOGGER_USER_ID': 'user_id',
        'ROUTELOGGER_ACCESS_TOKEN': 'access_token',
        'ROUTELOGGER_NAME_ATTEMPT_LIMIT': 'name_attempt_limit',
        'ROUTELOGGER_RESET_MAX_RETRIES': 'reset_max_retries',
        'ROUTELOGGER_RESET_BACKOFF_SECONDS': 'reset_backoff_seconds',
    }
    for env_name, field in mapping.items():
        if env.get(env_name):
            values[field] = env[env_name]

    default = Settings().default_position
    if any(env.get(f'ROUTELOGGER_DEFAULT_{k}') for k in ('LAT', 'LNG', 'ZOOM')):
        values['default_position'] = {
            'lat': env.get('ROUTELOGGER_DEFAULT_LAT') or default.lat,
            'lng': env.get('ROUTELOGGER_DEFAULT_LNG') or default.lng,
            'zoom': env.get('ROUTELOGGER_DEFAULT_ZOOM') or default.zoom,
        }

    return Settings.model_validate(values)
