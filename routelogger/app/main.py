"""FastAPI application for the RouteLogger API."""

import contextlib
import os
from collections.abc import AsyncGenerator

import fastapi
import uvicorn

import common.log

from . import errors, routes
from . import settings as app_settings
from .store import database


def create_app(settings: app_settings.Settings | None = None) -> fastapi.FastAPI:
    """Build the API; settings are read from the environment when not given."""

    @contextlib.asynccontextmanager
    async def lifespan(app: fastapi.FastAPI) -> AsyncGenerator[None, None]:
        """Open the local store for the lifetime of the app."""
        store = database.LocalStore(settings=settings or app_settings.load_settings())
        await store.open()
        app.state.store = store
        try:
            yield
        finally:
            await store.close()

    app = fastapi.FastAPI(title=app_settings.APP_NAME, lifespan=lifespan)
    common.log.configure_logging()
    app.add_exception_handler(errors.RouteLoggerError, routes.handle_route_logger_error)
    app.include_router(routes.router)

    @app.api_route('/health', methods=['GET', 'HEAD'])
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {'status': 'healthy'}

    return app


app = create_app()


if __name__ == '__main__':
    uvicorn.run(app, host='0.0.0.0', port=int(os.environ.get('PORT', '8000')))
