"""Exception types raised by the store, codec and sync layers."""


class RouteLoggerError(Exception):
    """Base class for all RouteLogger failures."""


class NotInitialized(RouteLoggerError):
    """The local store was used before open() or after close()."""

    def __init__(self, message: str = 'Local store is not open') -> None:
        super().__init__(message)


class StoreBlocked(RouteLoggerError):
    """Deleting the local store was blocked by another open session."""


class AuthRequired(RouteLoggerError):
    """A sync operation was attempted without an authenticated principal."""

    def __init__(self, message: str = 'Sign-in is required to sync') -> None:
        super().__init__(message)


class NameExhausted(RouteLoggerError):
    """No free remote project name was found within the attempt limit."""

    def __init__(self, base_name: str, attempts: int) -> None:
        super().__init__(
            f'No free project name for {base_name!r} after {attempts} attempts; '
            'choose a different name'
        )
        self.base_name = base_name
        self.attempts = attempts


class CodecError(RouteLoggerError):
    """An interchange file could not be read or written."""


class TransportError(RouteLoggerError):
    """A remote store or blob storage request failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def permission_denied(self) -> bool:
        """True when the remote side refused the request for lack of rights."""
        return self.status_code in (401, 403)
