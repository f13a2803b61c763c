"""Error taxonomy shared by the generation services and the API layer."""


class MangaloomError(Exception):
    """Base class for errors raised by mangaloom services."""

    pass


class ValidationError(MangaloomError):
    """Missing or malformed user input (e.g. seed fields)."""

    pass


class NotFoundError(MangaloomError):
    """Episode, page or outline entry does not exist."""

    pass


class ProviderError(MangaloomError):
    """An external AI or storage provider returned an invalid response."""

    pass


class ProviderUnavailableError(ProviderError):
    """Provider credentials are missing or the provider is unreachable."""

    pass


class NoContentError(MangaloomError):
    """Nothing to narrate after filtering blank dialogue."""

    pass
