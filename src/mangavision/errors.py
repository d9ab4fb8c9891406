"""Exception types raised by mangavision.

Only contract violations are raised to callers. Expected fallbacks (a missing
detection model) are handled inside the pipeline and reported as advisories.
"""


class MangaVisionError(Exception):
    """Base class for all mangavision errors."""

    pass


class InvalidInput(MangaVisionError, ValueError):
    """Malformed pixel buffer or dimensions; raised before any stage runs."""

    pass


class UnsupportedOption(MangaVisionError, ValueError):
    """Unknown option name, unknown method or out-of-range value."""

    pass


class ModelUnavailable(MangaVisionError, RuntimeError):
    """Detection model missing or failed to initialize."""

    pass


class ProcessingTimeout(MangaVisionError, TimeoutError):
    """Detection did not finish within the configured time budget."""

    pass
