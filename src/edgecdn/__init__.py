"""Edge content delivery: object store assets behind a response cache, with download accounting."""

__version__ = "0.1.0"
