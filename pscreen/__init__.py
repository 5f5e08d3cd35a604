"""pscreen: website screenshots with a browsable gallery."""

__version__ = "2.1.0"
