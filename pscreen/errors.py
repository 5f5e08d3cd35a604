class PScreenError(Exception):
    """Base class for errors reported to the user as a one-line message."""


class InvalidUrlError(PScreenError, ValueError):
    pass


class CaptureError(PScreenError):
    def __init__(self, url: str, message: str):
        super().__init__(f"Capture of {url} failed: {message}")
        self.url = url
        self.reason = message


class BatchAbortedError(PScreenError):
    def __init__(self, url: str, message: str, report=None):
        super().__init__(f"Batch aborted at {url}: {message}")
        self.url = url
        self.report = report


class NoAvailablePortError(PScreenError):
    pass


class ConfigError(PScreenError):
    pass
