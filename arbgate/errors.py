# arbgate/errors.py


class ArbgateError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigError(ArbgateError):
    """Invalid or incomplete configuration. Fatal at startup."""


class FeedError(ArbgateError):
    """
    Transient data-source failure for a single venue.
    Caught at the venue task boundary; the venue is omitted from snapshots.
    """
    def __init__(self, venue: str, message: str):
        super().__init__(f"{venue}: {message}")
        self.venue = venue


class PoolReadError(FeedError):
    pass


class StreamParseError(FeedError):
    pass
