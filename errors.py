class AnnounceCacheError(Exception):
    pass


class MalformedEncoding(AnnounceCacheError, ValueError):
    def __init__(self, message, position=None):
        if position is not None:
            message = f"{message} at offset {position}"
        super().__init__(message)
        self.position = position


class MissingInfoDict(AnnounceCacheError):
    def __init__(self, message="torrent has no info dictionary"):
        super().__init__(message)


class MissingTracker(AnnounceCacheError):
    def __init__(self, message="torrent has no announce URL"):
        super().__init__(message)


class OriginError(AnnounceCacheError):
    """Anything that went wrong while announcing to the origin tracker."""


class NetworkError(OriginError):
    pass


class HTTPStatusError(OriginError):
    def __init__(self, status_code, url=None):
        super().__init__(f"origin tracker returned HTTP {status_code}")
        self.status_code = status_code
        self.url = url


class TrackerFailure(OriginError):
    """The origin answered with a well-formed `failure reason`.

    `body` holds the origin's bytes so they can be relayed unchanged.
    """

    def __init__(self, reason, body=None):
        super().__init__(f"origin tracker failure: {reason}")
        self.reason = reason
        self.body = body


class InvalidAnnounce(AnnounceCacheError):
    """A client announce this service cannot act on."""
