"""Error types raised while proxying a single request or tunnel."""


class ProxyError(Exception):
    """A failure that ends one proxy cycle with an HTTP status."""

    status = 500
    reason = "Internal Server Error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class MalformedRequest(ProxyError):
    status = 400
    reason = "Bad Request"


class InvalidTarget(ProxyError):
    """The request target cannot be turned into an absolute URL."""
    status = 400
    reason = "Bad Request"


class ClientBodyTooLarge(ProxyError):
    status = 413
    reason = "Request Entity Too Large"


class UpstreamFailure(ProxyError):
    """The origin could not be reached or the exchange failed midway."""
    status = 502
    reason = "Bad Gateway"


class DialFailure(UpstreamFailure):
    """The CONNECT target could not be dialed."""


class ResponseBodyTooLarge(UpstreamFailure):
    pass


class HijackUnsupported(ProxyError):
    """The client transport cannot be handed over as a raw socket."""
    status = 500
    reason = "Internal Server Error"


class ClientDisconnected(ProxyError):
    """The caller went away; there is nobody left to answer."""
    status = 499
    reason = "Client Closed Request"


class ServerError(Exception):
    """Process-level failure of the proxy server itself."""


class ListenError(ServerError):
    pass


class ShutdownTimeout(ServerError):
    pass
