class LiveProxyError(Exception):
    pass


class UpstreamSetupError(LiveProxyError):
    """The upstream session could not be established (no retry is attempted)."""
