class SyncError(Exception):
    """Base class for every failure the sync reports on purpose."""


class ConfigError(SyncError):
    def __init__(self, missing=None, problems=None):
        self.missing = list(missing or [])
        self.problems = list(problems or [])
        parts = []
        if self.missing:
            parts.append("Missing required settings: " + ", ".join(self.missing))
        parts.extend(self.problems)
        super().__init__("; ".join(parts) or "Invalid configuration")


class UpstreamAuthError(SyncError):
    pass


class UpstreamTransportError(SyncError):
    pass


class UpstreamRpcError(SyncError):
    def __init__(self, message):
        self.message = message
        super().__init__(message)


class SequencingError(SyncError):
    pass
