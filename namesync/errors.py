class NamesyncError(Exception):
    pass


class TransientError(NamesyncError):
    """Worth retrying after a delay."""


class IndexUnavailable(TransientError):
    pass


class ConnectionLost(TransientError):
    pass


class PermanentError(NamesyncError):
    """Retrying will not help: bad payload, unknown entity type, malformed amount."""


class SchemaMismatch(NamesyncError):
    def __init__(self, index: str, differences):
        self.index = index
        self.differences = differences
        super().__init__(f"index {index!r} schema differs from expected: {differences}")


class ListenerFatal(NamesyncError):
    pass
