class ArenaError(ValueError):
    """An event or request was rejected without touching session state."""


class ValidationError(ArenaError):
    """Malformed or unauthorized input: unknown problem id, non-participant actor."""


class StateConflictError(ArenaError):
    """Well-formed input that does not apply to the current session status."""


class NotFoundError(ArenaError):
    pass


class PersistenceError(RuntimeError):
    """The terminal write for a finished session failed."""
