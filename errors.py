class ThrottleError(Exception):
    """
    Base class for faults inside the classification path.
    None of these ever reach the end client.
    """


class IdentityUnresolvable(ThrottleError):
    """No header produced a usable client IP."""


class PersistenceFailure(ThrottleError):
    """Event write or count query failed."""


class InvalidInput(ThrottleError):
    """Malformed value reached an internal boundary."""
