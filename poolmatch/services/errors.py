"""Typed failures raised by the matching engine. `retriable` tells the dispatch worker whether the queue should try again."""


class DispatchError(Exception):
    retriable = False


class NotFound(DispatchError):
    """Ride, pool or driver id does not exist."""

    def __init__(self, kind: str, ident: int) -> None:
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class CapacityExceeded(DispatchError):
    """The ride alone does not fit any reachable vehicle."""


class NotAuthorized(DispatchError):
    """Caller is not the driver bound to the pool."""


class NoDriverAvailable(DispatchError):
    """No available driver within the search radius; the ride stays pending."""

    retriable = True


class TransientStoreFailure(DispatchError):
    """Lock timeout, deadlock or lost connection. The job is retried by the queue."""

    retriable = True
