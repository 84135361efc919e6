# chatrelay/errors.py
# Exception taxonomy for the relay core.
#
# Every error that can be reported to a client derives from RelayError and carries
# a short wire code. The hub turns these into an `Error(code, message)` event sent
# to the acting connection only; nothing here is ever broadcast.


class RelayError(Exception):
    """Base class for per-operation failures surfaced to the acting connection."""

    code = "RelayError"

    def __init__(self, message=None):
        super().__init__(message or self.code)
        self.message = message or self.code


class UnknownRecipient(RelayError):
    """A direct message named an identity the user directory does not know."""

    code = "UnknownRecipient"

    def __init__(self, identity):
        super().__init__(f"User '{identity}' does not exist.")
        self.identity = identity


class ServiceUnavailable(RelayError):
    """A collaborating service (store or directory) could not be reached."""

    code = "ServiceUnavailable"


class StoreUnavailable(ServiceUnavailable):
    code = "StoreUnavailable"


class DirectoryUnavailable(ServiceUnavailable):
    code = "DirectoryUnavailable"


class NotSubscribed(RelayError):
    """A group send came from a connection that has not joined the group."""

    code = "NotSubscribed"

    def __init__(self, group_name):
        super().__init__(f"Join group '{group_name}' before sending to it.")
        self.group_name = group_name


class InvalidRequest(RelayError):
    code = "InvalidRequest"


class StaleSignal(RelayError):
    """A call signal arrived for a session the coordinator no longer tracks.

    Raised and caught inside the call coordinator; clients never see it.
    """

    code = "StaleSignal"
