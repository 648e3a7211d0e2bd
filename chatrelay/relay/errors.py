"""
Relay error taxonomy.

Every one of these is handled where it is raised: the offending event is
dropped and logged, the connection stays open.
"""
import re


class RelayError(Exception):
    """Base class for errors that cause a relay event to be dropped."""

    @property
    def reason(self) -> str:
        """Snake-case name used as the `reason` of a sendFailed event."""
        return re.sub(r"(?<!^)(?=[A-Z])", "_", type(self).__name__).lower()


class AuthenticationMissing(RelayError):
    """No identity announced (or resolvable) before an event that needs one."""


class UnauthorizedChannelAccess(RelayError):
    """The connection is not allowed to use the referenced channel or message."""


class MalformedEvent(RelayError):
    """An inbound event is missing a required field or has an invalid shape."""


class StoreUnavailable(RelayError):
    """A persistent-store call failed."""
