"""
Error taxonomy shared by every batch component.

Only failures to obtain the initial enumeration (host configuration, session
list) are fatal to an invocation; everything else is isolated per work item.
"""


class ContextKeeperError(Exception):
    """Base class for contextkeeper errors."""

    pass


class NotFound(ContextKeeperError):
    """A transcript, configuration or index file does not exist."""

    pass


class MalformedInput(ContextKeeperError):
    """A record or document could not be parsed."""

    pass


class RegistryUnavailable(ContextKeeperError):
    """The session registry (gateway) could not be reached or answered badly."""

    pass


class WriteFailure(ContextKeeperError):
    """A snapshot, day log, index or summary could not be persisted."""

    pass
