"""Exceptions that are used by zoneplayer."""


class ZonePlayerException(Exception):

    """Base class for all zoneplayer exceptions."""


class InvalidServiceUrl(ZonePlayerException):

    """Raised if a service URL cannot be used to reach the device, eg because
    it has no host or is not an ``http`` URL."""


class SubscriptionFailed(ZonePlayerException):

    """The device answered a ``SUBSCRIBE`` request with a non-2xx status.

    Attributes:
        status (int): The HTTP status code of the response.
        body (str): The body of the response, which may help to explain
            the failure.
    """

    def __init__(self, status, body=""):
        """
        Args:
            status (int): The HTTP status code of the response.
            body (str): The body of the response. Default is ""
        """
        super().__init__(status, body)
        self.status = status
        self.body = body

    def __str__(self):
        return "Subscription failed: {} {}".format(self.status, self.body).rstrip()


class RenewalFailed(SubscriptionFailed):

    """The device answered a renewal ``SUBSCRIBE`` with a non-2xx status.

    This is fatal for the subscription. It is never raised to the consumer
    of an `EventStream`, whose stream simply ends, but it is recorded in
    `EventStream.error`.
    """

    def __str__(self):
        return "Renewal failed: {} {}".format(self.status, self.body).rstrip()


class SubscriptionFailedNoSid(ZonePlayerException):

    """The device accepted a ``SUBSCRIBE`` request but did not return a
    ``SID`` header, so the subscription can never be renewed or cancelled."""

    def __str__(self):
        return "Subscription response did not contain a SID header"


class NotifyParseError(ZonePlayerException):

    """Raised if a ``NOTIFY`` request cannot be framed: a malformed request
    line or header, an invalid ``Content-Length``, a request that exceeds the
    size limit, or a connection closed before the request was complete."""


class EventParseException(ZonePlayerException):
    """Raised when a parsing exception occurs during event handling.

    Attributes:
        tag (str): The tag for which the exception occured
        metadata (str): The metadata which failed to parse
        __cause__ (Exception): The original exception
    """

    def __init__(self, tag, metadata, cause):
        """
        Args:
            tag (str): The tag for which the exception occured
            metadata (str): The metadata which failed to parse
            cause (Exception): The original exception
        """
        super().__init__()
        self.tag = tag
        self.metadata = metadata
        self.__cause__ = cause

    def __str__(self):
        return "Invalid metadata for '{}'".format(self.tag)
