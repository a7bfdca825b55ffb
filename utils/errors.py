class WebhookError(Exception):
    """
    Base for every error raised while receiving or processing a registry
    notification
    """


#
# Registry side
#
class RegistryError(WebhookError):
    pass


class ConnectFailedError(RegistryError):
    pass


class NotFoundError(RegistryError):
    pass


class DecodeFailedError(RegistryError):
    pass


class IOFailedError(RegistryError):
    pass


class DigestMismatchError(IOFailedError):
    """
    The fetched content does not match the size or digest of its descriptor
    """


class PushFailedError(RegistryError):
    pass


class TagFailedError(RegistryError):
    pass


#
# Description service side
#
class DescriptionError(WebhookError):
    pass


class MalformedResponseError(DescriptionError):
    """
    The description service answered, but not with something usable.  Carries
    the HTTP status code when the failure was a non-success status.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(MalformedResponseError):
    pass


class RateLimitError(MalformedResponseError):
    pass


class DescriptionTimeoutError(DescriptionError):
    pass


#
# Inbound transport side
#
class BodyReadError(WebhookError):
    pass


class PayloadDecodeError(WebhookError):
    pass
