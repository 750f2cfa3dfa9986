"""
Error taxonomy for the publishing pipeline.

Every error carries the HTTP status it maps to; the API layer renders
them as ``{"detail": message}``.
"""
from fastapi import status


class StoryFeedError(Exception):
    """Base class for all expected pipeline failures"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Request failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(StoryFeedError):
    """Bad or missing input; never retried"""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class Unauthenticated(StoryFeedError):
    """Missing, malformed, expired or rejected bearer credential"""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Could not validate credentials"


class Forbidden(StoryFeedError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "You don't have permission to perform this action"


class NotFound(StoryFeedError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Post not found"


class PayloadTooLarge(StoryFeedError):
    status_code = 413
    default_message = "Payload too large"


class UpstreamFailure(StoryFeedError):
    """Storage, database or identity provider unreachable or erroring.

    Nothing was committed when this is raised from the publish pipeline,
    so the client may retry the whole publish.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Upstream service failure"


class ObjectExistsError(UpstreamFailure):
    """A storage object already exists under the requested name"""

    default_message = "Storage object already exists"


class ImageNormalizationError(Exception):
    """Image could not be decoded or re-encoded"""
