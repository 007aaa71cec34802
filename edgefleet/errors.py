"""Errors raised by the edge fleet services."""

from __future__ import annotations


class ServiceError(Exception):
    """Base class of every error a service raises.

    Two errors compare equal when they are of the same class and carry the
    same message, so callers can match an error against a fresh instance.
    """

    status_code = 500
    default_message = "internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message if message is not None else self.default_message
        super().__init__(self.message)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ServiceError):
            return NotImplemented
        return type(self) is type(other) and self.message == other.message

    def __hash__(self) -> int:
        return hash((type(self), self.message))


class BadRequestError(ServiceError):
    """The request itself is invalid."""

    status_code = 400
    default_message = "bad request"


class InternalServerError(ServiceError):
    """Something failed on the service side."""

    status_code = 500
    default_message = "internal server error"


class ImageNotFoundError(ServiceError):
    """The image was not found."""

    status_code = 404
    default_message = "image is not found"


class ImageSetAlreadyExists(ServiceError):
    """An image set with that name already exists for the account."""

    status_code = 400
    default_message = "image set already exists"


class AccountNotSet(ServiceError):
    """No account is known for the request."""

    status_code = 400
    default_message = "account is not set"


class IDMustBeInteger(ServiceError):
    """An identifier was given that is not an integer."""

    status_code = 400
    default_message = "ID needs to be an integer"


class ImageUnDefined(ServiceError):
    """The image has not been stored yet."""

    status_code = 400
    default_message = "image is undefined"


class ImageSetUnDefined(ServiceError):
    """The image belongs to no image set."""

    status_code = 400
    default_message = "image-set is undefined"


class ImageVersionAlreadyExists(ServiceError):
    """A newer version of the image already exists."""

    status_code = 400
    default_message = "image version already exists"


class UpdateNotFoundError(ServiceError):
    """No update information could be found."""

    status_code = 404
    default_message = "update not found"


class ThirdPartyRepositoryNotFound(ServiceError):
    """The third party repository was not found."""

    status_code = 404
    default_message = "third party repository was not found"