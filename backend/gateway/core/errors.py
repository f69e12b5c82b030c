"""Error types shared by the storage service and the HTTP layer."""


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ConfigInvalid(GatewayError):
    """Raised when a required setting is missing or cannot be parsed."""


class StorageError(GatewayError):
    """Raised when a call to the object store fails."""


BackendError = StorageError


class BackendUnavailable(StorageError):
    """The object store could not be reached or rejected our credentials."""


class BucketProvisioningFailed(StorageError):
    pass


class ObjectNotFound(StorageError):
    def __init__(self, key: str) -> None:
        super().__init__(f"object '{key}' not found")
        self.key = key


class UploadFailed(StorageError):
    pass


class DownloadFailed(StorageError):
    pass


class ListFailed(StorageError):
    pass


class StatFailed(StorageError):
    pass


class DeleteFailed(StorageError):
    pass


class URLSigningFailed(StorageError):
    pass


class RequestInvalid(GatewayError):
    """Raised by request handlers for client errors."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
