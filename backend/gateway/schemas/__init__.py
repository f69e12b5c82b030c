from gateway.schemas.envelope import ApiResponse
from gateway.schemas.storage import FileDescriptor

__all__ = [
    "ApiResponse",
    "FileDescriptor",
]
