from fastapi import APIRouter, Depends, status
from fastapi.responses import Response

from gateway.api.deps import get_storage
from gateway.api.responses import send_response
from gateway.core.errors import StorageError
from gateway.services.storage import StorageService

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(storage: StorageService = Depends(get_storage)) -> Response:
    # An empty listing still proves the backend answered.
    try:
        await storage.list_objects("", max_keys=1)
    except StorageError as exc:
        return send_response(
            False,
            f"Object store is not healthy: {exc}",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    return send_response(True, "Service is healthy")
