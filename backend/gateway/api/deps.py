from fastapi import Request

from gateway.core.config import Settings
from gateway.services.storage import StorageService


def get_storage(request: Request) -> StorageService:
    storage = request.app.state.storage
    if storage is None:
        raise RuntimeError("Storage service not initialised")
    return storage


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
