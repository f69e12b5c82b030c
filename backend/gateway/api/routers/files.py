import logging
from datetime import datetime, timezone
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.datastructures import UploadFile
from starlette.types import Message, Receive

from gateway.api.deps import get_app_settings, get_storage
from gateway.api.responses import send_response
from gateway.core.config import Settings
from gateway.core.errors import (
    ListFailed,
    ObjectNotFound,
    RequestInvalid,
    StorageError,
    UploadFailed,
    URLSigningFailed,
)
from gateway.schemas import FileDescriptor
from gateway.services.storage import DEFAULT_CONTENT_TYPE, StorageService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


def _body_too_large(limit: int) -> RequestInvalid:
    return RequestInvalid(f"Error retrieving file: request body exceeds {limit} bytes")


def _bounded_receive(receive: Receive, limit: int) -> Receive:
    received = 0

    async def wrapper() -> Message:
        nonlocal received
        message = await receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > limit:
                raise _body_too_large(limit)
        return message

    return wrapper


def _content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


@router.post("/upload")
async def upload_file(
    request: Request,
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    limit = settings.upload_max_bytes
    content_length = request.headers.get("content-length", "")
    if content_length.isdigit() and int(content_length) > limit:
        raise _body_too_large(limit)

    # Chunked bodies carry no length, so the parser reads through a counting receive.
    bounded = Request(request.scope, _bounded_receive(request.receive, limit))
    async with bounded.form(max_files=1) as form:
        upload = form.get("file")
        if not isinstance(upload, UploadFile) or not upload.filename:
            raise RequestInvalid("Error retrieving file: multipart field 'file' is required")

        filename = upload.filename
        content_type = upload.content_type or DEFAULT_CONTENT_TYPE
        object_key = storage.generate_upload_key(filename)

        # The parser has already spooled the part to a temporary file of known size.
        await upload.seek(0)
        try:
            descriptor = await storage.put_object(
                object_key, upload.size or 0, upload.file, content_type
            )
        except UploadFailed as exc:
            return send_response(
                False,
                f"Error uploading to storage: {exc}",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        except OSError as exc:
            return send_response(
                False,
                f"Error reading uploaded file: {exc}",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

    url = None
    try:
        url = await storage.presigned_url(object_key, settings.upload_url_ttl)
    except URLSigningFailed as exc:
        logger.warning("Failed to generate presigned URL for '%s': %s", object_key, exc)

    info = FileDescriptor(
        file_name=filename,
        size=descriptor.size,
        content_type=content_type,
        url=url,
        uploaded_at=datetime.now(timezone.utc),
    )
    return send_response(True, "File uploaded successfully", info)


@router.get("/files")
async def list_files(
    prefix: str | None = None,
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    prefix = prefix or settings.upload_prefix
    try:
        objects = await storage.list_objects(prefix, with_content_type=True)
    except ListFailed as exc:
        return send_response(
            False,
            f"Error listing files: {exc}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    files: list[FileDescriptor] = []
    for obj in objects:
        # A signing failure only drops the URL of that entry.
        url = None
        try:
            url = await storage.presigned_url(obj.key, settings.upload_url_ttl)
        except URLSigningFailed as exc:
            logger.warning("Failed to generate presigned URL for '%s': %s", obj.key, exc)
        files.append(
            FileDescriptor(
                file_name=obj.name,
                size=obj.size,
                content_type=obj.content_type,
                url=url,
                uploaded_at=obj.last_modified,
            )
        )

    return send_response(True, f"Found {len(files)} files", files)


@router.get("/files/{object_key:path}")
async def get_file(
    object_key: str,
    download: bool = False,
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    if not object_key:
        raise RequestInvalid("Object name is required")

    try:
        exists = await storage.object_exists(object_key)
    except StorageError as exc:
        return send_response(
            False,
            f"Error checking object: {exc}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    if not exists:
        return send_response(False, "File not found", status_code=status.HTTP_404_NOT_FOUND)

    if download:
        try:
            stream = await storage.open_object(object_key)
        except ObjectNotFound:
            return send_response(False, "File not found", status_code=status.HTTP_404_NOT_FOUND)
        except StorageError as exc:
            return send_response(
                False,
                f"Error downloading file: {exc}",
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        headers = {
            "Content-Disposition": _content_disposition(stream.descriptor.name),
            "Content-Length": str(stream.descriptor.size),
        }
        return StreamingResponse(
            stream.iter_chunks(),
            media_type=DEFAULT_CONTENT_TYPE,
            headers=headers,
            background=BackgroundTask(stream.close),
        )

    try:
        url = await storage.presigned_url(object_key, settings.download_url_ttl)
    except URLSigningFailed as exc:
        return send_response(
            False,
            f"Error generating URL: {exc}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.delete("/files/{object_key:path}")
async def delete_file(
    object_key: str,
    storage: StorageService = Depends(get_storage),
) -> Response:
    if not object_key:
        raise RequestInvalid("Object name is required")

    try:
        await storage.delete_object(object_key)
    except StorageError as exc:
        return send_response(
            False,
            f"Error deleting file: {exc}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    return send_response(True, "File deleted successfully")
