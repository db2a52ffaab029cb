"""
services/upload/router.py
Listing image uploads to S3.
"""

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.concurrency import run_in_threadpool

from config.settings import settings
from services.upload.storage import S3Storage, StorageError, get_storage
from shared.middleware.auth import get_current_user, require_lister
from shared.models.models import User
from shared.schemas.schemas import SignedUrlResponse, StatusMessage, UploadResponse

router = APIRouter(prefix="/uploads", tags=["Uploads"])

PROPERTY_IMAGE_FOLDER = "properties"

_CONTENT_TYPES = {"jpg": "image/jpeg", "jpeg": "image/jpeg", "png": "image/png"}


def _validate_image(file: UploadFile, content: bytes) -> str:
    """Returns the lowercased extension or raises 422."""
    if len(content) > settings.UPLOAD_MAX_BYTES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"File too large. Maximum size is {settings.UPLOAD_MAX_BYTES // (1024 * 1024)} MB",
        )
    filename = file.filename or ""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext not in settings.allowed_upload_extensions:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unsupported file type. Allowed: {', '.join(settings.allowed_upload_extensions)}",
        )
    return ext


@router.post("/property-image", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_property_image(
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    storage: S3Storage = Depends(get_storage),
):
    """Upload one listing image (jpg/jpeg/png, up to 5 MB). Returns its public URL."""
    # One byte past the limit is enough to reject oversized files
    content = await file.read(settings.UPLOAD_MAX_BYTES + 1)
    ext = _validate_image(file, content)
    content_type = file.content_type or _CONTENT_TYPES.get(ext, "application/octet-stream")

    try:
        result = await run_in_threadpool(
            storage.upload_file, content, file.filename, content_type, PROPERTY_IMAGE_FOLDER
        )
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return UploadResponse(**result)


@router.delete("/property-image", response_model=StatusMessage)
async def delete_property_image(
    key: str = Query(..., min_length=1),
    current_user: User = Depends(require_lister),
    storage: S3Storage = Depends(get_storage),
):
    if not key.startswith(f"{PROPERTY_IMAGE_FOLDER}/"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid image key")
    try:
        await run_in_threadpool(storage.delete_file, key)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return StatusMessage(message="Image deleted")


@router.get("/signed-url", response_model=SignedUrlResponse)
async def signed_url(
    key: str = Query(..., min_length=1),
    expires_in: int = Query(3600, ge=60, le=604800),
    current_user: User = Depends(get_current_user),
    storage: S3Storage = Depends(get_storage),
):
    try:
        url = await run_in_threadpool(storage.get_signed_url, key, expires_in)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return SignedUrlResponse(url=url, expires_in=expires_in)
