from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse

from crmsync.logging_config import get_logger

logger = get_logger("media_router")

router = APIRouter()


@router.get("/media/{path:path}")
async def serve_media(path: str, request: Request):
    """Serve relayed attachments from local media storage."""
    file_path = request.app.state.media_storage.resolve(path)
    if file_path is None:
        logger.warning("Media not found", extra={"context": {"path": path}})
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(file_path)
