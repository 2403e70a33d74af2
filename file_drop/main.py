import mimetypes
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List
from urllib.parse import quote

import aiofiles
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles
from starlette.requests import ClientDisconnect

from file_drop import config
from file_drop.app.middleware.body_limit import BodySizeLimitMiddleware
from file_drop.app.models.stored_file import FileInfo
from file_drop.app.services.retention_sweeper import RetentionSweeper
from file_drop.app.services.storage_manager import StorageManager
from file_drop.app.services.upload_receiver import (
    FileTooLargeError,
    MultipartUploadReceiver,
    NoFileError,
    RequestError,
    UnexpectedFieldError,
    UploadTimeoutError,
)
from file_drop.logger_config import setup_logger

# Logger setup
logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create the storage directory, then start purging expired files
    app.state.storage_manager = StorageManager(
        Path(config.UPLOAD_DIR),
        Path(config.TEMP_DIR),
        expiry_seconds=config.FILE_EXPIRY_SECONDS,
    )
    await app.state.storage_manager.initialize()

    app.state.retention_sweeper = RetentionSweeper(
        app.state.storage_manager,
        interval_seconds=config.CLEANUP_INTERVAL_SECONDS,
        threshold_seconds=config.FILE_EXPIRY_SECONDS,
    )
    await app.state.retention_sweeper.start()
    yield
    await app.state.retention_sweeper.stop()


# Create FastAPI app with lifespan
app = FastAPI(title="File Drop", lifespan=lifespan)
app.add_middleware(BodySizeLimitMiddleware)
app.add_middleware(GZipMiddleware)


def content_disposition(filename: str) -> str:
    """Build an attachment Content-Disposition header for filename."""
    try:
        filename.encode('ascii')
    except UnicodeEncodeError:
        return f"attachment; filename*=utf-8''{quote(filename)}"
    escaped = filename.replace('\\', '\\\\').replace('"', '\\"')
    return f'attachment; filename="{escaped}"'


@app.post("/upload")
async def upload_file(request: Request):
    """Store the single file sent in the `file` field of a multipart form.

    A file with the same name is overwritten.
    """
    storage_manager = request.app.state.storage_manager
    logger.debug(f"Receiving upload, Content-Length: {request.headers.get('content-length')}")

    receiver = MultipartUploadReceiver(
        request,
        storage_manager,
        max_size=config.MAX_FILE_SIZE,
        idle_timeout=config.UPLOAD_TIMEOUT_SECONDS,
    )
    try:
        filename, size = await receiver.receive()
    except FileTooLargeError as e:
        logger.error(f"File upload error: {e} (received {receiver.bytes_received} bytes)")
        return PlainTextResponse("File too large", status_code=413)
    except NoFileError:
        return PlainTextResponse("No file selected", status_code=400)
    except UnexpectedFieldError as e:
        logger.error(f"File upload error: Unexpected field {e.field_name!r}")
        return PlainTextResponse("Upload error: Unexpected field", status_code=500)
    except ClientDisconnect:
        logger.info("Upload aborted by client")
        # Nobody is left to read this
        return Response(status_code=400)
    except UploadTimeoutError as e:
        logger.error(f"Request error: {e}")
        return PlainTextResponse("Upload error: Upload timed out", status_code=500)
    except RequestError as e:
        logger.error(f"Request error: {e}")
        return PlainTextResponse(f"Upload error: {e}", status_code=500)
    except Exception as e:
        logger.error(f"File upload error: {e}", exc_info=True)
        return PlainTextResponse(f"Upload error: {e}", status_code=500)

    logger.info(f"File uploaded: {filename} ({size / 1024 / 1024:.2f} MB)")
    return PlainTextResponse("Upload complete", status_code=200)


@app.get("/files", response_model=List[FileInfo])
async def list_files(request: Request):
    """List stored files with their upload and expiry times."""
    storage_manager = request.app.state.storage_manager
    try:
        return await storage_manager.list_files()
    except OSError as e:
        logger.error(f"Unable to list files: {e}")
        return JSONResponse(status_code=500, content={"error": "Unable to list files."})


@app.get("/download/{filename}")
async def download_file(filename: str, request: Request):
    """Stream a stored file back as an attachment."""
    storage_manager = request.app.state.storage_manager
    logger.info(f"Receiving download request for: {filename}")

    if not await storage_manager.exists(filename):
        raise HTTPException(status_code=404, detail="File not found")

    file_path = storage_manager.resolve(filename)
    try:
        size = await storage_manager.get_size(filename)
    except FileNotFoundError:
        # Swept between the existence check and now
        raise HTTPException(status_code=404, detail="File not found")

    content_type, _ = mimetypes.guess_type(filename)
    headers = {
        'content-disposition': content_disposition(filename),
        'content-length': str(size),
    }

    async def file_iterator():
        async with aiofiles.open(file_path, 'rb') as file:
            while chunk := await file.read(config.CHUNK_SIZE):
                yield chunk

    return StreamingResponse(
        file_iterator(),
        media_type=content_type or "application/octet-stream",
        headers=headers,
    )


# Client page and assets; mounted last so the API routes win
app.mount("/", StaticFiles(directory=config.STATIC_DIR, html=True), name="static")


def run():
    logger.info("Starting file drop server...")
    logger.info(f"Upload directory: {Path(config.UPLOAD_DIR).resolve()}")
    logger.info(f"Static directory: {config.STATIC_DIR}")
    logger.info(f"Maximum file size: {config.MAX_FILE_SIZE / (1024*1024):.2f} MB")
    logger.info(f"Server running on port {config.PORT}")
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
