from typing import Optional

from fastapi import HTTPException
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from file_drop import config
from file_drop.logger_config import setup_logger

logger = setup_logger()

LIMITED_CONTENT_TYPES = ("application/json", "application/x-www-form-urlencoded")


class BodySizeLimitMiddleware:
    """Reject JSON and urlencoded bodies larger than max_size.

    A declared Content-Length is checked up front. Bodies without one
    (chunked) are counted as they are received and cut off at the limit.
    Multipart uploads are left to the upload route, which enforces the
    same ceiling on the file content itself.
    """

    def __init__(self, app: ASGIApp, max_size: Optional[int] = None):
        self.app = app
        self.max_size = max_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        max_size = self.max_size if self.max_size is not None else config.MAX_FILE_SIZE
        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope["headers"]}
        content_type = headers.get("content-type", "").split(";")[0].strip().lower()
        content_length = headers.get("content-length")

        if content_type not in LIMITED_CONTENT_TYPES:
            await self.app(scope, receive, send)
            return

        if content_length is not None:
            try:
                declared = int(content_length)
            except ValueError:
                response = PlainTextResponse("Invalid Content-Length header", status_code=400)
                await response(scope, receive, send)
                return

            if declared > max_size:
                logger.warning(f"Rejected {content_type} body of {declared} bytes on {scope['path']}")
                response = PlainTextResponse("Request entity too large", status_code=413)
                await response(scope, receive, send)
                return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > max_size:
                    logger.warning(f"Rejected {content_type} body over {max_size} bytes on {scope['path']}")
                    raise HTTPException(status_code=413, detail="Request entity too large")
            return message

        await self.app(scope, limited_receive, send)
