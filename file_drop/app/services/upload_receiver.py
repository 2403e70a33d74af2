"""Streaming multipart upload handling.

The request body is read straight from the ASGI receive channel and fed to
python-multipart, so the size ceiling stops an upload as soon as it is
crossed instead of after the whole body has been spooled.
"""

import asyncio
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.requests import ClientDisconnect, Request

from file_drop import config
from file_drop.app.services.storage_manager import StorageManager
from file_drop.logger_config import setup_logger

logger = setup_logger()

# Room for boundaries and part headers on top of the file itself
MULTIPART_OVERHEAD = 64 * 1024

FILE_FIELD = "file"


class FileTooLargeError(Exception):
    def __init__(self, limit: int):
        super().__init__(f"File exceeds the {limit} byte limit")
        self.limit = limit


class NoFileError(Exception):
    """The request carried no file in the upload field."""


class UnexpectedFieldError(Exception):
    def __init__(self, field_name: str):
        super().__init__("Unexpected field")
        self.field_name = field_name


class UploadTimeoutError(Exception):
    def __init__(self, idle_seconds: float):
        super().__init__(f"No data received for {idle_seconds}s")
        self.idle_seconds = idle_seconds


class RequestError(Exception):
    """The transport failed while the body was being received."""


def decode_header(value: bytes) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("latin-1")


class MultipartUploadReceiver:
    """Receives one upload and stores it under its client filename.

    Content goes to a temporary file first and is renamed into the storage
    directory only once the whole part has arrived, so a rejected or
    aborted upload never replaces an existing file.

    idle_timeout bounds each wait for the next piece of the body, not the
    upload as a whole: a slow transfer that keeps sending is never cut off.
    """

    def __init__(
        self,
        request: Request,
        storage_manager: StorageManager,
        max_size: Optional[int] = None,
        idle_timeout: Optional[float] = None,
    ):
        self.request = request
        self.storage_manager = storage_manager
        self.max_size = max_size if max_size is not None else config.MAX_FILE_SIZE
        self.idle_timeout = idle_timeout if idle_timeout is not None else config.UPLOAD_TIMEOUT_SECONDS

        self.filename: Optional[str] = None
        self.size = 0
        self.bytes_received = 0

        self._events: List[Tuple[str, bytes]] = []
        self._headers: List[Tuple[bytes, bytes]] = []
        self._header_field = b""
        self._header_value = b""
        self._file_part_seen = False
        self._complete = False
        self._temp_path: Optional[Path] = None
        self._out = None

    async def receive(self) -> Tuple[str, int]:
        """Read the request body and store the uploaded file.

        Returns the stored filename and its size in bytes.
        """
        self._check_declared_length()

        committed = False
        try:
            await self._consume()
            if not self._complete:
                raise NoFileError()
            await self.storage_manager.commit(self._temp_path, self.filename)
            committed = True
        finally:
            if not committed:
                await self._discard()

        return self.filename, self.size

    def _check_declared_length(self) -> None:
        content_length = self.request.headers.get("content-length")
        if content_length is None:
            return
        try:
            declared = int(content_length)
        except ValueError:
            return
        if declared > self.max_size + MULTIPART_OVERHEAD:
            raise FileTooLargeError(self.max_size)

    async def _consume(self) -> None:
        content_type, params = parse_options_header(self.request.headers.get("content-type"))
        if content_type != b"multipart/form-data":
            raise NoFileError()

        boundary = params.get(b"boundary")
        if not boundary:
            raise ValueError("Missing boundary in multipart.")

        parser = MultipartParser(boundary, {
            "on_part_begin": self._on_part_begin,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
        })

        while True:
            message = await self._next_message()
            if message["type"] == "http.disconnect":
                raise ClientDisconnect()

            body = message.get("body", b"")
            if body:
                self.bytes_received += len(body)
                parser.write(body)
                await self._handle_events()

            if not message.get("more_body", False):
                break

        parser.finalize()
        await self._handle_events()

    async def _next_message(self) -> dict:
        try:
            return await asyncio.wait_for(self.request.receive(), timeout=self.idle_timeout)
        except asyncio.TimeoutError:
            raise UploadTimeoutError(self.idle_timeout) from None
        except Exception as e:
            raise RequestError(str(e)) from e

    # Parser callbacks only queue events; the file I/O happens in _handle_events

    def _on_part_begin(self) -> None:
        self._events.append(("part_begin", b""))

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        self._events.append(("part_data", data[start:end]))

    def _on_part_end(self) -> None:
        self._events.append(("part_end", b""))

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers.append((self._header_field.lower(), self._header_value))
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self) -> None:
        headers, self._headers = self._headers, []
        disposition = dict(headers).get(b"content-disposition", b"")
        self._events.append(("headers_finished", disposition))

    async def _handle_events(self) -> None:
        events, self._events = self._events, []
        for kind, data in events:
            if kind == "headers_finished":
                await self._start_part(data)
            elif kind == "part_data":
                await self._write(data)
            elif kind == "part_end":
                await self._finish_part()

    async def _start_part(self, disposition: bytes) -> None:
        _, options = parse_options_header(disposition)
        raw_filename = options.get(b"filename")
        if raw_filename is None:
            # Plain form field, its value is not needed
            return

        field_name = decode_header(options.get(b"name", b""))
        if field_name != FILE_FIELD or self._file_part_seen:
            raise UnexpectedFieldError(field_name)
        self._file_part_seen = True

        filename = self.storage_manager.safe_name(decode_header(raw_filename))
        if not filename or filename in (".", ".."):
            # Browsers send an empty filename when nothing was picked
            return

        self.filename = filename
        self._temp_path = self.storage_manager.temp_path()
        self._out = await aiofiles.open(self._temp_path, 'wb')

    async def _write(self, data: bytes) -> None:
        if self._out is None:
            return
        self.size += len(data)
        if self.size > self.max_size:
            raise FileTooLargeError(self.max_size)
        await self._out.write(data)

    async def _finish_part(self) -> None:
        if self._out is None:
            return
        await self._out.close()
        self._out = None
        self._complete = True

    async def _discard(self) -> None:
        if self._out is not None:
            await self._out.close()
            self._out = None
        if self._temp_path is not None:
            await self.storage_manager.discard(self._temp_path)
