"""
Streaming pass-through of Drive file content.

Metadata is fetched first, then the content download is opened and its
first chunk read before any header goes out, so an empty or failing upstream
turns into an error response instead of an empty 200. After that, bytes are
relayed only as fast as the client drains them. A mid-transfer failure is
re-raised, which aborts the response rather than truncating it.
"""
import logging
from typing import AsyncIterator
from urllib.parse import quote

import httpx
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from portal_backend.drive import DriveClient, DriveContent, transport_error
from portal_backend.errors import InternalError
from portal_backend.models import FileMetadata

logger = logging.getLogger(__name__)

FALLBACK_CONTENT_TYPE = "application/pdf"
CACHE_CONTROL = "public, max-age=3600, s-maxage=3600"


def content_disposition(name: str) -> str:
    """inline disposition with an ASCII fallback name plus the RFC 5987 UTF-8 form"""
    name = name or "document"
    ascii_name = name.encode("ascii", "replace").decode("ascii").replace("?", "_")
    ascii_name = ascii_name.replace('"', "'").replace("\\", "_").replace("\r", "").replace("\n", "")
    return f"inline; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(name, safe='')}"


async def _relay(content: DriveContent, first_chunk: bytes, file_id: str) -> AsyncIterator[bytes]:
    try:
        yield first_chunk
        while True:
            chunk = await content.next_chunk()
            if chunk is None:
                break
            yield chunk
    except httpx.HTTPError as e:
        logger.error(f"Drive stream for {file_id} failed mid-transfer: {e}")
        raise
    finally:
        await content.aclose()


async def fetch_and_stream(drive: DriveClient, file_id: str) -> tuple[FileMetadata, AsyncIterator[bytes]]:
    metadata = await drive.get_metadata(file_id)
    content = await drive.open_content(file_id)

    try:
        first_chunk = await content.next_chunk()
    except httpx.HTTPError as e:
        await content.aclose()
        raise transport_error(e, "download", file_id)

    if first_chunk is None:
        await content.aclose()
        logger.error(f"Drive returned an empty body for {file_id}")
        raise InternalError("Failed to fetch file")

    return metadata, _relay(content, first_chunk, file_id)


async def stream_file(drive: DriveClient, file_id: str, background: BackgroundTask = None) -> StreamingResponse:
    metadata, body = await fetch_and_stream(drive, file_id)
    return StreamingResponse(
        body,
        media_type=metadata.mime_type or FALLBACK_CONTENT_TYPE,
        headers={
            "Content-Disposition": content_disposition(metadata.name),
            "Cache-Control": CACHE_CONTROL,
        },
        background=background
    )
