"""
Google Drive client.

Metadata and content downloads go through httpx so the proxy can stream
bytes as the caller pulls them. Export, upload and sharing are one-shot
calls made with the Drive API client, run in the threadpool.

Every call classifies provider failures into the portal error taxonomy. Raw
provider responses are logged here and never passed to callers.
"""
import io
import logging
from typing import Optional

import google_auth_httplib2
import httplib2
import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload
from starlette.concurrency import run_in_threadpool

from portal_backend.errors import (
    InternalError,
    UpstreamNotFound,
    UpstreamPermissionDenied,
    UpstreamTimeout,
)
from portal_backend.models import FileMetadata

logger = logging.getLogger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
GOOGLE_DOC_MIME = "application/vnd.google-apps.document"


def _raise_for_status(status: int, body: str, action: str, file_id: Optional[str]) -> None:
    logger.error(f"Drive {action} failed for {file_id}: {status} - {body[:500]}")
    if status == 403:
        raise UpstreamPermissionDenied()
    if status == 404:
        raise UpstreamNotFound()
    raise InternalError("Failed to fetch file")


def raise_for_drive_status(response: httpx.Response, action: str, file_id: Optional[str] = None) -> None:
    if response.is_success:
        return

    try:
        body = response.text
    except httpx.ResponseNotRead:
        body = "<streamed body>"
    _raise_for_status(response.status_code, body, action, file_id)


def transport_error(e: httpx.HTTPError, action: str, file_id: Optional[str]) -> Exception:
    if isinstance(e, httpx.TimeoutException):
        logger.error(f"Drive {action} timed out for {file_id}")
        return UpstreamTimeout()
    logger.error(f"Drive {action} transport error for {file_id}: {e}")
    return InternalError("Failed to fetch file")


class DriveContent:
    """An open streaming download; must be closed with aclose()"""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self.client = client
        self.response = response
        self._chunks = response.aiter_bytes()

    async def next_chunk(self) -> Optional[bytes]:
        """Next non-empty chunk, or None at end of stream"""
        async for chunk in self._chunks:
            if chunk:
                return chunk
        return None

    async def aclose(self) -> None:
        try:
            await self.response.aclose()
        finally:
            await self.client.aclose()


class DriveClient:
    """
    Drive access with one bearer token (service account or delegated user).

    `transport` is the httpx transport for streaming calls and `http` the
    httplib2-compatible connection for API client calls; both default to
    real network connections.
    """

    def __init__(self, access_token: str, timeout: float = 30.0, transport=None, http=None):
        self.access_token = access_token
        self.timeout = timeout
        self.transport = transport
        self.http = http

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=self.timeout,
            transport=self.transport
        )

    def _service(self):
        base = self.http if self.http is not None else httplib2.Http(timeout=self.timeout)
        authed = google_auth_httplib2.AuthorizedHttp(Credentials(token=self.access_token), http=base)
        return build("drive", "v3", http=authed, cache_discovery=False)

    def _run(self, make_request):
        return make_request(self._service()).execute()

    async def _execute(self, make_request, action: str, file_id: Optional[str] = None):
        """Build and execute one API client request off the event loop"""
        try:
            return await run_in_threadpool(self._run, make_request)
        except HttpError as e:
            body = e.content.decode("utf-8", errors="replace") if isinstance(e.content, bytes) else str(e.content)
            _raise_for_status(e.resp.status, body, action, file_id)
        except TimeoutError:
            logger.error(f"Drive {action} timed out for {file_id}")
            raise UpstreamTimeout()
        except (OSError, httplib2.HttpLib2Error) as e:
            logger.error(f"Drive {action} transport error for {file_id}: {e}")
            raise InternalError("Failed to fetch file")

    async def get_metadata(self, file_id: str) -> FileMetadata:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{DRIVE_API_BASE}/files/{file_id}",
                    params={"fields": "mimeType,name", "supportsAllDrives": "true"}
                )
        except httpx.HTTPError as e:
            raise transport_error(e, "metadata", file_id)
        raise_for_drive_status(response, "metadata", file_id)
        data = response.json()
        return FileMetadata(mime_type=data.get("mimeType"), name=data.get("name"))

    async def open_content(self, file_id: str) -> DriveContent:
        """Start a streaming download; the body is read only as the caller pulls it"""
        client = self._client()
        try:
            request = client.build_request(
                "GET", f"{DRIVE_API_BASE}/files/{file_id}",
                params={"alt": "media", "supportsAllDrives": "true"}
            )
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise transport_error(e, "download", file_id)

        if not response.is_success:
            await response.aread()
            await response.aclose()
            await client.aclose()
            raise_for_drive_status(response, "download", file_id)
        return DriveContent(client, response)

    async def download(self, file_id: str, max_bytes: int) -> bytes:
        """Whole-file download for server-side processing, bounded by max_bytes"""
        content = await self.open_content(file_id)
        buffer = bytearray()
        try:
            while True:
                try:
                    chunk = await content.next_chunk()
                except httpx.HTTPError as e:
                    raise transport_error(e, "download", file_id)
                if chunk is None:
                    break
                buffer.extend(chunk)
                if len(buffer) > max_bytes:
                    raise FileTooLarge(max_bytes)
        finally:
            await content.aclose()
        return bytes(buffer)

    async def export_pdf(self, file_id: str) -> bytes:
        return await self._execute(
            lambda service: service.files().export(fileId=file_id, mimeType="application/pdf"),
            "export", file_id
        )

    async def create_file(self, name: str, folder_id: str, content: bytes, mime_type: Optional[str]) -> dict:
        """Multipart upload of a new file into folder_id"""
        media = MediaIoBaseUpload(
            io.BytesIO(content),
            mimetype=mime_type or "application/octet-stream",
            resumable=False
        )
        return await self._execute(
            lambda service: service.files().create(
                body={"name": name, "parents": [folder_id]},
                media_body=media,
                fields="id,webViewLink,webContentLink",
                supportsAllDrives=True
            ),
            "upload"
        )

    async def grant_reader(self, file_id: str, email: str) -> dict:
        """Share file_id read-only with email, without notifying anyone"""
        return await self._execute(
            lambda service: service.permissions().create(
                fileId=file_id,
                body={"role": "reader", "type": "user", "emailAddress": email},
                sendNotificationEmail=False,
                supportsAllDrives=True,
                fields="id"
            ),
            "permission grant", file_id
        )


class FileTooLarge(Exception):
    def __init__(self, max_bytes: int):
        super().__init__(f"File exceeds {max_bytes} bytes")
        self.max_bytes = max_bytes
