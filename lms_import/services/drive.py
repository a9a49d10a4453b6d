"""Google Drive access for the import pipeline.

Wraps the Drive v3 API behind a small surface: paginated folder listing,
metadata lookup, and chunked downloads into caller-supplied file objects so
large media never has to sit in memory. ``walk`` turns a folder into the
pre-order node stream the task model is built from.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import IO, Any, Callable, Iterator

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload

from lms_import.core.config import Settings, get_settings
from lms_import.core.errors import DriveError, OrchestratorFatalError, ValidationError

LOGGER = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
GOOGLE_APPS_PREFIX = "application/vnd.google-apps."
DOWNLOAD_CHUNK_SIZE = 8 * 1024 * 1024

_LIST_FIELDS = "nextPageToken, files(id, name, mimeType, parents, md5Checksum, modifiedTime, size)"
_FOLDER_ID_PATTERNS = (
    re.compile(r"/folders/([a-zA-Z0-9_-]+)"),
    re.compile(r"[?&]id=([a-zA-Z0-9_-]+)"),
    re.compile(r"/d/([a-zA-Z0-9_-]+)"),
)
_BARE_ID = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass(frozen=True)
class DriveFile:
    id: str
    name: str
    mime_type: str
    parents: tuple[str, ...] = ()
    revision: str | None = None
    size: int | None = None

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_google_native(self) -> bool:
        return self.mime_type.startswith(GOOGLE_APPS_PREFIX)

    @property
    def view_url(self) -> str:
        return f"https://drive.google.com/file/d/{self.id}/view"

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "DriveFile":
        size = payload.get("size")
        return cls(
            id=payload["id"],
            name=payload.get("name") or payload["id"],
            mime_type=payload.get("mimeType") or "application/octet-stream",
            parents=tuple(payload.get("parents") or ()),
            revision=payload.get("md5Checksum") or payload.get("modifiedTime"),
            size=int(size) if size is not None else None,
        )


@dataclass(frozen=True)
class DriveNode:
    """A Drive item positioned in the import tree.

    ``path`` holds item names from the first level below the import root down
    to the item itself, ``id_path`` the matching Drive ids. ``depth`` is 0 for
    direct children of the root. ``order_index`` is the item's position among
    its siblings in the listing.
    """

    file: DriveFile
    path: tuple[str, ...]
    id_path: tuple[str, ...]
    order_index: int = 0

    @property
    def name(self) -> str:
        return self.file.name

    @property
    def mime_type(self) -> str:
        return self.file.mime_type

    @property
    def is_folder(self) -> bool:
        return self.file.is_folder

    @property
    def depth(self) -> int:
        return len(self.path) - 1


def extract_folder_id(value: str) -> str:
    """Return the Drive folder id from a share URL or a bare id."""

    candidate = (value or "").strip()
    if not candidate:
        raise ValidationError("A Drive folder URL or id is required")
    for pattern in _FOLDER_ID_PATTERNS:
        match = pattern.search(candidate)
        if match:
            return match.group(1)
    if _BARE_ID.match(candidate):
        return candidate
    raise ValidationError(f"Not a Google Drive folder URL: {candidate}")


def _load_service_account_info(raw: str) -> dict[str, Any]:
    cleaned = raw.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "'\"":
        cleaned = cleaned[1:-1]
    if "{" not in cleaned:
        try:
            cleaned = base64.b64decode(cleaned).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise OrchestratorFatalError("Service account key is neither JSON nor base64 JSON") from exc
    try:
        info = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise OrchestratorFatalError(f"Service account key is not valid JSON: {exc}") from exc
    if isinstance(info.get("private_key"), str):
        info["private_key"] = info["private_key"].replace("\\n", "\n")
    return info


def load_credentials(settings: Settings) -> service_account.Credentials:
    """Service account credentials from the environment, else from the key file."""

    if settings.google_service_account_json and settings.google_service_account_json.strip():
        info = _load_service_account_info(settings.google_service_account_json)
        LOGGER.info("Using Drive service account %s from environment", info.get("client_email"))
        return service_account.Credentials.from_service_account_info(info, scopes=SCOPES)

    key_file = settings.google_service_account_file
    if not key_file.exists():
        raise OrchestratorFatalError(
            f"Drive service account key not configured; set APP_GOOGLE_SERVICE_ACCOUNT_JSON "
            f"or place a key file at {key_file}"
        )
    LOGGER.info("Using Drive service account key file %s", key_file)
    return service_account.Credentials.from_service_account_file(str(key_file), scopes=SCOPES)


class DriveClient:
    """Thin wrapper over a Drive v3 ``Resource``."""

    def __init__(self, service: Any, *, page_size: int = 200, order_by: str | None = "name") -> None:
        self._service = service
        self._page_size = page_size
        self._order_by = order_by

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DriveClient":
        settings = settings or get_settings()
        credentials = load_credentials(settings)
        service = build("drive", "v3", credentials=credentials, cache_discovery=False)
        return cls(service, page_size=settings.drive_page_size, order_by=settings.drive_order_by)

    def _execute(self, request: Any, what: str) -> Any:
        try:
            return request.execute()
        except HttpError as exc:
            raise DriveError(f"Drive API error while {what}: {exc}") from exc

    def list_children(self, folder_id: str) -> Iterator[DriveFile]:
        params: dict[str, Any] = {
            "q": f"'{folder_id}' in parents and trashed = false",
            "fields": _LIST_FIELDS,
            "pageSize": self._page_size,
            "supportsAllDrives": True,
            "includeItemsFromAllDrives": True,
        }
        if self._order_by:
            params["orderBy"] = self._order_by

        page_token: str | None = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            response = self._execute(self._service.files().list(**params), f"listing folder {folder_id}")
            for item in response.get("files", []):
                yield DriveFile.from_api(item)
            page_token = response.get("nextPageToken")
            if not page_token:
                break

    def get_metadata(self, file_id: str) -> DriveFile:
        request = self._service.files().get(
            fileId=file_id,
            fields="id, name, mimeType, parents, md5Checksum, modifiedTime, size",
            supportsAllDrives=True,
        )
        return DriveFile.from_api(self._execute(request, f"reading metadata of {file_id}"))

    def download(self, file_id: str, fh: IO[bytes]) -> int:
        """Stream a binary file into ``fh``; returns the number of bytes written."""

        request = self._service.files().get_media(fileId=file_id, supportsAllDrives=True)
        return self._drain(request, fh, f"downloading {file_id}")

    def export(self, file_id: str, mime_type: str, fh: IO[bytes]) -> int:
        """Stream a Google-native document, converted to ``mime_type``, into ``fh``."""

        request = self._service.files().export_media(fileId=file_id, mimeType=mime_type)
        return self._drain(request, fh, f"exporting {file_id} as {mime_type}")

    def _drain(self, request: Any, fh: IO[bytes], what: str) -> int:
        start = fh.tell()
        downloader = MediaIoBaseDownload(fh, request, chunksize=DOWNLOAD_CHUNK_SIZE)
        done = False
        try:
            while not done:
                progress, done = downloader.next_chunk()
                if progress is not None:
                    LOGGER.debug("%s: %d%%", what, int(progress.progress() * 100))
        except HttpError as exc:
            raise DriveError(f"Drive API error while {what}: {exc}") from exc
        return fh.tell() - start


def walk(
    client: DriveClient,
    root_id: str,
    *,
    descend: Callable[[DriveNode], bool] | None = None,
) -> Iterator[DriveNode]:
    """Yield the tree under ``root_id`` in pre-order, in listing order.

    Folders are only expanded when ``descend`` accepts them; without a
    predicate every folder is expanded.
    """

    def _walk(folder_id: str, path: tuple[str, ...], id_path: tuple[str, ...]) -> Iterator[DriveNode]:
        for index, item in enumerate(client.list_children(folder_id)):
            node = DriveNode(
                file=item,
                path=path + (item.name,),
                id_path=id_path + (item.id,),
                order_index=index,
            )
            yield node
            if node.is_folder and (descend is None or descend(node)):
                yield from _walk(item.id, node.path, node.id_path)

    yield from _walk(root_id, (), ())


__all__ = [
    "DriveClient",
    "DriveFile",
    "DriveNode",
    "FOLDER_MIME_TYPE",
    "extract_folder_id",
    "load_credentials",
    "walk",
]
