"""
HTTP-backed GCS FileIO for icefloe.iops

Talks to the GCS XML/JSON endpoints directly through a pooled requests
session. Uploads are write-once (`ifGenerationMatch=0`) unless overwrite is
requested; reads support byte ranges so scan splits never pull whole files.
"""

import io
import logging
import os
import urllib.parse
from typing import List
from typing import Tuple
from typing import Union

import requests
from google.auth.transport.requests import Request
from requests.adapters import HTTPAdapter

from ..exceptions import FileAlreadyExists
from ..exceptions import TransientIOError
from .base import FileIO
from .base import InputFile
from .base import OutputFile

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


def _get_storage_credentials():
    from google.cloud import storage

    if os.environ.get("STORAGE_EMULATOR_HOST"):
        from google.auth.credentials import AnonymousCredentials

        storage_client = storage.Client(credentials=AnonymousCredentials())
    else:
        storage_client = storage.Client()
    return storage_client._credentials


def _split(path: str) -> Tuple[str, str]:
    if path.startswith("gs://"):
        path = path[5:]
    bucket = path.split("/", 1)[0]
    return bucket, path[(len(bucket) + 1) :]


def _object_url(path: str) -> str:
    bucket, name = _split(path)
    return f"https://storage.googleapis.com/{bucket}/{urllib.parse.quote(name, safe='')}"


def _raise_for_status(response: requests.Response, action: str, path: str, ok=(200,)) -> None:
    if response.status_code in ok:
        return
    if response.status_code == 404:
        raise FileNotFoundError(f"Unable to {action} '{path}' - not found")
    if response.status_code in RETRYABLE_STATUS:
        raise TransientIOError(f"Unable to {action} '{path}' - status {response.status_code}")
    raise IOError(f"Unable to {action} '{path}' - status {response.status_code}: {response.text}")


class _Session:
    """A pooled requests session plus an auto-refreshing bearer token."""

    def __init__(self, credentials):
        self._credentials = credentials
        self.http = requests.session()
        adapter = HTTPAdapter(pool_connections=100, pool_maxsize=100)
        self.http.mount("https://", adapter)

    def headers(self, **extra) -> dict:
        if not self._credentials.valid:
            self._credentials.refresh(Request())
        return {"Authorization": f"Bearer {self._credentials.token}", **extra}

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.http.request(method, url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as err:
            raise TransientIOError(f"{method} {url} failed: {err}") from err


class _GcsOutputStream(io.BytesIO):
    def __init__(self, path: str, session: _Session, overwrite: bool):
        super().__init__()
        self._path = path
        self._session = session
        self._overwrite = overwrite
        self._closed = False

    def close(self):
        if self._closed:
            return

        bucket, object_name = _split(self._path)
        url = f"https://storage.googleapis.com/upload/storage/v1/b/{bucket}/o"
        data = self.getvalue()
        params = {"uploadType": "media", "name": object_name}
        if not self._overwrite:
            params["ifGenerationMatch"] = "0"

        response = self._session.request(
            "POST",
            url,
            params=params,
            headers=self._session.headers(
                **{"Content-Type": "application/octet-stream", "Content-Length": str(len(data))}
            ),
            data=data,
            timeout=60,
        )
        if response.status_code == 412:
            raise FileAlreadyExists(f"Object already exists: {self._path}")
        _raise_for_status(response, "write", self._path, ok=(200, 201))

        self._closed = True
        super().close()


class _GcsInputFile(InputFile):
    def __init__(self, location: str, session: _Session):
        super().__init__(location)
        self._session = session

    def _get(self, headers: dict) -> bytes:
        response = self._session.request(
            "GET",
            _object_url(self.location),
            headers=self._session.headers(**{"Accept-Encoding": "identity", **headers}),
            timeout=30,
        )
        _raise_for_status(response, "read", self.location, ok=(200, 206))
        return response.content

    def _head(self) -> requests.Response:
        return self._session.request(
            "HEAD", _object_url(self.location), headers=self._session.headers(), timeout=10
        )

    def exists(self) -> bool:
        response = self._head()
        if response.status_code in RETRYABLE_STATUS:
            raise TransientIOError(f"Unable to stat '{self.location}' - status {response.status_code}")
        return response.status_code == 200

    def length(self) -> int:
        response = self._head()
        _raise_for_status(response, "stat", self.location)
        return int(response.headers.get("Content-Length", 0))

    def open(self):
        return io.BytesIO(self._get({}))

    def read_range(self, offset: int, length: int) -> bytes:
        if length <= 0:
            return b""
        return self._get({"Range": f"bytes={offset}-{offset + length - 1}"})


class _GcsOutputFile(OutputFile):
    def __init__(self, location: str, session: _Session):
        super().__init__(location)
        self._session = session

    def exists(self) -> bool:
        return _GcsInputFile(self.location, self._session).exists()

    def create(self, overwrite: bool = False):
        return _GcsOutputStream(self.location, self._session, overwrite)


class GcsFileIO(FileIO):
    """HTTP-backed GCS FileIO.

    Exposes `new_input`, `new_output`, `delete`, `exists` and `list_prefix`.
    """

    def __init__(self, credentials=None):
        self._session = _Session(credentials or _get_storage_credentials())

    def new_input(self, location: str) -> InputFile:
        return _GcsInputFile(location, self._session)

    def new_output(self, location: str) -> OutputFile:
        logger.info(f"new_output -> {location}")

        return _GcsOutputFile(location, self._session)

    def delete(self, location: Union[str, InputFile, OutputFile]) -> None:
        if isinstance(location, (InputFile, OutputFile)):
            location = location.location

        bucket, name = _split(location)
        object_full_path = urllib.parse.quote(name, safe="")
        url = f"https://storage.googleapis.com/storage/v1/b/{bucket}/o/{object_full_path}"

        response = self._session.request(
            "DELETE", url, headers=self._session.headers(), timeout=10
        )
        _raise_for_status(response, "delete", location, ok=(200, 204, 404))

    def exists(self, location: str) -> bool:
        return _GcsInputFile(location, self._session).exists()

    def list_prefix(self, prefix: str) -> List[str]:
        bucket, name = _split(prefix)
        url = f"https://storage.googleapis.com/storage/v1/b/{bucket}/o"
        params = {"prefix": name, "fields": "items(name),nextPageToken"}
        found: List[str] = []
        while True:
            response = self._session.request(
                "GET", url, params=params, headers=self._session.headers(), timeout=30
            )
            _raise_for_status(response, "list", prefix)
            body = response.json()
            found.extend(f"gs://{bucket}/{item['name']}" for item in body.get("items", []))
            token = body.get("nextPageToken")
            if not token:
                return sorted(found)
            params["pageToken"] = token
