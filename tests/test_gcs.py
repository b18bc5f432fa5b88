from unittest import mock

import pytest
import requests

from icefloe.exceptions import FileAlreadyExists
from icefloe.exceptions import TransientIOError
from icefloe.iops.gcs import GcsFileIO


class FakeCredentials:
    valid = True
    token = "token"

    def refresh(self, request):
        self.valid = True


def _response(status_code=200, content=b"", payload=None, headers=None):
    response = mock.Mock(spec=requests.Response)
    response.status_code = status_code
    response.content = content
    response.text = content.decode("utf-8", "replace")
    response.headers = headers or {}
    response.json.return_value = payload or {}
    return response


@pytest.fixture
def gcs():
    io = GcsFileIO(credentials=FakeCredentials())
    io._session.http = mock.Mock()
    return io


def test_writes_are_conditional(gcs):
    gcs._session.http.request.return_value = _response(200)
    gcs.write("gs://bucket/wh/db/t/metadata/v1.metadata.json", b"{}")
    _, kwargs = gcs._session.http.request.call_args
    assert kwargs["params"]["ifGenerationMatch"] == "0"
    assert kwargs["params"]["name"] == "wh/db/t/metadata/v1.metadata.json"
    assert kwargs["headers"]["Authorization"] == "Bearer token"

    gcs.write("gs://bucket/wh/db/t/metadata/version-hint.text", b"1", overwrite=True)
    _, kwargs = gcs._session.http.request.call_args
    assert "ifGenerationMatch" not in kwargs["params"]


def test_existing_object_is_reported(gcs):
    gcs._session.http.request.return_value = _response(412)
    with pytest.raises(FileAlreadyExists):
        gcs.write("gs://bucket/a", b"data")


def test_ranged_reads(gcs):
    gcs._session.http.request.return_value = _response(206, content=b"cd")
    assert gcs.new_input("gs://bucket/dir/file name").read_range(2, 2) == b"cd"
    args, kwargs = gcs._session.http.request.call_args
    assert args[1] == "https://storage.googleapis.com/bucket/dir%2Ffile%20name"
    assert kwargs["headers"]["Range"] == "bytes=2-3"


def test_exists_and_length(gcs):
    gcs._session.http.request.return_value = _response(404)
    assert not gcs.exists("gs://bucket/missing")
    gcs._session.http.request.return_value = _response(200, headers={"Content-Length": "42"})
    assert gcs.new_input("gs://bucket/present").length() == 42


def test_server_errors_are_transient(gcs):
    gcs._session.http.request.return_value = _response(503)
    with pytest.raises(TransientIOError):
        gcs.read("gs://bucket/a")
    gcs._session.http.request.side_effect = requests.ConnectionError("reset")
    with pytest.raises(TransientIOError):
        gcs.exists("gs://bucket/a")


def test_missing_objects(gcs):
    gcs._session.http.request.return_value = _response(404)
    with pytest.raises(FileNotFoundError):
        gcs.read("gs://bucket/a")
    # deleting something already gone is fine
    gcs.delete("gs://bucket/a")


def test_list_prefix_follows_pages(gcs):
    gcs._session.http.request.side_effect = [
        _response(200, payload={"items": [{"name": "wh/b"}], "nextPageToken": "p2"}),
        _response(200, payload={"items": [{"name": "wh/a"}]}),
    ]
    assert gcs.list_prefix("gs://bucket/wh/") == ["gs://bucket/wh/a", "gs://bucket/wh/b"]
    _, kwargs = gcs._session.http.request.call_args
    assert kwargs["params"]["pageToken"] == "p2"
