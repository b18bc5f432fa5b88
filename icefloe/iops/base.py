"""FileIO abstractions.

Every metadata object is written exactly once under a unique path, so
`OutputFile.create()` refuses to replace an existing object unless
`overwrite=True` is passed. Backends raise `FileAlreadyExists` for that case
and `TransientIOError` for conditions worth retrying.
"""

from __future__ import annotations

import io
import logging
import os
import threading
import uuid
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

from pyarrow import fs as pafs

from ..exceptions import FileAlreadyExists

logger = logging.getLogger(__name__)


class InputFile:
    """A readable location. The base class serves bytes already in memory."""

    def __init__(self, location: str, content: Optional[bytes] = None):
        self.location = location
        self._content = content

    def exists(self) -> bool:
        return self._content is not None

    def length(self) -> int:
        if self._content is None:
            raise FileNotFoundError(self.location)
        return len(self._content)

    def open(self):
        """Return a seekable binary stream usable as a context manager."""
        if self._content is None:
            raise FileNotFoundError(self.location)
        return io.BytesIO(self._content)

    def read(self) -> bytes:
        with self.open() as f:
            return f.read()

    def read_range(self, offset: int, length: int) -> bytes:
        with self.open() as f:
            f.seek(offset)
            return f.read(length)


class OutputFile:
    def __init__(self, location: str):
        self.location = location

    def exists(self) -> bool:
        return False

    def create(self, overwrite: bool = False):
        """Return a writable stream; the object becomes visible on `close()`."""
        raise NotImplementedError()


class FileIO:
    def new_input(self, location: str) -> InputFile:
        raise NotImplementedError()

    def new_output(self, location: str) -> OutputFile:
        raise NotImplementedError()

    def delete(self, location: Union[str, InputFile, OutputFile]) -> None:
        raise NotImplementedError()

    def exists(self, location: str) -> bool:
        return self.new_input(location).exists()

    def list_prefix(self, prefix: str) -> List[str]:
        """Locations of the objects under `prefix`."""
        raise NotImplementedError()

    def read(self, location: str) -> bytes:
        return self.new_input(location).read()

    def write(self, location: str, data: bytes, overwrite: bool = False) -> None:
        out = self.new_output(location).create(overwrite=overwrite)
        out.write(data)
        out.close()


class _MemoryOutputStream(io.BytesIO):
    def __init__(self, store: "MemoryFileIO", location: str, overwrite: bool):
        super().__init__()
        self._store = store
        self._location = location
        self._overwrite = overwrite
        self._published = False

    def close(self):
        if not self._published:
            self._published = True
            self._store._publish(self._location, self.getvalue(), self._overwrite)
        super().close()


class _MemoryOutputFile(OutputFile):
    def __init__(self, store: "MemoryFileIO", location: str):
        super().__init__(location)
        self._store = store

    def exists(self) -> bool:
        return self._store.exists(self.location)

    def create(self, overwrite: bool = False):
        if not overwrite and self.exists():
            raise FileAlreadyExists(f"Object already exists: {self.location}")
        return _MemoryOutputStream(self._store, self.location, overwrite)


class MemoryFileIO(FileIO):
    """In-process object store. Publication on close is atomic."""

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def _publish(self, location: str, data: bytes, overwrite: bool) -> None:
        with self._lock:
            if not overwrite and location in self._objects:
                raise FileAlreadyExists(f"Object already exists: {location}")
            self._objects[location] = data

    def new_input(self, location: str) -> InputFile:
        with self._lock:
            return InputFile(location, self._objects.get(location))

    def new_output(self, location: str) -> OutputFile:
        return _MemoryOutputFile(self, location)

    def delete(self, location: Union[str, InputFile, OutputFile]) -> None:
        if isinstance(location, (InputFile, OutputFile)):
            location = location.location
        with self._lock:
            self._objects.pop(location, None)

    def exists(self, location: str) -> bool:
        with self._lock:
            return location in self._objects

    def list_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))


def _local_path(location: str) -> str:
    if location.startswith("file://"):
        return location[len("file://") :]
    return location


class _LocalInputFile(InputFile):
    def __init__(self, location: str, filesystem: pafs.LocalFileSystem):
        super().__init__(location)
        self._fs = filesystem
        self._path = _local_path(location)

    def exists(self) -> bool:
        return self._fs.get_file_info(self._path).type == pafs.FileType.File

    def length(self) -> int:
        info = self._fs.get_file_info(self._path)
        if info.type != pafs.FileType.File:
            raise FileNotFoundError(self.location)
        return info.size

    def open(self):
        return self._fs.open_input_file(self._path)

    def read_range(self, offset: int, length: int) -> bytes:
        with self._fs.open_input_file(self._path) as f:
            return f.read_at(length, offset)


class _LocalOutputStream(io.BytesIO):
    """Buffers the object, then publishes it with a single link or rename."""

    def __init__(self, path: str, overwrite: bool, filesystem: pafs.LocalFileSystem):
        super().__init__()
        self._path = path
        self._overwrite = overwrite
        self._fs = filesystem
        self._published = False

    def close(self):
        if self._published:
            return
        parent = os.path.dirname(self._path)
        if parent:
            self._fs.create_dir(parent, recursive=True)
        tmp = f"{self._path}.{uuid.uuid4().hex}.tmp"
        with self._fs.open_output_stream(tmp) as out:
            out.write(self.getvalue())
        try:
            if self._overwrite:
                os.replace(tmp, self._path)
            else:
                # link() fails atomically when the target exists
                os.link(tmp, self._path)
        except FileExistsError as err:
            raise FileAlreadyExists(f"Object already exists: {self._path}") from err
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)
        self._published = True
        super().close()


class _LocalOutputFile(OutputFile):
    def __init__(self, location: str, filesystem: pafs.LocalFileSystem):
        super().__init__(location)
        self._fs = filesystem
        self._path = _local_path(location)

    def exists(self) -> bool:
        return self._fs.get_file_info(self._path).type == pafs.FileType.File

    def create(self, overwrite: bool = False):
        if not overwrite and self.exists():
            raise FileAlreadyExists(f"Object already exists: {self.location}")
        return _LocalOutputStream(self._path, overwrite, self._fs)


class LocalFileIO(FileIO):
    """FileIO over the local filesystem (pyarrow.fs)."""

    def __init__(self):
        self._fs = pafs.LocalFileSystem()

    def new_input(self, location: str) -> InputFile:
        return _LocalInputFile(location, self._fs)

    def new_output(self, location: str) -> OutputFile:
        return _LocalOutputFile(location, self._fs)

    def delete(self, location: Union[str, InputFile, OutputFile]) -> None:
        if isinstance(location, (InputFile, OutputFile)):
            location = location.location
        path = _local_path(location)
        if self._fs.get_file_info(path).type == pafs.FileType.File:
            self._fs.delete_file(path)

    def exists(self, location: str) -> bool:
        return self._fs.get_file_info(_local_path(location)).type == pafs.FileType.File

    def list_prefix(self, prefix: str) -> List[str]:
        path = _local_path(prefix)
        if path.endswith("/"):
            base = path.rstrip("/") or "/"
        else:
            base = path if os.path.isdir(path) else os.path.dirname(path)
        if self._fs.get_file_info(base).type != pafs.FileType.Directory:
            return []
        selector = pafs.FileSelector(base, recursive=True)
        found = [
            info.path
            for info in self._fs.get_file_info(selector)
            if info.type == pafs.FileType.File and info.path.startswith(path)
        ]
        if prefix.startswith("file://"):
            found = [f"file://{p}" for p in found]
        return sorted(found)
