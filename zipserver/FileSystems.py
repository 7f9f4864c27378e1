#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# zipserver - Serve ZIP archives over HTTP, compressed
# Copyright (C) 2025-2026 zipserver contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
FileSystem views over a ZipArchive for the fallback file server.

- ArchiveFileSystem: directory-like view, files open as forward-only streams
- SeekableArchiveFileSystem: same view, files open as SeekableEntryFile which can
  rewind to the beginning by re-opening the entry

Paths are archive names without a leading slash, "" is the root directory.
Directories are taken from explicit directory entries and from the parents of
every entry name.
"""

import io
import posixpath

from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Optional, Protocol, Set

from zipserver.Archive import ZipArchive, Entry
from zipserver.Kernel import getLogger

logger = getLogger(__name__)


@dataclass
class Stat:
    """File/directory metadata"""
    size: int
    mtime: Optional[float]
    isDir: bool


class FileSystem(Protocol):
    """FileSystem protocol the fallback file server reads through"""

    def stat(self, path: str) -> Stat:
        ...

    def open(self, path: str) -> BinaryIO:
        ...

    def isFile(self, path: str) -> bool:
        ...

    def isDir(self, path: str) -> bool:
        ...

    def listDir(self, path: str) -> List[str]:
        ...

    def joinPath(self, parent: str, name: str) -> str:
        ...


class ArchiveFileSystem:
    """
    Read-only FileSystem over a ZipArchive.

    Files returned by open() are forward-only decompressing streams.
    """

    def __init__(self, archive: ZipArchive):
        """
        Build the directory tree of an archive.

        Args:
            archive: Archive to expose, referenced and never closed
        """
        self.archive = archive

        self._files: Dict[str, Entry] = {}
        self._dirs: Dict[str, Set[str]] = {'': set()}
        self._dirTimes: Dict[str, float] = {}

        for entry in archive.entries:
            name = entry.name.rstrip('/')
            if not name:
                continue

            if entry.isDir:
                self._addDir(name)
                self._dirTimes[name] = entry.modified
            else:
                # Later duplicates overwrite earlier ones
                self._files[name] = entry
                parent = posixpath.dirname(name)
                self._addDir(parent)
                self._dirs[parent].add(posixpath.basename(name))

        logger.debug(f"ArchiveFileSystem initialized: {len(self._files)} files, {len(self._dirs)} directories")

    def _addDir(self, path: str):
        # Register path and link it into every missing ancestor up to the root.
        child = None
        while True:
            known = path in self._dirs
            children = self._dirs.setdefault(path, set())
            if child:
                children.add(child)
            if known:
                break
            child = posixpath.basename(path)
            path = posixpath.dirname(path)

    def stat(self, path: str) -> Stat:
        """
        Get file/directory metadata.

        Raises:
            FileNotFoundError: If path does not exist
        """
        entry = self._files.get(path)
        if entry is not None:
            return Stat(size=entry.uncompressedSize, mtime=entry.modified, isDir=False)
        if path in self._dirs:
            return Stat(size=0, mtime=self._dirTimes.get(path), isDir=True)
        raise FileNotFoundError(f"No such file or directory in archive: {path!r}")

    def open(self, path: str) -> BinaryIO:
        """
        Open file for reading.

        Raises:
            FileNotFoundError: If path does not exist
            IsADirectoryError: If path is a directory
        """
        entry = self._files.get(path)
        if entry is None:
            if path in self._dirs:
                raise IsADirectoryError(f"Is a directory: {path!r}")
            raise FileNotFoundError(f"No such file in archive: {path!r}")
        return self.archive.open(entry.index)

    def isFile(self, path: str) -> bool:
        return path in self._files

    def isDir(self, path: str) -> bool:
        return path in self._dirs

    def listDir(self, path: str) -> List[str]:
        """
        List names directly inside a directory, subdirectories end with "/".

        Raises:
            NotADirectoryError: If path is not a directory
        """
        if path not in self._dirs:
            raise NotADirectoryError(f"Not a directory: {path!r}")

        names = []
        for name in self._dirs[path]:
            child = self.joinPath(path, name)
            names.append(name + '/' if child in self._dirs else name)
        return sorted(names)

    def joinPath(self, parent: str, name: str) -> str:
        return posixpath.join(parent, name) if parent else name


class SeekableEntryFile(io.RawIOBase):
    """
    Wraps a forward-only entry stream and pretends it is seekable.

    Only seek(0, SEEK_SET) is honored: the wrapped stream is closed and the entry is
    opened again from the archive, which is as good as rewinding since decompression
    restarts from the first byte.
    """

    def __init__(self, file: BinaryIO, archive: ZipArchive, name: str):
        super().__init__()
        self._file = file
        self.archive = archive
        self.name = name

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        return self._file.readinto(b)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """
        Rewind to the beginning of the entry.

        Raises:
            io.UnsupportedOperation: For any offset other than 0 from the start
        """
        if offset != 0 or whence != io.SEEK_SET:
            raise io.UnsupportedOperation("SeekableEntryFile does not support arbitrary seeks")

        # A failed re-open leaves the closed stream in place, later reads fail too.
        self._file.close()
        self._file = self.archive.openName(self.name)
        return 0

    def tell(self) -> int:
        raise io.UnsupportedOperation("SeekableEntryFile does not track its position")

    def close(self):
        if not self.closed:
            try:
                self._file.close()
            finally:
                super().close()


class SeekableArchiveFileSystem(ArchiveFileSystem):
    """ArchiveFileSystem whose files can be rewound to their beginning"""

    def open(self, path: str) -> BinaryIO:
        file = super().open(path)
        return SeekableEntryFile(file, self.archive, path)
