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
In-memory ZIP archive access.

ZipArchive keeps the whole archive in memory and exposes each entry three ways:
- open(index): decompressing, forward-only stream (EntryFile)
- openRaw(index): the stored bytes exactly as they sit in the archive (RawEntryReader)
- openName(name): decompressing stream looked up by entry name

Name lookups keep the last entry when an archive holds duplicate names.
"""

import io
import struct
import zipfile
import zlib
import datetime

from dataclasses import dataclass
from typing import Dict, List, Optional

from zipserver.Kernel import getLogger

logger = getLogger(__name__)

# Field positions inside zipfile.structFileHeader
FH_SIGNATURE = 0
FH_FILENAME_LENGTH = 10
FH_EXTRA_FIELD_LENGTH = 11

# General purpose flag bit 0 marks an encrypted entry
FLAG_ENCRYPTED = 0x1

EXTENDED_TIMESTAMP_TAG = 0x5455

# Earliest time a DOS date can express
DOS_EPOCH = datetime.datetime(1980, 1, 1, tzinfo=datetime.timezone.utc).timestamp()


class ArchiveError(Exception):
    """Raised when an entry's stored data cannot be located or used"""
    pass


# What zipfile raises when opening or inflating a damaged, encrypted or unsupported entry
ENTRY_READ_ERRORS = (OSError, EOFError, RuntimeError, NotImplementedError, zipfile.BadZipFile, zlib.error)


@dataclass(frozen=True)
class Entry:
    """Metadata of one archive member"""
    index: int
    name: str
    method: int
    compressedSize: int
    uncompressedSize: int
    modified: float # POSIX timestamp, UTC
    flags: int = 0

    @property
    def isDir(self) -> bool:
        return self.name.endswith('/')

    @property
    def isEncrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)


def _extendedTimestamp(extra: bytes) -> Optional[float]:
    """Return the mtime stored in an extended timestamp (0x5455) extra field, if any"""
    offset = 0
    while offset + 4 <= len(extra):
        tag, size = struct.unpack_from('<HH', extra, offset)
        offset += 4
        data = extra[offset:offset + size]
        offset += size

        if tag != EXTENDED_TIMESTAMP_TAG or len(data) < 5:
            continue
        if data[0] & 0x1: # mtime present
            return float(struct.unpack_from('<i', data, 1)[0])
    return None


def _modifiedTime(info: zipfile.ZipInfo) -> float:
    mtime = _extendedTimestamp(info.extra)
    if mtime is not None:
        return mtime

    # No timezone is recorded with DOS times, treat them as UTC.
    try:
        return datetime.datetime(*info.date_time, tzinfo=datetime.timezone.utc).timestamp()
    except ValueError:
        return DOS_EPOCH


class EntryFile(io.RawIOBase):
    """
    Decompressing, forward-only view of one entry.

    seek() is not offered even though zipfile could emulate it, rewinding has to
    go through SeekableEntryFile which re-opens the entry instead.
    """

    def __init__(self, zipExtFile, name: str):
        super().__init__()
        self._file = zipExtFile
        self.name = name

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        return self._file.readinto(b)

    def close(self):
        if not self.closed:
            try:
                self._file.close()
            finally:
                super().close()


class RawEntryReader(io.RawIOBase):
    """Reads the stored (still compressed) bytes of an entry from the in-memory archive"""

    def __init__(self, view: memoryview, name: str):
        super().__init__()
        self._view = view
        self._pos = 0
        self.name = name

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file.")

        size = min(len(b), len(self._view) - self._pos)
        if size <= 0:
            return 0

        b[:size] = self._view[self._pos:self._pos + size]
        self._pos += size
        return size

    def close(self):
        self._view = self._view[:0]
        super().close()


class ZipArchive:
    """
    Read-only ZIP archive held in memory.

    Safe to share between threads: every opened stream has its own position, raw
    readers slice the immutable buffer and decompressing readers go through
    zipfile's shared, locked file object.
    """

    def __init__(self, data: bytes):
        """
        Parse the central directory of an archive.

        Args:
            data: Whole archive content

        Raises:
            zipfile.BadZipFile: If data is not a ZIP archive
        """
        self._data = bytes(data)
        self._view = memoryview(self._data)
        self._zipFile = zipfile.ZipFile(io.BytesIO(self._data))
        self._infos: List[zipfile.ZipInfo] = self._zipFile.infolist()

        self.entries: List[Entry] = [
            Entry(
                index=i,
                name=info.filename,
                method=info.compress_type,
                compressedSize=info.compress_size,
                uncompressedSize=info.file_size,
                modified=_modifiedTime(info),
                flags=info.flag_bits,
            ) for i, info in enumerate(self._infos)
        ]

        # Later duplicates overwrite earlier ones
        self._nameToIndex: Dict[str, int] = {entry.name: entry.index for entry in self.entries}

        logger.debug(f"ZipArchive loaded: {len(self.entries)} entries, {len(self._data)} bytes")

    @classmethod
    def load(cls, path: str) -> 'ZipArchive':
        """Read an archive file fully into memory"""
        with open(path, 'rb') as f:
            return cls(f.read())

    @property
    def size(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return len(self.entries)

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()

    def close(self):
        self._zipFile.close()

    def entry(self, name: str) -> Optional[Entry]:
        """Get the last entry stored under name, or None"""
        index = self._nameToIndex.get(name)
        return None if index is None else self.entries[index]

    def open(self, index: int) -> EntryFile:
        """Open an entry for decompressed reading"""
        info = self._infos[index]
        return EntryFile(self._zipFile.open(info), info.filename)

    def openName(self, name: str) -> EntryFile:
        """
        Open an entry by name for decompressed reading.

        Raises:
            FileNotFoundError: If no entry has that name
            IsADirectoryError: If the entry is a directory
        """
        entry = self.entry(name)
        if entry is None:
            raise FileNotFoundError(f"No such entry in archive: {name!r}")
        if entry.isDir:
            raise IsADirectoryError(f"Entry is a directory: {name!r}")
        return self.open(entry.index)

    def openRaw(self, index: int) -> RawEntryReader:
        """
        Open the stored bytes of an entry without decompressing them.

        Raises:
            ArchiveError: If the local header is damaged, the data runs past the archive
                or the entry is encrypted
        """
        entry = self.entries[index]
        if entry.isEncrypted:
            raise ArchiveError(f"Entry is encrypted: {entry.name!r}")

        headerOffset = self._infos[index].header_offset
        headerEnd = headerOffset + zipfile.sizeFileHeader
        if headerOffset < 0 or headerEnd > len(self._data):
            raise ArchiveError(f"Local header out of range for {entry.name!r}")

        fields = struct.unpack(zipfile.structFileHeader, self._view[headerOffset:headerEnd])
        if fields[FH_SIGNATURE] != zipfile.stringFileHeader:
            raise ArchiveError(f"Bad local header signature for {entry.name!r}")

        dataStart = headerEnd + fields[FH_FILENAME_LENGTH] + fields[FH_EXTRA_FIELD_LENGTH]
        dataEnd = dataStart + entry.compressedSize
        if dataEnd > len(self._data):
            raise ArchiveError(f"Stored data out of range for {entry.name!r}")

        return RawEntryReader(self._view[dataStart:dataEnd], entry.name)
