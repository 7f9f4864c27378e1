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
HTTP access to the contents of a ZipArchive.

If a request announces "Accept-Encoding: deflate" and the requested entry is stored
with the Deflate method, the stored bytes are sent as they are with
"Content-Encoding: deflate". Every other request is served by ArchiveFileHandler,
a static file server that decompresses entries on the fly.

Usage:

    archive = ZipArchive.load('site.zip')
    server = createServer(archive, '127.0.0.1', 8000)
    server.serve_forever()
"""

import io
import re
import sys
import html
import datetime
import contextlib
import email.utils
import posixpath
import threading
import urllib.parse
import zipfile

from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, Optional

from zipserver.Archive import ENTRY_READ_ERRORS, ZipArchive
from zipserver.FileSystems import ArchiveFileSystem, FileSystem, SeekableArchiveFileSystem
from zipserver.Kernel import getLogger, PUBLIC_VERSION
from zipserver.Settings import (
    COPY_BUFFER_SIZE, DEFAULT_HOST, DEFAULT_INDEX, DEFAULT_PORT, FAST_PATH_ENCODING, INDEX_PAGES
)
from zipserver.Sniffer import detectContentType, extensionOf, readPrefix, resolveContentType, typeByExtension

logger = getLogger(__name__)


class BufferPool:
    """
    Reusable copy buffers shared by all request threads.

    A buffer handed out by get() belongs to its caller until put() returns it.
    Contents are undefined between uses.
    """

    def __init__(self, size: int = COPY_BUFFER_SIZE):
        self.size = size
        self._buffers = []
        self._lock = threading.Lock()

    def get(self) -> bytearray:
        with self._lock:
            if self._buffers:
                return self._buffers.pop()
        return bytearray(self.size)

    def put(self, buffer: bytearray):
        with self._lock:
            self._buffers.append(buffer)

    @contextlib.contextmanager
    def checkout(self):
        buffer = self.get()
        try:
            yield buffer
        finally:
            self.put(buffer)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)


bufferPool = BufferPool()


def copyRaw(reader, writer, pool: BufferPool = bufferPool) -> int:
    """
    Copy everything from reader to writer through a pooled buffer.

    The buffer goes back to the pool on every exit path, write errors propagate.

    Returns:
        int: Number of bytes written
    """
    written = 0
    with pool.checkout() as buffer, memoryview(buffer) as view:
        while True:
            size = reader.readinto(view)
            if not size:
                break
            writer.write(view[:size])
            written += size
    return written


def buildDeflateIndex(archive: ZipArchive) -> Dict[str, int]:
    """Map entry names to indexes for every Deflate file entry, the last duplicate wins"""
    index = {}
    for entry in archive.entries:
        if entry.isDir or entry.method != zipfile.ZIP_DEFLATED:
            continue
        index[entry.name] = entry.index
    return index


class ArchiveFileHandler(SimpleHTTPRequestHandler):
    """
    Static file server over an archive.

    Behaves like SimpleHTTPRequestHandler (directory redirects, index pages, listings,
    If-Modified-Since) and adds single byte ranges. Bound to an archive by
    createHandler(), which sets the class attributes below.
    """

    protocol_version = 'HTTP/1.1'
    server_version = f'zipserver/{PUBLIC_VERSION}'

    archive: ZipArchive = None
    fileSystem: ArchiveFileSystem = None
    seekableFileSystem: SeekableArchiveFileSystem = None
    indexPages = INDEX_PAGES

    contentRange = None

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")

    def selectFileSystem(self, urlPath: str) -> FileSystem:
        # Sniffing needs to rewind the file, only the seekable view can do that.
        if typeByExtension(extensionOf(urlPath)) == '':
            return self.seekableFileSystem
        return self.fileSystem

    def translateEntryPath(self, urlPath: str) -> str:
        """Translate a URL path into an archive path, "" being the root"""
        try:
            path = urllib.parse.unquote(urlPath, errors='surrogatepass')
        except UnicodeDecodeError:
            path = urllib.parse.unquote(urlPath)

        path = posixpath.normpath(path)
        words = [word for word in path.split('/') if word and word not in ('.', '..')]
        return '/'.join(words)

    def _parseByteRange(self, byteRange: str, size: int):
        reg = re.search(r'^bytes=(\d+)-(\d+)?$', byteRange.strip())
        if not reg:
            return None

        # end might be None (protocol supported)
        start, end = [x and int(x) for x in reg.groups()]
        if start >= size or (end is not None and start > end):
            return None
        if end is None or end >= size:
            end = size - 1
        return start, end

    def _isNotModified(self, mtime: Optional[float]) -> bool:
        if mtime is None:
            return False
        if "If-Modified-Since" not in self.headers or "If-None-Match" in self.headers:
            return False

        try:
            ims = email.utils.parsedate_to_datetime(self.headers["If-Modified-Since"])
        except (TypeError, IndexError, OverflowError, ValueError):
            return False

        if ims.tzinfo is None:
            ims = ims.replace(tzinfo=datetime.timezone.utc)
        if ims.tzinfo is not datetime.timezone.utc:
            return False

        lastModified = datetime.datetime.fromtimestamp(mtime, datetime.timezone.utc).replace(microsecond=0)
        return lastModified <= ims

    def guessEntryType(self, path: str, file) -> str:
        """
        Content type by extension, else sniffed from the first bytes.

        Raises:
            io.UnsupportedOperation: If sniffing is needed but file cannot rewind
        """
        ctype = typeByExtension(extensionOf(path))
        if ctype:
            return ctype

        if not file.seekable():
            raise io.UnsupportedOperation("seeker can't seek")

        prefix = readPrefix(file)
        file.seek(0)
        return detectContentType(prefix)

    def send_head(self):
        """Common code for GET and HEAD commands, returns an open file or None"""
        self.contentRange = None

        parts = urllib.parse.urlsplit(self.path)
        fileSystem = self.selectFileSystem(parts.path)
        path = self.translateEntryPath(parts.path)

        if fileSystem.isDir(path):
            if not parts.path.endswith('/'):
                # redirect browser - doing basically what apache does
                self.send_response(HTTPStatus.MOVED_PERMANENTLY)
                newURL = urllib.parse.urlunsplit((parts[0], parts[1], parts[2] + '/', parts[3], parts[4]))
                self.send_header("Location", newURL)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return None

            for index in self.indexPages:
                candidate = fileSystem.joinPath(path, index)
                if fileSystem.isFile(candidate):
                    path = candidate
                    break
            else:
                return self.listArchiveDirectory(fileSystem, path)

        elif parts.path.endswith('/'):
            self.send_error(HTTPStatus.NOT_FOUND, "File not found")
            return None

        try:
            f = fileSystem.open(path)
        except (FileNotFoundError, IsADirectoryError):
            self.send_error(HTTPStatus.NOT_FOUND, "File not found")
            return None
        except ENTRY_READ_ERRORS as e:
            logger.warning(f"Unable to open {path!r}: {e}")
            self.send_error(HTTPStatus.INTERNAL_SERVER_ERROR, "Unable to read entry")
            return None

        try:
            stat = fileSystem.stat(path)

            if self._isNotModified(stat.mtime):
                self.send_response(HTTPStatus.NOT_MODIFIED)
                self.end_headers()
                f.close()
                return None

            try:
                ctype = self.guessEntryType(path, f)
            except ENTRY_READ_ERRORS as e:
                logger.warning(f"Unable to determine content type of {path!r}: {e}")
                self.send_error(HTTPStatus.INTERNAL_SERVER_ERROR, "Unable to read entry")
                f.close()
                return None

            byteRange = self.headers.get('Range')
            if byteRange:
                self.contentRange = self._parseByteRange(byteRange, stat.size)
                if self.contentRange is None:
                    self.send_response(HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE)
                    self.send_header("Content-Range", f"bytes */{stat.size}")
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                    f.close()
                    return None

                start, end = self.contentRange
                self.send_response(HTTPStatus.PARTIAL_CONTENT)
                self.send_header("Content-Range", f"bytes {start}-{end}/{stat.size}")
                self.send_header("Content-Length", str(end - start + 1))
            else:
                self.send_response(HTTPStatus.OK)
                self.send_header("Content-Length", str(stat.size))

            self.send_header("Content-type", ctype)
            if stat.mtime is not None:
                self.send_header("Last-Modified", self.date_time_string(stat.mtime))
            self.end_headers()
            return f
        except Exception:
            f.close()
            raise

    def copyfile(self, source, outputfile):
        if self.contentRange is None:
            return super().copyfile(source, outputfile)

        # Entries are forward-only, skip to the start of the range by reading.
        start, end = self.contentRange
        remaining = start
        while remaining > 0:
            skipped = source.read(min(remaining, COPY_BUFFER_SIZE))
            if not skipped:
                return
            remaining -= len(skipped)

        remaining = end - start + 1
        while remaining > 0:
            data = source.read(min(remaining, COPY_BUFFER_SIZE))
            if not data:
                break
            outputfile.write(data)
            remaining -= len(data)

    def listArchiveDirectory(self, fileSystem: FileSystem, path: str):
        """Produce a directory listing, returns a file object holding the page"""
        names = sorted(fileSystem.listDir(path), key=lambda a: a.lower())

        try:
            displayPath = urllib.parse.unquote(self.path, errors='surrogatepass')
        except UnicodeDecodeError:
            displayPath = urllib.parse.unquote(self.path)
        displayPath = html.escape(displayPath, quote=False)

        title = f'Directory listing for {displayPath}'
        r = [
            '<!DOCTYPE HTML>',
            '<html lang="en">',
            '<head>',
            '<meta charset="utf-8">',
            f'<title>{title}</title>\n</head>',
            f'<body>\n<h1>{title}</h1>',
            '<hr>\n<ul>',
        ]
        for name in names:
            r.append(
                '<li><a href="%s">%s</a></li>' %
                (urllib.parse.quote(name, errors='surrogatepass'), html.escape(name, quote=False))
            )
        r.append('</ul>\n<hr>\n</body>\n</html>\n')
        encoded = '\n'.join(r).encode('utf-8', 'surrogateescape')

        self.send_response(HTTPStatus.OK)
        self.send_header("Content-type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        return io.BytesIO(encoded)


class ArchiveRequestHandler(ArchiveFileHandler):
    """
    Serves Deflate entries compressed to clients accepting "deflate".

    Decision order per request:
    1. "Vary: Accept-Encoding" and "Accept-Ranges: none" on every response
    2. non-GET, a Range header or no "deflate" in Accept-Encoding -> file server
    3. key = URL path without its leading "/", "" -> indexName
    4. key not a Deflate entry -> file server
    5. stored bytes cannot be opened -> file server
    6. otherwise stream the stored bytes with Content-Encoding: deflate
    """

    deflateIndex: Dict[str, int] = {}
    indexName = DEFAULT_INDEX
    bufferPool = bufferPool

    def send_response(self, code, message=None):
        super().send_response(code, message)
        self.send_header("Vary", "Accept-Encoding")
        self.send_header("Accept-Ranges", "none")

    def acceptsFastPath(self) -> bool:
        if self.headers.get('Range'):
            return False
        acceptEncoding = ', '.join(self.headers.get_all('Accept-Encoding', []))
        return FAST_PATH_ENCODING in acceptEncoding

    def lookupKey(self) -> str:
        urlPath = urllib.parse.unquote(urllib.parse.urlsplit(self.path).path)
        key = urlPath[1:] if urlPath.startswith('/') else urlPath
        return key or self.indexName

    def do_GET(self):
        if not self.acceptsFastPath():
            return super().do_GET()

        key = self.lookupKey()
        index = self.deflateIndex.get(key)
        if index is None:
            return super().do_GET()

        entry = self.archive.entries[index]
        try:
            reader = self.archive.openRaw(index)
        except Exception as e:
            logger.debug(f"Raw open of {entry.name!r} failed, using file server: {e}")
            return super().do_GET()

        with reader:
            ctype = resolveContentType(self.archive, entry)

            self.send_response(HTTPStatus.OK)
            self.send_header("Content-Type", ctype)
            self.send_header("Content-Length", str(entry.compressedSize))
            self.send_header("Content-Encoding", FAST_PATH_ENCODING)
            self.send_header("Last-Modified", self.date_time_string(entry.modified))

            # Headers are committed from here on, a failed write ends the request.
            try:
                self.end_headers()
                copyRaw(reader, self.wfile, self.bufferPool)
            except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError) as ce:
                logger.debug(f"Client went away while sending {entry.name!r}: {ce}")
                self.close_connection = True
            except OSError as e:
                logger.debug(f"Failed sending {entry.name!r}: {e}")
                self.close_connection = True


def createHandler(archive: ZipArchive, indexName: str = DEFAULT_INDEX):
    """
    Create a request handler class serving archive.

    The returned class works with any socketserver-based HTTP server. The archive is
    referenced, never modified or closed. Without any Deflate entry the plain file
    server is returned.

    Args:
        archive: Archive to serve
        indexName: Entry served compressed for "/"

    Returns:
        type: BaseHTTPRequestHandler subclass
    """
    deflateIndex = buildDeflateIndex(archive)
    attributes = {
        'archive': archive,
        'fileSystem': ArchiveFileSystem(archive),
        'seekableFileSystem': SeekableArchiveFileSystem(archive),
    }

    if not deflateIndex:
        logger.info("No Deflate entries in archive, serving decompressed content only")
        return type('BoundArchiveFileHandler', (ArchiveFileHandler,), attributes)

    logger.debug(f"Deflate index built: {len(deflateIndex)} of {len(archive)} entries")
    attributes.update(deflateIndex=deflateIndex, indexName=indexName)
    return type('BoundArchiveRequestHandler', (ArchiveRequestHandler,), attributes)


class ArchiveServer(ThreadingHTTPServer):

    allow_reuse_address = True
    daemon_threads = True
    request_queue_size = 128

    def __init__(self, archive: ZipArchive, serverAddress, indexName: str = DEFAULT_INDEX, handlerClass=None):
        self.archive = archive

        if handlerClass is None:
            handlerClass = createHandler(archive, indexName)

        super().__init__(serverAddress, handlerClass)

    @property
    def port(self) -> int:
        return self.server_address[1]

    def handle_error(self, request, client_address):
        logger.exception(f"Error while handling request from {client_address}: {sys.exc_info()[1]}")


def createServer(archive: ZipArchive, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, indexName=DEFAULT_INDEX):
    # Factory function to create an ArchiveServer bound to host:port (port 0 picks a free one)
    return ArchiveServer(archive, (host, port), indexName)
