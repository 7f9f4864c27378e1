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

import io
import os
import zipfile
import contextlib
import unittest
import warnings
import concurrent.futures

from unittest.mock import patch

import requests

from zipserver.Archive import ZipArchive, ArchiveError
from zipserver.Server import (
    ArchiveFileHandler, ArchiveRequestHandler, BufferPool, buildDeflateIndex, copyRaw, createHandler
)
from tests.zipserver.ArchiveTestBase import (
    ArchiveServerTestBase, buildZip, damageEntry, inflate, markEncrypted, patchCentralRecord, LICENSE_TEXT,
    ENTRY_HTTP_DATE
)

ACCEPT_DEFLATE = {'Accept-Encoding': 'gzip, deflate, br'}
ACCEPT_IDENTITY = {'Accept-Encoding': 'identity'}


class BufferPoolTest(unittest.TestCase):

    def testBuffersAreReused(self):
        pool = BufferPool(size=16)
        with pool.checkout() as first:
            self.assertEqual(len(first), 16)
            with pool.checkout() as second:
                self.assertIsNot(first, second)
        self.assertEqual(len(pool), 2)

        with pool.checkout() as again:
            self.assertTrue(again is first or again is second)

    def testCopyRaw(self):
        pool = BufferPool(size=7)
        output = io.BytesIO()
        written = copyRaw(io.BytesIO(LICENSE_TEXT), output, pool)

        self.assertEqual(written, len(LICENSE_TEXT))
        self.assertEqual(output.getvalue(), LICENSE_TEXT)
        self.assertEqual(len(pool), 1)

    def testCopyRawReturnsBufferOnWriteFailure(self):

        class BrokenWriter:

            def __init__(self):
                self.calls = 0

            def write(self, data):
                self.calls += 1
                if self.calls > 1:
                    raise BrokenPipeError('client went away')
                return len(data)

        pool = BufferPool(size=8)
        with self.assertRaises(BrokenPipeError):
            copyRaw(io.BytesIO(LICENSE_TEXT), BrokenWriter(), pool)

        self.assertEqual(len(pool), 1)


class DeflateIndexTest(unittest.TestCase):

    def testOnlyDeflateEntries(self):
        data = buildZip([
            ('a.txt', b'a'),
            ('b.bin', b'b', zipfile.ZIP_STORED),
            ('dir/', b''),
            ('dir/c.css', b'c'),
        ])
        with ZipArchive(data) as archive:
            self.assertEqual(buildDeflateIndex(archive), {'a.txt': 0, 'dir/c.css': 3})

    def testDuplicateNamesLastWins(self):
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', UserWarning)
            data = buildZip([('dup.txt', b'one'), ('dup.txt', b'two'), ('dup.txt', b'three', zipfile.ZIP_STORED)])

        with ZipArchive(data) as archive:
            # The stored duplicate is not indexed, the last Deflate one is
            self.assertEqual(buildDeflateIndex(archive), {'dup.txt': 1})

    def testCreateHandler(self):
        with ZipArchive(buildZip([('a.txt', b'a')])) as archive:
            handlerClass = createHandler(archive, indexName='home.html')
            self.assertTrue(issubclass(handlerClass, ArchiveRequestHandler))
            self.assertIs(handlerClass.archive, archive)
            self.assertEqual(handlerClass.deflateIndex, {'a.txt': 0})
            self.assertEqual(handlerClass.indexName, 'home.html')

    def testCreateHandlerWithoutDeflateEntries(self):
        with ZipArchive(buildZip([('a.txt', b'a', zipfile.ZIP_STORED)])) as archive:
            handlerClass = createHandler(archive)
            self.assertTrue(issubclass(handlerClass, ArchiveFileHandler))
            self.assertFalse(issubclass(handlerClass, ArchiveRequestHandler))


class HandlerTest(ArchiveServerTestBase):
    """End-to-end behavior with a LICENSE.txt entry and an extensionless copy of it"""

    def testDeflateServedCompressed(self):
        response = self.request('/LICENSE.txt', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)
        entry = self.archive.entry('LICENSE.txt')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Vary'], 'Accept-Encoding')
        self.assertEqual(response.headers['Accept-Ranges'], 'none')
        self.assertEqual(response.headers['Content-Encoding'], 'deflate')
        self.assertEqual(response.headers['Content-Type'], 'text/plain; charset=utf-8')
        self.assertEqual(response.headers['Content-Length'], str(entry.compressedSize))
        self.assertEqual(response.headers['Last-Modified'], ENTRY_HTTP_DATE)
        self.assertEqual(len(body), entry.compressedSize)
        self.assertEqual(inflate(body), LICENSE_TEXT)

    def testDeflateServedCompressedWithSniffedType(self):
        response = self.request('/unknown', headers={'Accept-Encoding': 'deflate'})
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Content-Encoding'], 'deflate')
        self.assertEqual(response.headers['Content-Type'], 'text/plain; charset=utf-8')
        self.assertEqual(inflate(body), LICENSE_TEXT)

    def testSniffedWithoutAcceptEncoding(self):
        response = self.request('/unknown', headers={'Accept-Encoding': None})
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Vary'], 'Accept-Encoding')
        self.assertEqual(response.headers['Content-Type'], 'text/plain; charset=utf-8')
        self.assertNotIn('Content-Encoding', response.headers)
        self.assertEqual(body, LICENSE_TEXT)

    def testDecompressedWithoutDeflateToken(self):
        for headers in (ACCEPT_IDENTITY, {'Accept-Encoding': 'gzip, br'}):
            with self.subTest(headers=headers):
                response = self.request('/LICENSE.txt', headers=headers)
                body = self.readRaw(response)

                self.assertEqual(response.status_code, 200)
                self.assertNotIn('Content-Encoding', response.headers)
                self.assertEqual(response.headers['Content-Length'], str(len(LICENSE_TEXT)))
                self.assertEqual(response.headers['Last-Modified'], ENTRY_HTTP_DATE)
                self.assertEqual(response.headers['Accept-Ranges'], 'none')
                self.assertEqual(body, LICENSE_TEXT)

    def testRangeRequestUsesFileServer(self):
        headers = dict(ACCEPT_DEFLATE, Range='bytes=10-29')
        response = self.request('/LICENSE.txt', headers=headers)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 206)
        self.assertNotIn('Content-Encoding', response.headers)
        self.assertEqual(response.headers['Content-Range'], f'bytes 10-29/{len(LICENSE_TEXT)}')
        self.assertEqual(response.headers['Accept-Ranges'], 'none')
        self.assertEqual(body, LICENSE_TEXT[10:30])

    def testOpenEndedAndUnsatisfiableRanges(self):
        start = len(LICENSE_TEXT) - 5
        response = self.request('/unknown', headers=dict(ACCEPT_IDENTITY, Range=f'bytes={start}-'))
        self.assertEqual(response.status_code, 206)
        self.assertEqual(self.readRaw(response), LICENSE_TEXT[start:])

        response = self.request('/LICENSE.txt', headers=dict(ACCEPT_IDENTITY, Range='bytes=99999-'))
        self.readRaw(response)
        self.assertEqual(response.status_code, 416)
        self.assertEqual(response.headers['Content-Range'], f'bytes */{len(LICENSE_TEXT)}')

    def testHeadUsesFileServer(self):
        response = self.request('/LICENSE.txt', method='HEAD', headers=ACCEPT_DEFLATE)
        response.close()

        self.assertEqual(response.status_code, 200)
        self.assertNotIn('Content-Encoding', response.headers)
        self.assertEqual(response.headers['Content-Length'], str(len(LICENSE_TEXT)))
        self.assertEqual(response.headers['Vary'], 'Accept-Encoding')
        self.assertEqual(response.headers['Accept-Ranges'], 'none')

    def testUnsupportedMethodKeepsRouterHeaders(self):
        response = self.request('/LICENSE.txt', method='POST', headers=ACCEPT_DEFLATE, data=b'x')
        self.readRaw(response)

        self.assertEqual(response.status_code, 501)
        self.assertEqual(response.headers['Vary'], 'Accept-Encoding')
        self.assertEqual(response.headers['Accept-Ranges'], 'none')

    def testMissingEntry(self):
        for headers in (ACCEPT_DEFLATE, ACCEPT_IDENTITY):
            with self.subTest(headers=headers):
                response = self.request('/missing.txt', headers=headers)
                self.readRaw(response)
                self.assertEqual(response.status_code, 404)
                self.assertEqual(response.headers['Vary'], 'Accept-Encoding')

    def testNotModified(self):
        headers = dict(ACCEPT_IDENTITY, **{'If-Modified-Since': ENTRY_HTTP_DATE})
        response = self.request('/LICENSE.txt', headers=headers)
        self.assertEqual(self.readRaw(response), b'')
        self.assertEqual(response.status_code, 304)

        headers['If-Modified-Since'] = 'Thu, 16 May 2024 10:30:00 GMT'
        response = self.request('/LICENSE.txt', headers=headers)
        self.assertEqual(self.readRaw(response), LICENSE_TEXT)
        self.assertEqual(response.status_code, 200)

    def testRootListing(self):
        response = self.request('/', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Content-Type'], 'text/html; charset=utf-8')
        self.assertNotIn('Content-Encoding', response.headers)
        self.assertIn(b'<a href="LICENSE.txt">LICENSE.txt</a>', body)
        self.assertIn(b'<a href="unknown">unknown</a>', body)

    def testRawOpenFailureUsesFileServer(self):
        with patch.object(self.archive, 'openRaw', side_effect=ArchiveError('damaged')):
            response = self.request('/LICENSE.txt', headers=ACCEPT_DEFLATE)
            body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertNotIn('Content-Encoding', response.headers)
        self.assertEqual(body, LICENSE_TEXT)

    def testWriteFailureEndsRequest(self):
        with patch('zipserver.Server.copyRaw', side_effect=BrokenPipeError('client went away')):
            # Headers went out but the body never follows, the client sees a truncated response
            with contextlib.suppress(Exception):
                response = self.request('/LICENSE.txt', headers=ACCEPT_DEFLATE)
                self.readRaw(response)

        # The server survives and keeps serving
        response = requests.get(self.baseURL + '/unknown', headers=ACCEPT_IDENTITY, timeout=10)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, LICENSE_TEXT)


class SiteHandlerTest(ArchiveServerTestBase):

    members = [
        ('index.html', b'<!DOCTYPE html><html><body>home</body></html>'),
        ('docs/', b''),
        ('docs/index.html', b'<html><body>docs</body></html>'),
        ('docs/notes', b'\x00\x01binary notes'),
        ('assets/app.js', b'console.log("hi");'),
        ('assets/logo.bin', b'\x89PNG\x0D\x0A\x1A\x0A' + os.urandom(64)),
        ('stored.txt', b'stored content', zipfile.ZIP_STORED),
        ('with space.txt', b'spaced'),
    ]

    def testRootServesIndexCompressed(self):
        response = self.request('/', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Content-Encoding'], 'deflate')
        self.assertEqual(response.headers['Content-Type'], 'text/html; charset=utf-8')
        self.assertEqual(inflate(body), b'<!DOCTYPE html><html><body>home</body></html>')

    def testRootServesIndexDecompressed(self):
        response = self.request('/', headers=ACCEPT_IDENTITY)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(body, b'<!DOCTYPE html><html><body>home</body></html>')

    def testDirectoryRedirect(self):
        response = self.request('/docs', headers=ACCEPT_IDENTITY)
        self.readRaw(response)

        self.assertEqual(response.status_code, 301)
        self.assertEqual(response.headers['Location'], '/docs/')

    def testDirectoryIndexPage(self):
        response = self.request('/docs/', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)

        # Directory entries are never indexed, the file server resolves the index page
        self.assertEqual(response.status_code, 200)
        self.assertNotIn('Content-Encoding', response.headers)
        self.assertEqual(body, b'<html><body>docs</body></html>')

    def testImpliedDirectoryListing(self):
        response = self.request('/assets/', headers=ACCEPT_IDENTITY)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertIn(b'app.js', body)
        self.assertIn(b'logo.bin', body)

    def testTrailingSlashOnFile(self):
        response = self.request('/assets/app.js/', headers=ACCEPT_IDENTITY)
        self.readRaw(response)
        self.assertEqual(response.status_code, 404)

    def testSniffedBinaryWithoutExtension(self):
        response = self.request('/docs/notes', headers=ACCEPT_IDENTITY)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Content-Type'], 'application/octet-stream')
        self.assertEqual(body, b'\x00\x01binary notes')

    def testExtensionTypeRegardlessOfContent(self):
        response = self.request('/assets/logo.bin', headers=ACCEPT_DEFLATE)
        self.readRaw(response)
        self.assertEqual(response.headers['Content-Type'], 'application/octet-stream')

        response = self.request('/assets/app.js', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)
        self.assertEqual(response.headers['Content-Type'], 'text/javascript; charset=utf-8')
        self.assertEqual(inflate(body), b'console.log("hi");')

    def testStoredEntryServedDecompressed(self):
        response = self.request('/stored.txt', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertNotIn('Content-Encoding', response.headers)
        self.assertEqual(body, b'stored content')

    def testPercentEncodedPath(self):
        response = self.request('/with%20space.txt', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(inflate(body), b'spaced')

    def testQueryStringIgnored(self):
        response = self.request('/assets/app.js?v=3', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(inflate(body), b'console.log("hi");')


class StoredOnlyArchiveTest(ArchiveServerTestBase):
    """Without Deflate entries the plain file server answers everything"""

    members = [
        ('LICENSE.txt', LICENSE_TEXT, zipfile.ZIP_STORED),
    ]

    def testServedByFileServer(self):
        response = self.request('/LICENSE.txt', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)

        self.assertEqual(response.status_code, 200)
        self.assertNotIn('Content-Encoding', response.headers)
        self.assertNotIn('Vary', response.headers)
        self.assertEqual(body, LICENSE_TEXT)


class DamagedEntryTest(ArchiveServerTestBase):
    """The extensionless entry's Deflate data no longer inflates"""

    def archiveData(self):
        return damageEntry(buildZip(self.members), 'unknown')

    def testCompressedPathSendsStoredBytes(self):
        with self.archive.openRaw(self.archive.entry('unknown').index) as raw:
            stored = raw.read()

        response = self.request('/unknown', headers=ACCEPT_DEFLATE)
        body = self.readRaw(response)

        # Sniffing fails, the stored bytes still go out as they are
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers['Content-Encoding'], 'deflate')
        self.assertEqual(response.headers['Content-Type'], 'application/octet-stream')
        self.assertEqual(body, stored)

    def testDecompressingPathAnswersServerError(self):
        response = self.request('/unknown', headers=ACCEPT_IDENTITY)
        self.readRaw(response)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.headers['Vary'], 'Accept-Encoding')

    def testOtherEntriesUnaffected(self):
        response = self.request('/LICENSE.txt', headers=ACCEPT_IDENTITY)
        self.assertEqual(self.readRaw(response), LICENSE_TEXT)
        self.assertEqual(response.status_code, 200)


class UnopenableEntryTest(ArchiveServerTestBase):
    """LICENSE.txt is flagged encrypted, unknown uses a compression method zipfile lacks"""

    def archiveData(self):
        data = markEncrypted(buildZip(self.members), 'LICENSE.txt')
        return patchCentralRecord(data, 'unknown', 10, lambda method: 99)

    def testEncryptedEntry(self):
        for headers in (ACCEPT_DEFLATE, ACCEPT_IDENTITY):
            with self.subTest(headers=headers):
                response = self.request('/LICENSE.txt', headers=headers)
                self.readRaw(response)

                self.assertEqual(response.status_code, 500)
                self.assertEqual(response.headers['Vary'], 'Accept-Encoding')
                self.assertEqual(response.headers['Accept-Ranges'], 'none')

    def testUnsupportedCompressionMethod(self):
        response = self.request('/unknown', headers=ACCEPT_DEFLATE)
        self.readRaw(response)
        self.assertEqual(response.status_code, 500)

    def testServerKeepsServing(self):
        self.readRaw(self.request('/LICENSE.txt', headers=ACCEPT_DEFLATE))

        response = self.request('/', headers=ACCEPT_IDENTITY)
        body = self.readRaw(response)
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'LICENSE.txt', body)


class ConcurrentRequestTest(ArchiveServerTestBase):

    fileCount = 50
    members = [(f'files/{i:02d}.txt', (f'{i:04d}-' + os.urandom(40000).hex()).encode()) for i in range(fileCount)]

    def fetch(self, name, compressed):
        headers = ACCEPT_DEFLATE if compressed else ACCEPT_IDENTITY
        response = requests.get(f'{self.baseURL}/{name}', headers=headers, stream=True, timeout=30)
        with response:
            body = response.raw.read(decode_content=False)
        return response, inflate(body) if compressed else body

    def testParallelRequestsAreIsolated(self):
        expected = dict(m[:2] for m in self.members)
        jobs = [(name, compressed) for name in expected for compressed in (True, False)]

        with concurrent.futures.ThreadPoolExecutor(max_workers=20) as executor:
            futures = {executor.submit(self.fetch, name, compressed): (name, compressed) for name, compressed in jobs}
            for future in concurrent.futures.as_completed(futures):
                name, compressed = futures[future]
                response, content = future.result()
                with self.subTest(name=name, compressed=compressed):
                    self.assertEqual(response.status_code, 200)
                    self.assertEqual(response.headers.get('Content-Encoding'), 'deflate' if compressed else None)
                    self.assertEqual(content, expected[name])


if __name__ == '__main__':
    unittest.main()
