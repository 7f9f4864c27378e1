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
Content type resolution for archive entries.

typeByExtension() maps a file extension to a MIME type, detectContentType() sniffs
the first bytes of a payload following the WHATWG MIME sniffing rules, and
resolveContentType() combines both for an archive entry.
"""

import mimetypes
import posixpath
import struct

from zipserver.Archive import ENTRY_READ_ERRORS, ZipArchive, Entry
from zipserver.Kernel import getLogger
from zipserver.Settings import SNIFF_LENGTH, DEFAULT_CONTENT_TYPE

logger = getLogger(__name__)

# Types browsers rely on, consulted before the platform database
BUILTIN_TYPES = {
    '.avif': 'image/avif',
    '.css': 'text/css; charset=utf-8',
    '.gif': 'image/gif',
    '.htm': 'text/html; charset=utf-8',
    '.html': 'text/html; charset=utf-8',
    '.jpeg': 'image/jpeg',
    '.jpg': 'image/jpeg',
    '.js': 'text/javascript; charset=utf-8',
    '.json': 'application/json',
    '.mjs': 'text/javascript; charset=utf-8',
    '.pdf': 'application/pdf',
    '.png': 'image/png',
    '.svg': 'image/svg+xml',
    '.wasm': 'application/wasm',
    '.webp': 'image/webp',
    '.xml': 'text/xml; charset=utf-8',
}

TEXT_PLAIN_UTF8 = 'text/plain; charset=utf-8'

WHITESPACE = b'\t\n\x0c\r '


def typeByExtension(ext: str) -> str:
    """
    Get the MIME type registered for a file extension.

    Args:
        ext: Extension including the leading dot, e.g. ".txt"

    Returns:
        str: MIME type, text types carry a utf-8 charset; "" when unknown
    """
    if not ext or not ext.startswith('.'):
        return ''

    lower = ext.lower()
    ctype = BUILTIN_TYPES.get(lower)
    if ctype:
        return ctype

    if not mimetypes.inited:
        mimetypes.init()

    ctype = mimetypes.types_map.get(lower) or mimetypes.common_types.get(lower)
    if not ctype:
        return ''
    if ctype.startswith('text/') and 'charset=' not in ctype:
        ctype += '; charset=utf-8'
    return ctype


def extensionOf(name: str) -> str:
    return posixpath.splitext(name)[1]


class ExactSignature:

    def __init__(self, signature: bytes, ctype: str):
        self.signature = signature
        self.ctype = ctype

    def match(self, data: bytes, firstNonWS: int) -> str:
        return self.ctype if data.startswith(self.signature) else ''


class MaskedSignature:

    def __init__(self, mask: bytes, pattern: bytes, ctype: str, skipWS: bool = False):
        self.mask = mask
        self.pattern = pattern
        self.ctype = ctype
        self.skipWS = skipWS

    def match(self, data: bytes, firstNonWS: int) -> str:
        if self.skipWS:
            data = data[firstNonWS:]
        if len(data) < len(self.pattern):
            return ''
        for maskByte, patternByte, dataByte in zip(self.mask, self.pattern, data):
            if dataByte & maskByte != patternByte:
                return ''
        return self.ctype


class HTMLSignature:
    """An HTML tag prefix, matched case-insensitively and followed by a space or ">" """

    def __init__(self, tag: bytes):
        self.tag = tag

    def match(self, data: bytes, firstNonWS: int) -> str:
        data = data[firstNonWS:]
        if len(data) < len(self.tag) + 1:
            return ''
        for tagByte, dataByte in zip(self.tag, data):
            if ord('A') <= tagByte <= ord('Z'):
                dataByte &= 0xDF
            if tagByte != dataByte:
                return ''
        if data[len(self.tag)] not in b' >':
            return ''
        return 'text/html; charset=utf-8'


class MP4Signature:

    def match(self, data: bytes, firstNonWS: int) -> str:
        if len(data) < 12:
            return ''
        boxSize = struct.unpack_from('>I', data)[0]
        if len(data) < boxSize or boxSize % 4 != 0:
            return ''
        if data[4:8] != b'ftyp':
            return ''
        for start in range(8, boxSize, 4):
            if start == 12:
                continue # minor version
            if data[start:start + 3] == b'mp4':
                return 'video/mp4'
        return ''


class TextSignature:

    def match(self, data: bytes, firstNonWS: int) -> str:
        for b in data[firstNonWS:]:
            if b <= 0x08 or b == 0x0B or 0x0E <= b <= 0x1A or 0x1C <= b <= 0x1F:
                return ''
        return TEXT_PLAIN_UTF8


SIGNATURES = [
    *(
        HTMLSignature(tag) for tag in (
            b'<!DOCTYPE HTML', b'<HTML', b'<HEAD', b'<SCRIPT', b'<IFRAME', b'<H1', b'<DIV', b'<FONT', b'<TABLE',
            b'<A', b'<STYLE', b'<TITLE', b'<B', b'<BODY', b'<BR', b'<P', b'<!--'
        )
    ),
    MaskedSignature(b'\xFF\xFF\xFF\xFF\xFF', b'<?xml', 'text/xml; charset=utf-8', skipWS=True),
    ExactSignature(b'%PDF-', 'application/pdf'),
    ExactSignature(b'%!PS-Adobe-', 'application/postscript'),

    # Byte order marks
    MaskedSignature(b'\xFF\xFF\x00\x00', b'\xFE\xFF\x00\x00', 'text/plain; charset=utf-16be'),
    MaskedSignature(b'\xFF\xFF\x00\x00', b'\xFF\xFE\x00\x00', 'text/plain; charset=utf-16le'),
    MaskedSignature(b'\xFF\xFF\xFF\x00', b'\xEF\xBB\xBF\x00', TEXT_PLAIN_UTF8),

    # Images
    ExactSignature(b'\x00\x00\x01\x00', 'image/x-icon'),
    ExactSignature(b'\x00\x00\x02\x00', 'image/x-icon'),
    ExactSignature(b'BM', 'image/bmp'),
    ExactSignature(b'GIF87a', 'image/gif'),
    ExactSignature(b'GIF89a', 'image/gif'),
    MaskedSignature(
        b'\xFF\xFF\xFF\xFF\x00\x00\x00\x00\xFF\xFF\xFF\xFF\xFF\xFF', b'RIFF\x00\x00\x00\x00WEBPVP', 'image/webp'
    ),
    ExactSignature(b'\x89PNG\x0D\x0A\x1A\x0A', 'image/png'),
    ExactSignature(b'\xFF\xD8\xFF', 'image/jpeg'),

    # Audio and video
    MaskedSignature(b'\xFF\xFF\xFF\xFF\x00\x00\x00\x00\xFF\xFF\xFF\xFF', b'FORM\x00\x00\x00\x00AIFF', 'audio/aiff'),
    MaskedSignature(b'\xFF\xFF\xFF', b'ID3', 'audio/mpeg'),
    MaskedSignature(b'\xFF\xFF\xFF\xFF\xFF', b'OggS\x00', 'application/ogg'),
    MaskedSignature(b'\xFF\xFF\xFF\xFF\xFF\xFF\xFF\xFF', b'MThd\x00\x00\x00\x06', 'audio/midi'),
    MaskedSignature(b'\xFF\xFF\xFF\xFF\x00\x00\x00\x00\xFF\xFF\xFF\xFF', b'RIFF\x00\x00\x00\x00AVI ', 'video/avi'),
    MaskedSignature(b'\xFF\xFF\xFF\xFF\x00\x00\x00\x00\xFF\xFF\xFF\xFF', b'RIFF\x00\x00\x00\x00WAVE', 'audio/wave'),
    MP4Signature(),
    ExactSignature(b'\x1A\x45\xDF\xA3', 'video/webm'),

    # Fonts
    MaskedSignature(b'\x00' * 34 + b'\xFF\xFF', b'\x00' * 34 + b'LP', 'application/vnd.ms-fontobject'),
    ExactSignature(b'\x00\x01\x00\x00', 'font/ttf'),
    ExactSignature(b'OTTO', 'font/otf'),
    ExactSignature(b'ttcf', 'font/collection'),
    ExactSignature(b'wOFF', 'font/woff'),
    ExactSignature(b'wOF2', 'font/woff2'),

    # Archives
    ExactSignature(b'\x1F\x8B\x08', 'application/x-gzip'),
    ExactSignature(b'PK\x03\x04', 'application/zip'),
    ExactSignature(b'Rar!\x1A\x07\x00', 'application/x-rar-compressed'),
    ExactSignature(b'Rar!\x1A\x07\x01\x00', 'application/x-rar-compressed'),
    ExactSignature(b'\x00\x61\x73\x6D', 'application/wasm'),
    TextSignature(),
]


def detectContentType(data: bytes) -> str:
    """
    Sniff the MIME type of a payload from its first bytes.

    At most SNIFF_LENGTH bytes are considered. Always returns a valid MIME type,
    "application/octet-stream" when nothing more specific matches.
    """
    data = bytes(data[:SNIFF_LENGTH])

    firstNonWS = 0
    while firstNonWS < len(data) and data[firstNonWS] in WHITESPACE:
        firstNonWS += 1

    for signature in SIGNATURES:
        ctype = signature.match(data, firstNonWS)
        if ctype:
            return ctype

    return DEFAULT_CONTENT_TYPE


def readPrefix(file, size: int = SNIFF_LENGTH) -> bytes:
    """Read up to size bytes, tolerating short reads from decompressing streams"""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = file.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


def resolveContentType(archive: ZipArchive, entry: Entry) -> str:
    """
    Content type of an archive entry: by extension, else sniffed from its decompressed start.

    Entries that cannot be opened or inflated are "application/octet-stream".
    """
    ctype = typeByExtension(extensionOf(entry.name))
    if ctype:
        return ctype

    try:
        file = archive.open(entry.index)
    except Exception as e:
        logger.debug(f"Unable to open {entry.name!r} for sniffing: {e}")
        return DEFAULT_CONTENT_TYPE

    with file:
        try:
            prefix = readPrefix(file)
        except ENTRY_READ_ERRORS as e:
            logger.debug(f"Unable to read {entry.name!r} for sniffing: {e}")
            return DEFAULT_CONTENT_TYPE

    return detectContentType(prefix)
