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

import sys
import zipfile

from zipserver.Archive import ZipArchive
from zipserver.CLI import configureCLIParser, configureLogging
from zipserver.Kernel import getLogger
from zipserver.Server import buildDeflateIndex, createServer
from zipserver.Utils import flushPrint, formatSize

logger = getLogger(__name__)


def main(argv=None):
    parser = configureCLIParser()
    args = parser.parse_args(argv)

    configureLogging(args.logLevel)

    try:
        archive = ZipArchive.load(args.archive)
    except (OSError, zipfile.BadZipFile) as e:
        flushPrint(f"Unable to open archive {args.archive}: {e}")
        return 1

    with archive:
        try:
            server = createServer(archive, args.host, args.port, args.index)
        except OSError as e:
            flushPrint(f"Unable to listen on {args.host}:{args.port}: {e}")
            return 1

        with server:
            deflated = len(buildDeflateIndex(archive))
            flushPrint(
                f"Serving {args.archive} ({formatSize(archive.size)}, {len(archive)} entries, "
                f"{deflated} deflated) on http://{args.host}:{server.port}/"
            )
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                flushPrint('\nExiting on user request (Ctrl+C)...')

    return 0


if __name__ == '__main__':
    sys.exit(main() or 0)
