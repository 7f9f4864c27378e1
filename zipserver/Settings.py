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

from zipserver.Utils import getEnv

# Content-coding served verbatim from Deflate entries
FAST_PATH_ENCODING = 'deflate'

# Served for "/" when the fast path looks up the archive root
DEFAULT_INDEX = 'index.html'

# Directory index candidates for the fallback file server, in priority order
INDEX_PAGES = ('index.html', 'index.htm')

# Size of each pooled copy buffer (32 KiB)
COPY_BUFFER_SIZE = 32 * 1024

# Bytes inspected when the content type cannot be derived from the name
SNIFF_LENGTH = 512

DEFAULT_CONTENT_TYPE = 'application/octet-stream'

# Process wiring defaults, only used by Core.py / createServer
DEFAULT_HOST = getEnv('ZIPSERVER_HOST', '127.0.0.1')
DEFAULT_PORT = getEnv('ZIPSERVER_PORT', 8000)
