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

import argparse
import json
import os
import logging
import logging.config

from zipserver.Kernel import PUBLIC_VERSION, LOG_LEVEL_MAPPING, getLogger, configureGlobalLogLevel
from zipserver.Settings import DEFAULT_HOST, DEFAULT_PORT, DEFAULT_INDEX
from zipserver.Utils import flushPrint, getEnv

logger = getLogger(__name__)


def configureLogging(logLevel):
    """Configure logging level for the application using Kernel's centralized configuration or config file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. ZIPSERVER_LOGGING_LEVEL environment variable
    3. Default to None (no configuration change)

    Both logLevel and ZIPSERVER_LOGGING_LEVEL can be:
    - A logging level name (DEBUG, INFO, WARNING, ERROR)
    - A path to a logging configuration JSON file
    """

    def suppressNoisyLogger():
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    # Priority: CLI argument > environment variable > None (no change)
    if logLevel is None:
        logLevel = getEnv('ZIPSERVER_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, FileNotFoundError, KeyError, ValueError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    level = LOG_LEVEL_MAPPING.get(logLevel.upper())
    if level is not None:
        configureGlobalLogLevel(level)
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()

    return logLevel


def validatePort(portStr):
    """Validate port number for argparse, 0 picks a free port"""
    try:
        port = int(portStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {portStr}")
    if not (0 <= port <= 65535):
        raise argparse.ArgumentTypeError(f"Port {port} is out of valid range (0-65535)")
    return port


def configureCLIParser():
    """Configure the command line parser

    Returns:
        argparse.ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog='zipserver',
        description='Serve the contents of a ZIP archive over HTTP, sending Deflate entries compressed',
    )
    parser.add_argument("archive", metavar="ARCHIVE", help="ZIP archive to serve")
    parser.add_argument("--host", default=DEFAULT_HOST, help=f"Address to bind. Default: {DEFAULT_HOST}")
    parser.add_argument(
        "--port", type=validatePort, default=DEFAULT_PORT, help=f"Port to listen on. Default: {DEFAULT_PORT}"
    )
    parser.add_argument(
        "--index",
        default=DEFAULT_INDEX,
        help=f"Entry served for the root path on the compressed path. Default: {DEFAULT_INDEX}",
    )
    parser.add_argument(
        "--log-level",
        dest="logLevel",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR) or path to a logging JSON config file",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {PUBLIC_VERSION}")
    return parser
