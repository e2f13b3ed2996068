#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# rip - Cross-platform ZIP handling that just works everywhere
# Copyright (C) 2024-2025 rip contributors
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
import platform

from bases.Codec import CODECS
from bases.Kernel import (
    LOG_LEVEL_MAPPING, PUBLIC_VERSION, RipEvent, getLogger, configureGlobalLogLevel, StorageLocator
)
from bases.Settings import DirectoryEntries, ExitPolicy, SettingsGetter
from bases.Utils import flushPrint, formatSize, getEnv

logger = getLogger(__name__)


def parseEnvLine(line):
    """'KEY=value' -> (key, value), with one layer of matching quotes removed. None for blanks and comments."""
    line = line.strip()
    if not line or line.startswith('#'):
        return None

    key, separator, value = line.partition('=')
    key, value = key.strip(), value.strip()
    if not separator or not key:
        raise ValueError(f"expected KEY=value, got {line!r}")

    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        value = value[1:-1]
    return key, value


def loadEnvFile():
    """
    Load the .env file found by StorageLocator into os.environ. Variables already present in the
    environment win over the file.
    """
    envFilePath = StorageLocator.getInstance().findConfig('.env')
    if not os.path.exists(envFilePath):
        return

    logger.debug(f'Loading .env file from: {envFilePath}')

    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            lines = f.readlines()
    except OSError as e:
        flushPrint(f'Error: Cannot read .env file {envFilePath}: {e}')
        logger.error(f'Cannot read .env file: {e}', exc_info=True)
        return

    loaded = []
    for lineNum, line in enumerate(lines, 1):
        try:
            parsed = parseEnvLine(line)
        except ValueError as e:
            flushPrint(f'Warning: .env line {lineNum}: {e}')
            continue

        if parsed and parsed[0] not in os.environ:
            os.environ[parsed[0]] = parsed[1]
            loaded.append(parsed[0])

    logger.debug(f'Loaded from .env: {", ".join(loaded) or "nothing"}')


def configureLogging(logLevel):
    """
    Apply --log-level, or RIP_LOGGING_LEVEL when the option is absent. The value is a level name
    or the path of a JSON file in logging.config.dictConfig format. Returns what was applied.
    """
    logLevel = logLevel if logLevel is not None else getEnv('RIP_LOGGING_LEVEL', None)

    try:
        if logLevel is None:
            return None

        if os.path.isfile(logLevel):
            try:
                with open(logLevel, 'r', encoding='utf-8') as configFile:
                    logging.config.dictConfig(json.load(configFile))
                logger.info(f"Logging configured from {logLevel}")
                return logLevel
            except (json.JSONDecodeError, OSError, KeyError, ValueError, TypeError) as e:
                flushPrint(f"Cannot use logging config {logLevel} ({e}); using WARNING")
                configureGlobalLogLevel(logging.WARNING)
                return logging.getLevelName(logging.WARNING)

        level = LOG_LEVEL_MAPPING.get(logLevel.upper())
        if level is None:
            logger.warning(f"Unknown logging level '{logLevel}', using WARNING")
            level = logging.WARNING

        configureGlobalLogLevel(level)
        return logging.getLevelName(level)
    finally:
        # Sentry's own debug chatter is never useful to rip users
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)


def showVersion():
    flushPrint(f"rip v{PUBLIC_VERSION}")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")


def configureCLIParser():
    """Build the argparse parser for `rip SOURCE [SOURCE ...]`"""

    def validateLogLevel(value):
        # Config file paths are checked by configureLogging
        if os.path.isfile(value):
            return value
        if value.upper() not in LOG_LEVEL_MAPPING:
            raise argparse.ArgumentTypeError(f"'{value}' is neither a level ({', '.join(LOG_LEVEL_MAPPING)}) nor a file")
        return value.upper()

    def validateJobs(jobsStr):
        try:
            jobs = int(jobsStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid jobs value: {jobsStr}")
        if jobs < 1:
            raise argparse.ArgumentTypeError(f"Jobs {jobs} must be at least 1")
        return jobs

    parser = argparse.ArgumentParser(
        prog='rip',
        description="Pack each SOURCE directory into '<SOURCE>.zip' with names that extract correctly on any platform.",
    )
    parser.add_argument("sources", metavar="SOURCE", nargs='*', help="Directory to archive (one archive per directory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print every file added or skipped")
    parser.add_argument("--version", action="store_true", help="Show version information")
    parser.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL) or a logging config JSON file (default: WARNING)",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )
    parser.add_argument(
        "--compression",
        choices=sorted(CODECS),
        default=None,
        help="Compression method (default: deflate)"
    )
    parser.add_argument(
        "--jobs", "-j",
        type=validateJobs,
        default=None,
        help="Number of archives built in parallel (default: one per source, bounded by CPU count)"
    )
    parser.add_argument(
        "--directory-entries",
        choices=[policy.value for policy in DirectoryEntries],
        default=None,
        help="Which directories get an explicit entry: only empty ones (default), all, or none",
        dest="directoryEntries"
    )
    parser.add_argument(
        "--exit-policy",
        choices=[policy.value for policy in ExitPolicy],
        default=None,
        help="When to exit non-zero: only if every archive failed (default), if any failed, or never",
        dest="exitPolicy"
    )
    parser.add_argument(
        "--pipeline",
        action="store_true",
        default=False,
        help="Walk the source tree in a separate thread while compressing"
    )
    parser.add_argument("--progress", action="store_true", default=False, help="Show a byte counter per archive")
    return parser


def buildSettings(args):
    """Apply command line options on top of the process-wide defaults"""
    changes = {}
    if args.compression:
        changes['compression'] = args.compression
    if args.directoryEntries:
        changes['directoryEntries'] = DirectoryEntries(args.directoryEntries)
    if args.exitPolicy:
        changes['exitPolicy'] = ExitPolicy(args.exitPolicy)
    if args.pipeline:
        changes['pipelined'] = True

    return SettingsGetter.getInstance().settings.replace(**changes)


class VerboseReporter:
    """Turns archiving events into console lines. Use as a context manager."""

    def __init__(self, verbose=False, printer=flushPrint):
        self.verbose = verbose
        self.printer = printer

    def __enter__(self):
        RipEvent.archiveStarted.subscribe(self.onArchiveStarted)
        RipEvent.entryAdmitted.subscribe(self.onEntryAdmitted)
        RipEvent.entrySkipped.subscribe(self.onEntrySkipped)
        RipEvent.archiveTruncated.subscribe(self.onArchiveTruncated)
        RipEvent.archiveCompleted.subscribe(self.onArchiveCompleted)
        RipEvent.archiveFatal.subscribe(self.onArchiveFatal)
        return self

    def __exit__(self, excType, excVal, excTb):
        RipEvent.archiveStarted.unsubscribe(self.onArchiveStarted)
        RipEvent.entryAdmitted.unsubscribe(self.onEntryAdmitted)
        RipEvent.entrySkipped.unsubscribe(self.onEntrySkipped)
        RipEvent.archiveTruncated.unsubscribe(self.onArchiveTruncated)
        RipEvent.archiveCompleted.unsubscribe(self.onArchiveCompleted)
        RipEvent.archiveFatal.unsubscribe(self.onArchiveFatal)

    def onArchiveStarted(self, zipPath=None, **kwargs):
        if self.verbose:
            self.printer(f"Creating ZIP file: {zipPath}")

    def onEntryAdmitted(self, archivePath=None, isDirectory=False, renamed=False, originalPath=None, **kwargs):
        if not self.verbose:
            return

        kind = 'directory' if isDirectory else 'file'
        if renamed:
            self.printer(f"Adding {kind}: {archivePath} (from {originalPath})")
        else:
            self.printer(f"Adding {kind}: {archivePath}")

    def onEntrySkipped(self, archivePath=None, reason=None, detail='', **kwargs):
        if self.verbose:
            self.printer(f"Skipping {archivePath}: {reason.value}" + (f" ({detail})" if detail else ''))

    def onArchiveTruncated(self, zipPath=None, detail='', **kwargs):
        self.printer(f"Warning: {zipPath} is incomplete: {detail}")

    def onArchiveCompleted(self, zipPath=None, result=None, **kwargs):
        if self.verbose:
            self.printer(f"Successfully created ZIP file: {zipPath} ({formatSize(result.archiveSize)})")

    def onArchiveFatal(self, source=None, detail='', **kwargs):
        self.printer(f"Error: {source}: {detail}")


def printSummary(summary, printer=flushPrint):
    succeeded, partial, failed = len(summary.succeeded), len(summary.partial), len(summary.failed)

    for result in summary.partial:
        skipped = len(result.skipped)
        reason = f", truncated ({result.truncatedReason.value})" if result.truncatedReason else ''
        printer(f"Partial: {result.zipPath} ({result.entries} entries, {skipped} skipped{reason})")

    if len(summary.results) > 1 or partial or failed:
        printer(f"{succeeded} succeeded, {partial} partial, {failed} failed")
