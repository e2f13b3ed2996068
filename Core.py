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

import sys
import os
import signal
import threading

from bases.Kernel import getLogger
from bases.Settings import SettingsGetter
from bases.CLI import (
    VerboseReporter, buildSettings, configureCLIParser, configureLogging, loadEnvFile, printSummary, showVersion
)
from bases.Archiver import Archiver
from bases.Progress import ArchiveProgress
from bases.Utils import flushPrint, sendException

logger = getLogger(__name__)

INTERRUPTED_EXIT_CODE = 130


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    if threading.current_thread() is not threading.main_thread():
        return

    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit without cleanup messages
            os._exit(INTERRUPTED_EXIT_CODE)
        else:
            # First Ctrl+C - let the archivers remove their temporary files
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():
    # Load .env file early (before any configuration is read)
    loadEnvFile()
    return SettingsGetter()


def processArchives(args):
    """Build one archive per source directory and report the outcome"""
    settings = buildSettings(args)
    archiver = Archiver(args.sources, settings=settings, maxWorkers=args.jobs)

    with VerboseReporter(verbose=args.verbose):
        if args.progress:
            with ArchiveProgress():
                summary = archiver.run()
        else:
            summary = archiver.run()

    printSummary(summary)
    return summary.exitCode(settings.exitPolicy)


def runCLIMain(argv=None):
    parser = configureCLIParser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    configureLogging(args.logLevel)

    if args.version:
        showVersion()
        return 0

    if not args.sources:
        parser.print_help()
        return 0

    return processArchives(args)


def main(argv=None):
    setupSettings()
    setupGracefulShutdown()

    try:
        return runCLIMain(argv)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return INTERRUPTED_EXIT_CODE
    except Exception as e:
        sendException(logger, e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
