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

import os
import sys

import bitmath

from bases.Kernel import getLogger

# Limits are expressed in binary units, so sizes are reported the same way
ONE_KIB = int(bitmath.KiB(1).bytes)
ONE_MIB = int(bitmath.MiB(1).bytes)
ONE_GIB = int(bitmath.GiB(1).bytes)

TRUE_VALUES = frozenset({'1', 'true', 'yes', 'on'})

logger = getLogger(__name__)


# flush is required if this runs inside a frozen executable.
def flushPrint(text):
    """Print a line at once, degrading unencodable file names instead of failing."""
    try:
        print(text, flush=True)
        return
    except UnicodeEncodeError as e:
        logger.debug(f"Console cannot encode output ({sys.stdout.encoding}): {e}")

    stream = getattr(sys.stdout, 'buffer', None)
    if stream is not None:
        try:
            stream.write(text.encode('utf-8', errors='replace') + b'\n')
            stream.flush()
            return
        except OSError as e:
            logger.debug(f"Raw console write failed: {e}")

    encoding = sys.stdout.encoding or 'ascii'
    print(text.encode(encoding, errors='replace').decode(encoding), flush=True)


def formatSize(size, decimal=None):
    """
    Human readable size in binary units: '512 B', '1.5 KiB', '4.00 GiB'.

    Whole bytes are printed as is; below a GiB one decimal is shown, from a GiB on two, unless
    'decimal' says otherwise.
    """
    size = int(size)
    if abs(size) < ONE_KIB:
        return f'{size} B'

    if decimal is None:
        decimal = 1 if abs(size) < ONE_GIB else 2

    return bitmath.Byte(size).best_prefix(system=bitmath.NIST).format(f'{{value:.{decimal}f}} {{unit}}')


def sendException(logger, e, action=None):
    """Report an unexpected error to the user and the log; re-raise when RIP_RAISE_EXCEPTION is set."""
    flushPrint(f'Unexpected error: {e}')

    if action:
        flushPrint(action)

    flushPrint('\nRun again with --log-level DEBUG to see the full trace.\n')

    logger.exception(e)

    if getEnv('RIP_RAISE_EXCEPTION', False) and isinstance(e, BaseException):
        raise e


def getEnv(envVar, default):
    """
    Read an environment variable, converted to the type of 'default'.

    Unset or unparsable values give 'default'. With a None default the raw string is returned.
    Booleans accept 1/true/yes/on, case-insensitively.
    """
    value = os.getenv(envVar)
    if value is None or default is None:
        return default if value is None else value

    try:
        if isinstance(default, bool):
            return value.strip().lower() in TRUE_VALUES
        return type(default)(value.strip())
    except (ValueError, TypeError):
        logger.warning(f"Ignoring {envVar}={value!r}: expected {type(default).__name__}")
        return default
