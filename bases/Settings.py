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

import dataclasses

from enum import Enum

import bitmath

from bases.Kernel import Singleton, getLogger
from bases.Utils import getEnv

# Limits. Without ZIP64 every size and offset must fit in 32 bits, so the caps stay at or below 4 GiB.
PER_FILE_CAP = getEnv('RIP_PER_FILE_CAP', int(bitmath.GiB(1).bytes))
ARCHIVE_CAP = getEnv('RIP_ARCHIVE_CAP', int(bitmath.GiB(4).bytes))
MAX_ENTRIES = 0xFFFF

MAX_DEPTH = getEnv('RIP_MAX_DEPTH', 100)

# 255 UTF-8 bytes fits ext4/APFS (bytes) and NTFS (UTF-16 units) alike; 1023 leaves room for macOS PATH_MAX.
MAX_SEGMENT_BYTES = getEnv('RIP_MAX_SEGMENT_BYTES', 255)
MAX_PATH_BYTES = getEnv('RIP_MAX_PATH_BYTES', 1023)

# Read chunk size (256 KiB) - bounds memory to one chunk of one entry at a time
READ_CHUNK_SIZE = getEnv('RIP_READ_CHUNK_SIZE', int(bitmath.KiB(256).bytes))

DEFAULT_COMPRESSION = getEnv('RIP_COMPRESSION', 'deflate')
DEFAULT_COMPRESSION_LEVEL = getEnv('RIP_COMPRESSION_LEVEL', 6)

PIPELINE_QUEUE_SIZE = getEnv('RIP_PIPELINE_QUEUE_SIZE', 64)

logger = getLogger(__name__)


class DirectoryEntries(Enum):
    """Which directories get an explicit 'name/' entry in the archive"""
    EMPTY = 'empty' # Only directories without children; others are implied by their files
    ALL = 'all'
    NONE = 'none'


class ExitPolicy(Enum):
    """When the process reports failure through its exit status"""
    ALL_FAILED = 'all-failed' # Non-zero only if every requested archive failed
    ANY_FAILED = 'any-failed'
    NEVER = 'never'


@dataclasses.dataclass
class ArchiveSettings:
    """Options for one run; each archive gets its own budget and collision table built from these."""
    compression: str = DEFAULT_COMPRESSION
    compressionLevel: int = DEFAULT_COMPRESSION_LEVEL
    perFileCap: int = PER_FILE_CAP
    archiveCap: int = ARCHIVE_CAP
    maxEntries: int = MAX_ENTRIES
    maxDepth: int = MAX_DEPTH
    maxSegmentBytes: int = MAX_SEGMENT_BYTES
    maxPathBytes: int = MAX_PATH_BYTES
    readChunkSize: int = READ_CHUNK_SIZE
    directoryEntries: DirectoryEntries = DirectoryEntries.EMPTY
    sameFileSystem: bool = True
    caseInsensitiveNames: bool = True
    pipelined: bool = False
    queueSize: int = PIPELINE_QUEUE_SIZE
    exitPolicy: ExitPolicy = ExitPolicy.ALL_FAILED

    def replace(self, **changes) -> 'ArchiveSettings':
        return dataclasses.replace(self, **changes)


# Singleton
class SettingsGetter(Singleton):

    def initialize(self, settings: ArchiveSettings = None):
        """Initialize the SettingsGetter with the process-wide default ArchiveSettings."""
        self._settings = settings or ArchiveSettings()

        logger.debug(f'Settings initialized: {self._settings}')

    @property
    def settings(self) -> ArchiveSettings:
        return self._settings
