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

from typing import Iterator, Optional, Sequence

from bases.Errors import CollisionUnresolvedError, EntrySkipped, PathTooLongError
from bases.Kernel import getLogger
from bases.Sanitizer import SanitizedName, cutToBytes, splitExtension
from bases.Settings import MAX_PATH_BYTES, MAX_SEGMENT_BYTES

MAX_ATTEMPTS = 10000

logger = getLogger(__name__)


class CollisionTable:
    """
    Names already assigned within one archive.

    Files and directories live in separate namespaces ('x' and 'x/' may coexist). Keys are case-folded
    when caseInsensitive, since Windows and macOS would extract case variants onto the same file.
    """

    def __init__(self, caseInsensitive: bool = True):
        self.caseInsensitive = caseInsensitive
        self.files = set()
        self.directories = set()
        # Source relative components of a directory -> its final archive path
        self.directoryMap = {}
        # Source relative components of a directory that could not be placed -> the error class raised for it
        self.skippedDirectories = {}

    def key(self, archivePath: str) -> str:
        return archivePath.casefold() if self.caseInsensitive else archivePath

    def _namespace(self, isDirectory: bool) -> set:
        return self.directories if isDirectory else self.files

    def contains(self, archivePath: str, isDirectory: bool) -> bool:
        return self.key(archivePath) in self._namespace(isDirectory)

    def add(self, archivePath: str, isDirectory: bool):
        self._namespace(isDirectory).add(self.key(archivePath))

    def __len__(self):
        return len(self.files) + len(self.directories)


class NameCollisionResolver:
    """Assigns each sanitized name a final archive path that no other entry of the archive uses."""

    def __init__(self, table: CollisionTable = None, caseInsensitive: bool = True,
                 maxAttempts: int = MAX_ATTEMPTS, maxSegmentBytes: int = MAX_SEGMENT_BYTES,
                 maxPathBytes: int = MAX_PATH_BYTES):
        self.table = table if table is not None else CollisionTable(caseInsensitive=caseInsensitive)
        self.maxAttempts = maxAttempts
        self.maxSegmentBytes = maxSegmentBytes
        self.maxPathBytes = maxPathBytes

    def _rebase(self, archivePath: str, relativeComponents: Optional[Sequence]) -> str:
        """Move the entry under its parent's final (possibly disambiguated) path."""
        if not relativeComponents or len(relativeComponents) < 2:
            return archivePath

        errorClass = self.table.skippedDirectories.get(tuple(relativeComponents[:-1]))
        if errorClass is not None:
            raise errorClass(f"Parent directory of {archivePath} was skipped", path=archivePath)

        parentPath = self.table.directoryMap.get(tuple(relativeComponents[:-1]))
        if parentPath is None:
            return archivePath

        return f'{parentPath}/{archivePath.rsplit("/", 1)[-1]}'

    def _candidates(self, archivePath: str, isDirectory: bool) -> Iterator[str]:
        parent, _, leaf = archivePath.rpartition('/')
        stem, extension = (leaf, '') if isDirectory else splitExtension(leaf)
        separator = '' if stem.endswith('_') else '_'

        for number in range(1, self.maxAttempts + 1):
            suffix = f'{separator}{number}'
            budget = self.maxSegmentBytes - len(suffix) - len(extension.encode('utf-8'))
            name = f'{cutToBytes(stem, budget)}{suffix}{extension}'
            yield f'{parent}/{name}' if parent else name

    def _place(self, archivePath: str, isDirectory: bool) -> str:
        if self.table.contains(archivePath, isDirectory):
            for candidate in self._candidates(archivePath, isDirectory):
                if not self.table.contains(candidate, isDirectory):
                    logger.debug(f"Name collision: {archivePath} -> {candidate}")
                    archivePath = candidate
                    break
            else:
                raise CollisionUnresolvedError(
                    f"No free name for {archivePath} after {self.maxAttempts} attempts", path=archivePath
                )

        # Rebasing and disambiguators both lengthen the path after the sanitizer measured it
        length = len(archivePath.encode('utf-8'))
        if length > self.maxPathBytes:
            raise PathTooLongError(
                f"Archive path is {length} bytes, limit is {self.maxPathBytes}: {archivePath}", path=archivePath
            )

        return archivePath

    def resolve(self, sanitizedName: SanitizedName, isDirectory: bool = False,
                relativeComponents: Optional[Sequence] = None) -> str:
        """
        Return a free archive path for the entry and claim it.

        Args:
            sanitizedName: Output of PathSanitizer
            isDirectory: Directories only collide with directories, files only with files
            relativeComponents: Source path segments; lets children follow a renamed parent directory

        Raises:
            CollisionUnresolvedError: If no free name exists within maxAttempts
            PathTooLongError: If the final path exceeds maxPathBytes
            EntrySkipped: Either of the above, inherited from a skipped parent directory
        """
        try:
            archivePath = self._place(self._rebase(sanitizedName.archivePath, relativeComponents), isDirectory)
        except EntrySkipped as e:
            # Children must not fall back into whatever now owns the unrenamed path
            if isDirectory and relativeComponents:
                self.table.skippedDirectories[tuple(relativeComponents)] = type(e)
            raise

        self.table.add(archivePath, isDirectory)

        if isDirectory and relativeComponents:
            self.table.directoryMap[tuple(relativeComponents)] = archivePath

        return archivePath
