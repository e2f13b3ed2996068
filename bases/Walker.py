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
import stat as _stat

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from bases.Errors import TraversalError
from bases.Kernel import getLogger
from bases.Settings import MAX_DEPTH

logger = getLogger(__name__)


class SkipReason(Enum):
    TOO_DEEP = 'too-deep'
    SYMLINK_ESCAPE = 'symlink-escape'
    SYMLINK_CYCLE = 'symlink-cycle'
    TRAVERSAL = 'traversal'
    UNREADABLE = 'unreadable'
    NOT_REGULAR_FILE = 'not-regular-file'
    OTHER_FILESYSTEM = 'other-filesystem'
    EXCLUDED = 'excluded'
    # Raised later in the pipeline, reported through the same channel
    PATH_TOO_LONG = 'path-too-long'
    NAME_COLLISION = 'name-collision'
    FILE_TOO_LARGE = 'file-too-large'


@dataclass(frozen=True)
class EntryDescriptor:
    """One accepted filesystem object, relative to the walked root"""
    originalOsPath: str
    relativeComponents: Tuple[str, ...]
    isDirectory: bool
    sizeBytes: int
    modifiedTime: Optional[float]
    permissions: int = 0
    childCount: int = 0

    @property
    def relativePath(self) -> str:
        return '/'.join(self.relativeComponents)


@dataclass
class _WalkState:
    """Per-traversal state; never shared between walks or threads"""
    realRoot: str
    rootDevice: int
    ancestors: List[Tuple[int, int]] = field(default_factory=list)


class TreeWalker:
    """
    Depth-first, lazy traversal of one source directory.

    Each call to walk() starts over from the root. Entries that must not reach the archive
    (escaping or cyclic symlinks, '..' components, excessive depth, special files, unreadable
    entries) are reported through onSkip and left out; only an unreadable root is fatal.
    """

    def __init__(self, root: str, maxDepth: int = MAX_DEPTH, sameFileSystem: bool = True,
                 exclude: Iterable[str] = (), onSkip: Callable = None):
        """
        Args:
            root: Source directory, absolute or relative
            maxDepth: Deepest accepted entry, counted in components below the root
            sameFileSystem: Do not descend into directories on another device (mount points)
            exclude: OS paths never to include (e.g. the archive being written)
            onSkip: Callable(relativePath, reason: SkipReason, detail: str)

        Raises:
            TraversalError: If the root is missing, not a directory, or cannot be listed
        """
        self.root = os.path.abspath(root)
        self.maxDepth = maxDepth
        self.sameFileSystem = sameFileSystem
        self.exclude = frozenset(os.path.normcase(os.path.abspath(path)) for path in exclude)
        self.onSkip = onSkip or self._logSkip

        try:
            rootStat = os.stat(self.root)
        except OSError as e:
            raise TraversalError(f"Source directory does not exist or cannot be read: {self.root}", self.root) from e

        if not _stat.S_ISDIR(rootStat.st_mode):
            raise TraversalError(f"Source is not a directory: {self.root}", self.root)

        # Fail early rather than after the output file has been created
        self._listRoot()

        self.realRoot = os.path.realpath(self.root)

    def _logSkip(self, relativePath, reason, detail):
        logger.warning(f"Skipping {relativePath}: {reason.value} ({detail})")

    def _skip(self, components, reason: SkipReason, detail: str = ''):
        self.onSkip('/'.join(components), reason, detail)

    def _listRoot(self) -> List[os.DirEntry]:
        try:
            with os.scandir(self.root) as iterator:
                return sorted(iterator, key=lambda entry: entry.name)
        except OSError as e:
            raise TraversalError(f"Cannot list source directory {self.root}: {e}", self.root) from e

    def _listDirectory(self, path: str) -> List[os.DirEntry]:
        with os.scandir(path) as iterator:
            return sorted(iterator, key=lambda entry: entry.name)

    @staticmethod
    def _isInside(path: str, root: str) -> bool:
        try:
            return os.path.commonpath([path, root]) == root
        except ValueError: # Different drives on Windows
            return False

    @staticmethod
    def _isTraversalName(name: str) -> bool:
        if name in ('', '.', '..'):
            return True
        return os.sep in name or (os.altsep is not None and os.altsep in name)

    def walk(self) -> Iterator[EntryDescriptor]:
        """
        Yield EntryDescriptors depth first, directories before their contents, siblings sorted by name.

        Raises:
            TraversalError: If the root became unreadable since construction
        """
        rootStat = os.stat(self.realRoot)
        state = _WalkState(realRoot=self.realRoot, rootDevice=rootStat.st_dev)
        state.ancestors.append((rootStat.st_dev, rootStat.st_ino))

        logger.debug(f"Walk START: {self.root}")

        for child in self._listRoot():
            yield from self._visit(child, (child.name,), state)

        logger.debug(f"Walk END: {self.root}")

    def _visit(self, entry: os.DirEntry, components: Tuple[str, ...], state: _WalkState):
        if self._isTraversalName(entry.name) or any(c in ('.', '..') for c in components):
            self._skip(components, SkipReason.TRAVERSAL, f"refusing path component {entry.name!r}")
            return

        if len(components) > self.maxDepth:
            self._skip(components, SkipReason.TOO_DEEP, f"deeper than {self.maxDepth} levels")
            return

        path = entry.path
        if os.path.normcase(path) in self.exclude:
            self._skip(components, SkipReason.EXCLUDED, path)
            return

        try:
            isLink = entry.is_symlink()
            if isLink:
                target = os.path.realpath(path)
                if not self._isInside(target, state.realRoot):
                    self._skip(components, SkipReason.SYMLINK_ESCAPE, f"points to {target}")
                    return

            # Follows symlinks; a dangling link fails here
            st = os.stat(path)
        except OSError as e:
            self._skip(components, SkipReason.UNREADABLE, str(e))
            return

        if _stat.S_ISDIR(st.st_mode):
            yield from self._visitDirectory(path, components, st, isLink, state)
        elif _stat.S_ISREG(st.st_mode):
            yield EntryDescriptor(
                originalOsPath=path,
                relativeComponents=components,
                isDirectory=False,
                sizeBytes=int(st.st_size),
                modifiedTime=float(st.st_mtime),
                permissions=_stat.S_IMODE(st.st_mode),
            )
        else:
            self._skip(components, SkipReason.NOT_REGULAR_FILE, _stat.filemode(st.st_mode))

    def _visitDirectory(self, path, components, st, isLink, state: _WalkState):
        identity = (st.st_dev, st.st_ino)
        if identity in state.ancestors:
            self._skip(components, SkipReason.SYMLINK_CYCLE, "resolves to one of its own ancestors")
            return

        if self.sameFileSystem and st.st_dev != state.rootDevice:
            self._skip(components, SkipReason.OTHER_FILESYSTEM, "directory is on another file system")
            return

        try:
            children = self._listDirectory(path)
        except OSError as e:
            self._skip(components, SkipReason.UNREADABLE, str(e))
            return

        if isLink:
            logger.debug(f"Following directory symlink inside root: {'/'.join(components)}")

        yield EntryDescriptor(
            originalOsPath=path,
            relativeComponents=components,
            isDirectory=True,
            sizeBytes=0,
            modifiedTime=float(st.st_mtime),
            permissions=_stat.S_IMODE(st.st_mode),
            childCount=len(children),
        )

        state.ancestors.append(identity)
        try:
            for child in children:
                yield from self._visit(child, components + (child.name,), state)
        finally:
            state.ancestors.pop()
