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

import concurrent.futures
import os
import queue
import tempfile
import threading

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from bases.Codec import createCodec
from bases.Collision import NameCollisionResolver
from bases.Errors import (
    ArchiveCancelled, CollisionUnresolvedError, PathTooLongError, RipError, TraversalError, WriteError
)
from bases.Guard import Admission, ArchiveBudget, LimitReason, ResourceGuard
from bases.Kernel import RipEvent, getLogger
from bases.Sanitizer import PathSanitizer, cutToBytes
from bases.Settings import ArchiveSettings, DirectoryEntries, ExitPolicy, MAX_ENTRIES, SettingsGetter
from bases.Walker import EntryDescriptor, SkipReason, TreeWalker
from bases.Writer import ArchiveWriter

logger = getLogger(__name__)

ZIP_SUFFIX = '.zip'
FALLBACK_NAME = 'archive'
TEMP_SUFFIX = '.partial'

# Skips that lose data the user asked for; policy exclusions (escaping symlinks, special files) do not
DEGRADING_SKIPS = frozenset({
    SkipReason.UNREADABLE,
    SkipReason.TOO_DEEP,
    SkipReason.PATH_TOO_LONG,
    SkipReason.NAME_COLLISION,
    SkipReason.FILE_TOO_LARGE,
})


def getZipPath(sourceDir: str, reserved: Iterable[str] = ()) -> str:
    """
    Output path for a source directory: '<parent>/<name>.zip', or '<name> (n).zip' when that file
    already exists or another source of the same run already claimed it.
    """
    absolute = os.path.abspath(sourceDir)
    parent, name = os.path.split(absolute)

    safeName, _ = PathSanitizer().sanitizeSegment(name) if name else (FALLBACK_NAME, True)
    # Room for ' (nnnnn).zip' within one file name
    safeName = cutToBytes(safeName, 255 - 16) or FALLBACK_NAME

    taken = {os.path.normcase(os.path.abspath(path)) for path in reserved}

    def isFree(path):
        return not os.path.lexists(path) and os.path.normcase(path) not in taken

    candidate = os.path.join(parent, f'{safeName}{ZIP_SUFFIX}')
    number = 1
    while not isFree(candidate):
        candidate = os.path.join(parent, f'{safeName} ({number}){ZIP_SUFFIX}')
        number += 1

    return candidate


class ArchiveStatus(Enum):
    SUCCEEDED = 'succeeded'
    PARTIAL = 'partial' # Written, but some requested content is missing
    FAILED = 'failed' # No archive was produced


@dataclass
class SkippedEntry:
    path: str
    reason: SkipReason
    detail: str = ''


@dataclass
class _PendingDirectory:
    entry: EntryDescriptor
    archivePath: str
    renamed: bool
    hasContent: bool = False


@dataclass
class ArchiveResult:
    source: str
    zipPath: str
    status: ArchiveStatus = ArchiveStatus.SUCCEEDED
    entries: int = 0
    skipped: List[SkippedEntry] = field(default_factory=list)
    truncatedReason: Optional[LimitReason] = None
    error: Optional[BaseException] = None
    bytesRead: int = 0
    archiveSize: int = 0


class WalkerThread(threading.Thread):
    """Runs a TreeWalker ahead of the writer, handing entries over through a bounded queue."""

    SENTINEL = None

    def __init__(self, walker: TreeWalker, entryQueue: queue.Queue):
        self.walker = walker
        self.entryQueue = entryQueue
        self.stopped = threading.Event()
        self.e = None
        super().__init__(daemon=True)

    def run(self):
        try:
            for entry in self.walker.walk():
                if not self._put(entry):
                    return
        except Exception as e:
            self.e = e
        finally:
            self._put(self.SENTINEL)

    def _put(self, item) -> bool:
        while not self.stopped.is_set():
            try:
                self.entryQueue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def stop(self):
        self.stopped.set()


class ArchiveBuilder:
    """
    Builds the archive of one source directory.

    Walk, sanitize, resolve collisions, check the budget, write. The archive is written to a
    temporary file beside the target and moved into place only after it has been finalized.
    """

    def __init__(self, sourceDir: str, zipPath: str = None, settings: ArchiveSettings = None,
                 exclude: Iterable[str] = (), cancelEvent: threading.Event = None):
        self.sourceDir = sourceDir
        self.zipPath = os.path.abspath(zipPath or getZipPath(sourceDir))
        self.settings = settings or SettingsGetter.getInstance().settings
        self.exclude = set(exclude) | {self.zipPath}
        self.cancelEvent = cancelEvent or threading.Event()

        # Per-archive state; nothing here is shared with other builders
        self.sanitizer = PathSanitizer(self.settings.maxSegmentBytes, self.settings.maxPathBytes)
        self.resolver = NameCollisionResolver(
            caseInsensitive=self.settings.caseInsensitiveNames,
            maxSegmentBytes=self.settings.maxSegmentBytes,
            maxPathBytes=self.settings.maxPathBytes,
        )
        self.guard = ResourceGuard(ArchiveBudget(
            perFileCap=self.settings.perFileCap,
            archiveCap=self.settings.archiveCap,
            maxEntries=min(self.settings.maxEntries, MAX_ENTRIES),
        ))
        self.result = ArchiveResult(source=sourceDir, zipPath=self.zipPath)
        self._resultLock = threading.Lock()
        # Directories on the current walk path whose own entry waits until we know they stayed empty
        self._pendingDirectories = []

    def _trigger(self, event, **kwargs):
        event.trigger(sender=self, source=self.sourceDir, zipPath=self.zipPath, **kwargs)

    def _onSkip(self, relativePath: str, reason: SkipReason, detail: str = ''):
        with self._resultLock:
            self.result.skipped.append(SkippedEntry(relativePath, reason, detail))

        logger.debug(f"Skipped {relativePath}: {reason.value} {detail}")
        self._trigger(RipEvent.entrySkipped, archivePath=relativePath, reason=reason, detail=detail)

    def _truncate(self, reason: LimitReason):
        if self.result.truncatedReason:
            return

        self.result.truncatedReason = reason
        logger.warning(f"Archive {self.zipPath} truncated: {reason.value}")
        self._trigger(RipEvent.archiveTruncated, reason=reason,
                      detail=str(self.guard.toError(Admission(False, reason))))

    def _fail(self, error: BaseException) -> ArchiveResult:
        self.result.status = ArchiveStatus.FAILED
        self.result.error = error
        logger.error(f"Failed to create {self.zipPath}: {error}")
        self._trigger(RipEvent.archiveFatal, reason=type(error).__name__, detail=str(error), error=error)
        return self.result

    def _iterEntries(self, walker: TreeWalker):
        if not self.settings.pipelined:
            yield from walker.walk()
            return

        walkerThread = WalkerThread(walker, queue.Queue(maxsize=self.settings.queueSize))
        walkerThread.start()
        try:
            while True:
                entry = walkerThread.entryQueue.get()
                if entry is WalkerThread.SENTINEL:
                    break
                yield entry

            if walkerThread.e:
                raise walkerThread.e
        finally:
            walkerThread.stop()
            walkerThread.join(timeout=5)

    def _flushPendingDirectories(self, writer: ArchiveWriter, components=None):
        """
        Close the pending directories that do not contain 'components' (all of them when None), deepest
        first. A directory that ended up with nothing written beneath it gets its own entry, so it still
        extracts even when every child was skipped.
        """
        while self._pendingDirectories:
            pending = self._pendingDirectories[-1]
            depth = len(pending.entry.relativeComponents)
            if components is not None and components[:depth] == pending.entry.relativeComponents:
                break

            self._pendingDirectories.pop()
            if not pending.hasContent:
                self._writeEntry(writer, pending.entry, pending.archivePath, pending.renamed)

    def _markContent(self):
        for pending in self._pendingDirectories:
            pending.hasContent = True

    def _admit(self, writer: ArchiveWriter, archivePath: str, entry: EntryDescriptor) -> bool:
        size = 0 if entry.isDirectory else entry.sizeBytes
        admission = self.guard.admit(size)

        if not admission.admitted:
            if admission.terminal:
                self._truncate(admission.reason)
            else:
                self._onSkip(entry.relativePath, SkipReason.FILE_TOO_LARGE, str(self.guard.toError(admission, archivePath)))
            return False

        if not writer.fits(archivePath, size, isDirectory=entry.isDirectory):
            reason = LimitReason.TOO_MANY_ENTRIES if writer.entryCount + 1 > MAX_ENTRIES else LimitReason.ARCHIVE_TOO_LARGE
            self.guard.exhaust(reason)
            self._truncate(reason)
            return False

        return True

    def _addEntry(self, writer: ArchiveWriter, entry: EntryDescriptor):
        self._flushPendingDirectories(writer, entry.relativeComponents)
        if self.guard.exhausted:
            return

        try:
            sanitized = self.sanitizer.sanitize(entry.relativeComponents)
            archivePath = self.resolver.resolve(sanitized, entry.isDirectory, entry.relativeComponents)
        except PathTooLongError as e:
            self._onSkip(entry.relativePath, SkipReason.PATH_TOO_LONG, str(e))
            return
        except CollisionUnresolvedError as e:
            self._onSkip(entry.relativePath, SkipReason.NAME_COLLISION, str(e))
            return

        renamed = sanitized.wasModified or archivePath != sanitized.archivePath
        policy = self.settings.directoryEntries

        if entry.isDirectory and policy == DirectoryEntries.EMPTY:
            self._pendingDirectories.append(_PendingDirectory(entry, archivePath, renamed))
        elif entry.isDirectory and policy == DirectoryEntries.NONE:
            return
        else:
            self._writeEntry(writer, entry, archivePath, renamed)

    def _writeEntry(self, writer: ArchiveWriter, entry: EntryDescriptor, archivePath: str, renamed: bool):
        if not self._admit(writer, archivePath, entry):
            return

        try:
            record = writer.addEntry(
                archivePath,
                source=None if entry.isDirectory else entry.originalOsPath,
                isDirectory=entry.isDirectory,
                modifiedTime=entry.modifiedTime,
                permissions=entry.permissions,
                maxBytes=None if entry.isDirectory else entry.sizeBytes,
            )
        except WriteError:
            raise
        except OSError as e:
            # Could not open the source; nothing was written for it
            self._onSkip(entry.relativePath, SkipReason.UNREADABLE, str(e))
            return

        self._markContent()
        self.guard.commit(record.uncompressedSize)
        self.result.entries += 1
        self.result.bytesRead += record.uncompressedSize

        if record.truncated:
            logger.warning(f"{entry.originalOsPath} grew while being archived; kept the first {record.uncompressedSize} bytes")
        if record.readError:
            self._onSkip(entry.relativePath, SkipReason.UNREADABLE,
                         f"only {record.uncompressedSize} bytes could be read: {record.readError}")

        self._trigger(
            RipEvent.entryAdmitted,
            archivePath=record.archivePath,
            originalPath=entry.originalOsPath,
            isDirectory=entry.isDirectory,
            size=record.uncompressedSize,
            compressedSize=record.compressedSize,
            renamed=renamed,
        )

    def _writeEntries(self, walker: TreeWalker, writer: ArchiveWriter):
        for entry in self._iterEntries(walker):
            if self.cancelEvent.is_set():
                raise ArchiveCancelled(f"Cancelled while writing {self.zipPath}")

            self._addEntry(writer, entry)

            if self.guard.exhausted:
                return

        self._flushPendingDirectories(writer)

    def _createTempFile(self):
        directory, name = os.path.split(self.zipPath)
        try:
            return tempfile.mkstemp(dir=directory, prefix=f'.{name}.', suffix=TEMP_SUFFIX)
        except OSError as e:
            raise WriteError(f"Cannot create output file in {directory}: {e}") from e

    def _removeTempFile(self, tempPath: str):
        try:
            os.remove(tempPath)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temporary file {tempPath}: {e}")

    def build(self) -> ArchiveResult:
        """
        Create the archive. Failures specific to this archive are reported in the result rather than
        raised; KeyboardInterrupt propagates once the temporary file is gone.
        """
        settings = self.settings

        try:
            walker = TreeWalker(
                self.sourceDir,
                maxDepth=settings.maxDepth,
                sameFileSystem=settings.sameFileSystem,
                exclude=self.exclude,
                onSkip=self._onSkip,
            )
            fd, tempPath = self._createTempFile()
        except (TraversalError, WriteError) as e:
            return self._fail(e)

        walker.exclude = walker.exclude | {os.path.normcase(tempPath)}

        logger.info(f"Creating {self.zipPath} from {walker.root}")
        self._trigger(RipEvent.archiveStarted)

        try:
            with os.fdopen(fd, 'wb') as stream:
                writer = ArchiveWriter(
                    stream,
                    createCodec(settings.compression, settings.compressionLevel),
                    chunkSize=settings.readChunkSize,
                )
                self._writeEntries(walker, writer)
                self.result.archiveSize = writer.finalize()

            try:
                os.replace(tempPath, self.zipPath)
            except OSError as e:
                raise WriteError(f"Cannot move archive into place at {self.zipPath}: {e}") from e
        except (RipError, OSError) as e:
            self._removeTempFile(tempPath)
            return self._fail(e)
        except BaseException:
            self._removeTempFile(tempPath)
            raise

        degraded = any(skipped.reason in DEGRADING_SKIPS for skipped in self.result.skipped)
        if self.result.truncatedReason or degraded:
            self.result.status = ArchiveStatus.PARTIAL

        logger.info(f"Created {self.zipPath}: {self.result.entries} entries, status {self.result.status.value}")
        self._trigger(RipEvent.archiveCompleted, result=self.result)
        return self.result


@dataclass
class ArchiveSummary:
    results: List[ArchiveResult] = field(default_factory=list)

    def _withStatus(self, status: ArchiveStatus) -> List[ArchiveResult]:
        return [result for result in self.results if result.status == status]

    @property
    def succeeded(self) -> List[ArchiveResult]:
        return self._withStatus(ArchiveStatus.SUCCEEDED)

    @property
    def partial(self) -> List[ArchiveResult]:
        return self._withStatus(ArchiveStatus.PARTIAL)

    @property
    def failed(self) -> List[ArchiveResult]:
        return self._withStatus(ArchiveStatus.FAILED)

    def exitCode(self, policy: ExitPolicy = ExitPolicy.ALL_FAILED) -> int:
        failed = len(self.failed)
        if policy == ExitPolicy.NEVER or not failed:
            return 0
        if policy == ExitPolicy.ANY_FAILED:
            return 1
        return 1 if failed == len(self.results) else 0


class Archiver:
    """One independent archive per source directory, built in parallel."""

    def __init__(self, sources: Iterable[str], settings: ArchiveSettings = None, maxWorkers: int = None):
        self.sources = list(sources)
        self.settings = settings or SettingsGetter.getInstance().settings
        self.maxWorkers = maxWorkers
        self.cancelEvent = threading.Event()

    def plan(self) -> List[ArchiveBuilder]:
        # Output names are reserved up front so parallel builds never race for the same path
        zipPaths = []
        for source in self.sources:
            zipPaths.append(getZipPath(source, reserved=zipPaths))

        return [
            ArchiveBuilder(source, zipPath, self.settings, exclude=zipPaths, cancelEvent=self.cancelEvent)
            for source, zipPath in zip(self.sources, zipPaths)
        ]

    def run(self) -> ArchiveSummary:
        builders = self.plan()

        if self.maxWorkers == 1 or len(builders) <= 1:
            return ArchiveSummary([builder.build() for builder in builders])

        maxWorkers = self.maxWorkers or min(len(builders), (os.cpu_count() or 1) + 4)
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=maxWorkers, thread_name_prefix='rip')
        try:
            futures = [executor.submit(builder.build) for builder in builders]
            results = [future.result() for future in futures]
        except KeyboardInterrupt:
            logger.info("Interrupted, discarding unfinished archives")
            self.cancelEvent.set()
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        finally:
            executor.shutdown(wait=True)

        return ArchiveSummary(results)
