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

import datetime
import stat as _stat
import struct
import threading
import zipfile

from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, List, Optional

from bases.Codec import DeflateCodec
from bases.Errors import ArchiveStateError, WriteError
from bases.Kernel import getLogger
from bases.Sanitizer import isSafeArchivePath
from bases.Settings import MAX_ENTRIES, READ_CHUNK_SIZE

logger = getLogger(__name__)

# Record signatures; zipfile only exposes them as packed byte strings
LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0] # 0x04034b50
CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0] # 0x02014b50
END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive)[0] # 0x06054b50
DATA_DESCRIPTOR_SIGNATURE = 0x08074b50

# General purpose bit flags
DATA_DESCRIPTOR_FLAG = 0x0008 # Bit 3: CRC and sizes follow the data
UTF8_FLAG = 0x0800 # Bit 11: name is UTF-8

VERSION_NEEDED = 20 # 2.0: deflate, directories
VERSION_MADE_BY = (3 << 8) | VERSION_NEEDED # Host system 3 = Unix, so external attributes carry st_mode

DOS_DIRECTORY = 0x10
DOS_ARCHIVE = 0x20

LOCAL_HEADER_SIZE = 30
DATA_DESCRIPTOR_SIZE = 16
CENTRAL_HEADER_SIZE = 46
END_OF_CENTRAL_DIR_SIZE = 22

# Without ZIP64 every size and offset is a 32-bit field
MAX_32BIT = 0xFFFFFFFF

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIRECTORY_MODE = 0o755


class WriterState(Enum):
    EMPTY = 'empty'
    WRITING = 'writing'
    FINALIZED = 'finalized'


@dataclass
class ZipRecord:
    """Everything the central directory needs to describe one written entry"""
    archivePath: str
    crc32: int
    compressedSize: int
    uncompressedSize: int
    localHeaderOffset: int
    unicodeFlag: bool = True
    method: int = zipfile.ZIP_STORED
    flags: int = UTF8_FLAG
    dosTime: int = 0
    dosDate: int = 0
    externalAttributes: int = 0
    isDirectory: bool = False
    # Set when the source had more data than maxBytes allowed
    truncated: bool = False
    # Set when reading the source failed part way; the entry holds what was read before
    readError: Optional[str] = None


def unixToDosTime(timestamp):
    """
    Convert Unix timestamp to DOS time and date format

    DOS time: bits 0-4 seconds / 2, bits 5-10 minutes, bits 11-15 hours.
    DOS date: bits 0-4 day, bits 5-8 month, bits 9-15 year - 1980 (1980-2107).

    Returns:
        tuple: (dosTime, dosDate); 1980-01-01 00:00:00 when the timestamp is missing or unusable
    """
    if timestamp is None or timestamp <= 0:
        return 0, (1 << 5) | 1

    try:
        dt = datetime.datetime.fromtimestamp(timestamp)
    except (ValueError, OSError, OverflowError):
        return 0, (1 << 5) | 1

    if dt.year < 1980:
        return 0, (1 << 5) | 1
    if dt.year > 2107:
        dt = datetime.datetime(2107, 12, 31, 23, 59, 58)

    dosTime = (dt.hour << 11) | (dt.minute << 5) | (dt.second // 2)
    dosDate = ((dt.year - 1980) << 9) | (dt.month << 5) | dt.day
    return dosTime, dosDate


class ArchiveWriter:
    """
    Streams a ZIP archive to a binary output, one entry at a time.

    File data is compressed chunk by chunk; CRC and sizes go to a data descriptor after the data,
    so the output never needs to seek. Every name is written UTF-8 with bit 11 set. ZIP64 is never
    emitted: callers ask fits() before adding an entry that could push the archive past the
    32-bit limits.
    """

    def __init__(self, stream: BinaryIO, codec=None, chunkSize: int = READ_CHUNK_SIZE):
        self.stream = stream
        self.codec = codec or DeflateCodec()
        self.chunkSize = chunkSize

        self.state = WriterState.EMPTY
        self.records: List[ZipRecord] = []
        self.offset = 0

        self._names = set()
        self._centralSize = 0
        self._failed = None
        self._lock = threading.RLock()

    @property
    def entryCount(self) -> int:
        return len(self.records)

    def _write(self, data: bytes):
        try:
            self.stream.write(data)
        except OSError as e:
            self._failed = e
            raise WriteError(f"Failed to write archive: {e}") from e
        self.offset += len(data)

    def _checkWritable(self):
        if self.state == WriterState.FINALIZED:
            raise ArchiveStateError("Cannot add entries to a finalized archive")
        if self._failed:
            raise ArchiveStateError(f"Archive output already failed: {self._failed}")

    def _checkName(self, archivePath: str, isDirectory: bool) -> str:
        name = archivePath[:-1] if isDirectory and archivePath.endswith('/') else archivePath
        if not isSafeArchivePath(name) or name.endswith('/'):
            raise ValueError(f"Refusing unsafe archive path: {archivePath!r}")

        if isDirectory:
            name += '/'
        if name in self._names:
            raise ValueError(f"Duplicate archive path: {name!r}")
        return name

    def _makeExternalAttributes(self, isDirectory: bool, permissions: Optional[int]) -> int:
        if isDirectory:
            mode = _stat.S_IFDIR | (DEFAULT_DIRECTORY_MODE if permissions is None else _stat.S_IMODE(permissions))
            return (mode << 16) | DOS_DIRECTORY

        mode = _stat.S_IFREG | (DEFAULT_FILE_MODE if permissions is None else _stat.S_IMODE(permissions))
        return (mode << 16) | DOS_ARCHIVE

    def _makeLocalFileHeader(self, record: ZipRecord, nameBytes: bytes) -> bytes:
        # CRC and sizes are zero: files carry them in the data descriptor, directories have none
        return struct.pack(
            '<IHHHHHIIIHH',
            LOCAL_FILE_HEADER_SIGNATURE,
            VERSION_NEEDED,
            record.flags,
            record.method,
            record.dosTime,
            record.dosDate,
            0, # CRC-32
            0, # Compressed size
            0, # Uncompressed size
            len(nameBytes),
            0, # Extra field length
        ) + nameBytes

    def _makeDataDescriptor(self, record: ZipRecord) -> bytes:
        return struct.pack(
            '<IIII',
            DATA_DESCRIPTOR_SIGNATURE,
            record.crc32 & MAX_32BIT,
            record.compressedSize,
            record.uncompressedSize,
        )

    def _makeCentralDirHeader(self, record: ZipRecord) -> bytes:
        nameBytes = record.archivePath.encode('utf-8')
        return struct.pack(
            '<IHHHHHHIIIHHHHHII',
            CENTRAL_DIR_SIGNATURE,
            VERSION_MADE_BY,
            VERSION_NEEDED,
            record.flags,
            record.method,
            record.dosTime,
            record.dosDate,
            record.crc32 & MAX_32BIT,
            record.compressedSize,
            record.uncompressedSize,
            len(nameBytes),
            0, # Extra field length
            0, # File comment length
            0, # Disk number start
            0, # Internal file attributes
            record.externalAttributes,
            record.localHeaderOffset,
        ) + nameBytes

    def _makeEndOfCentralDir(self, centralDirSize: int, centralDirStart: int) -> bytes:
        count = len(self.records)
        return struct.pack(
            '<IHHHHIIH',
            END_OF_CENTRAL_DIR_SIGNATURE,
            0, # Number of this disk
            0, # Disk where central directory starts
            count, # Entries on this disk
            count, # Total entries
            centralDirSize,
            centralDirStart,
            0, # Comment length
        )

    def fits(self, archivePath: str, size: int, isDirectory: bool = False) -> bool:
        """
        Whether an entry of `size` uncompressed bytes can be added without crossing any 32-bit ZIP
        field or the 65535 entry count, assuming the worst case compressed size.
        """
        with self._lock:
            if len(self.records) + 1 > MAX_ENTRIES:
                return False

            nameLength = len(archivePath.encode('utf-8')) + (1 if isDirectory and not archivePath.endswith('/') else 0)
            if isDirectory:
                dataSize = 0
            else:
                if size > MAX_32BIT:
                    return False
                dataSize = self.codec.maxCompressedSize(size) + DATA_DESCRIPTOR_SIZE
                if dataSize - DATA_DESCRIPTOR_SIZE > MAX_32BIT:
                    return False

            centralDirStart = self.offset + LOCAL_HEADER_SIZE + nameLength + dataSize
            centralDirSize = self._centralSize + CENTRAL_HEADER_SIZE + nameLength
            return (self.offset <= MAX_32BIT
                    and centralDirStart <= MAX_32BIT
                    and centralDirStart + centralDirSize + END_OF_CENTRAL_DIR_SIZE <= MAX_32BIT)

    def addEntry(self, archivePath: str, source=None, isDirectory: bool = False, modifiedTime: float = None,
                 permissions: int = None, maxBytes: int = None) -> ZipRecord:
        """
        Append one entry.

        Args:
            archivePath: Sanitized '/'-separated name; directories may omit the trailing '/'
            source: OS path or binary file object for files; ignored for directories
            isDirectory: Write a zero-length 'name/' entry
            modifiedTime: Unix timestamp for the DOS date/time fields
            permissions: POSIX mode bits stored in the external attributes
            maxBytes: Read at most this many bytes from the source

        Raises:
            ValueError: Unsafe or duplicate name
            ArchiveStateError: The archive is finalized or its output has failed
            WriteError: The output stream failed
            OSError: The source could not be opened; nothing was written
        """
        with self._lock:
            self._checkWritable()
            name = self._checkName(archivePath, isDirectory)

            if len(self.records) + 1 > MAX_ENTRIES:
                raise WriteError(f"Archive cannot hold more than {MAX_ENTRIES} entries without ZIP64")
            if self.offset > MAX_32BIT:
                raise WriteError("Archive offset crossed the 4 GiB limit without ZIP64")

            dosTime, dosDate = unixToDosTime(modifiedTime)
            record = ZipRecord(
                archivePath=name,
                crc32=0,
                compressedSize=0,
                uncompressedSize=0,
                localHeaderOffset=self.offset,
                method=zipfile.ZIP_STORED if isDirectory else self.codec.method,
                flags=UTF8_FLAG if isDirectory else UTF8_FLAG | DATA_DESCRIPTOR_FLAG,
                dosTime=dosTime,
                dosDate=dosDate,
                externalAttributes=self._makeExternalAttributes(isDirectory, permissions),
                isDirectory=isDirectory,
            )

            if isDirectory:
                self._write(self._makeLocalFileHeader(record, name.encode('utf-8')))
            else:
                self._writeFile(record, source, maxBytes)

            self.records.append(record)
            self._names.add(name)
            self._centralSize += CENTRAL_HEADER_SIZE + len(name.encode('utf-8'))
            self.state = WriterState.WRITING

            logger.debug(f"Added {name} ({record.uncompressedSize} -> {record.compressedSize} bytes)")
            return record

    def _writeFile(self, record: ZipRecord, source, maxBytes: Optional[int]):
        ownsSource = not hasattr(source, 'read')
        fileObject = open(source, 'rb') if ownsSource else source

        try:
            self._write(self._makeLocalFileHeader(record, record.archivePath.encode('utf-8')))
            self._streamData(record, fileObject, maxBytes)
        finally:
            if ownsSource:
                fileObject.close()

        if record.compressedSize > MAX_32BIT or record.uncompressedSize > MAX_32BIT:
            self._failed = WriteError(f"{record.archivePath} crossed the 4 GiB limit without ZIP64")
            raise self._failed

        self._write(self._makeDataDescriptor(record))

    def _streamData(self, record: ZipRecord, fileObject, maxBytes: Optional[int]):
        codecStream = self.codec.open()
        remaining = maxBytes

        while remaining is None or remaining > 0:
            size = self.chunkSize if remaining is None else min(self.chunkSize, remaining)
            try:
                chunk = fileObject.read(size)
            except OSError as e:
                logger.warning(f"Read failed for {record.archivePath}, keeping {codecStream.uncompressedSize} bytes: {e}")
                record.readError = str(e)
                break

            if not chunk:
                break

            data = codecStream.update(chunk)
            if data:
                self._write(data)
            if remaining is not None:
                remaining -= len(chunk)

        if remaining == 0 and record.readError is None:
            try:
                record.truncated = bool(fileObject.read(1))
            except OSError:
                pass

        data = codecStream.flush()
        if data:
            self._write(data)

        record.crc32 = codecStream.crc & MAX_32BIT
        record.compressedSize = codecStream.compressedSize
        record.uncompressedSize = codecStream.uncompressedSize

    def finalize(self) -> int:
        """
        Write the central directory and end record. Returns the archive size; calling it again is a no-op.
        """
        with self._lock:
            if self.state == WriterState.FINALIZED:
                return self.offset
            if self._failed:
                raise ArchiveStateError(f"Archive output already failed: {self._failed}")

            centralDirStart = self.offset
            for record in self.records:
                self._write(self._makeCentralDirHeader(record))
            centralDirSize = self.offset - centralDirStart

            if centralDirStart > MAX_32BIT or centralDirSize > MAX_32BIT:
                self._failed = WriteError("Central directory crossed the 4 GiB limit without ZIP64")
                raise self._failed

            self._write(self._makeEndOfCentralDir(centralDirSize, centralDirStart))

            try:
                self.stream.flush()
            except OSError as e:
                self._failed = e
                raise WriteError(f"Failed to flush archive: {e}") from e

            self.state = WriterState.FINALIZED
            logger.debug(f"Archive finalized: {len(self.records)} entries, {self.offset} bytes")
            return self.offset
