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
import io
import os
import stat
import threading
import time
import unittest
import zipfile

from tests.RipTestBase import RipTestBase
from bases.Codec import StoreCodec
from bases.Errors import ArchiveStateError, WriteError
from bases.Writer import ArchiveWriter, WriterState, unixToDosTime


class FailingReader(io.BytesIO):
    """Returns the first chunk, then fails like a disk read error"""

    def __init__(self, data, failAfter):
        super().__init__(data)
        self.failAfter = failAfter

    def read(self, size=-1):
        if self.tell() >= self.failAfter:
            raise OSError(5, 'Input/output error')
        return super().read(min(size, self.failAfter - self.tell()))


class FailingStream(io.BytesIO):

    def __init__(self, failAfter):
        super().__init__()
        self.failAfter = failAfter

    def write(self, data):
        if self.tell() + len(data) > self.failAfter:
            raise OSError(28, 'No space left on device')
        return super().write(data)


class ArchiveWriterTest(RipTestBase):

    def setUp(self):
        super().setUp()
        self.output = io.BytesIO()
        self.writer = ArchiveWriter(self.output, chunkSize=1024)

    def openArchive(self):
        self.output.seek(0)
        return zipfile.ZipFile(self.output)

    def testFileEntries(self):
        content = os.urandom(5000) + b'text' * 1000
        path = self.makeFile('data.bin', content)

        record = self.writer.addEntry('data.bin', path, modifiedTime=time.time(), permissions=0o640)
        self.writer.addEntry('テスト/ファイル.txt', io.BytesIO(b'hello'))
        self.writer.finalize()

        self.assertEqual(record.uncompressedSize, len(content))
        self.assertEqual(record.localHeaderOffset, 0)
        self.assertTrue(record.unicodeFlag)

        with self.openArchive() as zf:
            self.assertIsNone(zf.testzip())
            self.assertEqual(zf.namelist(), ['data.bin', 'テスト/ファイル.txt'])
            self.assertEqual(zf.read('data.bin'), content)
            self.assertEqual(zf.read('テスト/ファイル.txt'), b'hello')

            for info in zf.infolist():
                self.assertTrue(info.flag_bits & 0x800, "UTF-8 name flag must be set")
                self.assertTrue(info.flag_bits & 0x8, "Data descriptor flag must be set")
                self.assertEqual(info.compress_type, zipfile.ZIP_DEFLATED)
                self.assertEqual(info.create_system, 3)

            info = zf.getinfo('data.bin')
            self.assertEqual(stat.S_IMODE(info.external_attr >> 16), 0o640)
            self.assertTrue(stat.S_ISREG(info.external_attr >> 16))
            self.assertEqual(info.external_attr & 0xFF, 0x20)

    def testRawBytesMatchLocalHeaderLayout(self):
        self.writer.addEntry('a.txt', io.BytesIO(b'abc'))
        data = self.output.getvalue()

        self.assertEqual(data[:4], b'PK\x03\x04')
        flags = int.from_bytes(data[6:8], 'little')
        self.assertEqual(flags, 0x0808)
        # CRC and sizes deferred to the data descriptor
        self.assertEqual(data[14:26], b'\x00' * 12)
        self.assertEqual(data[30:35], b'a.txt')
        self.assertEqual(data[-16:-12], b'PK\x07\x08')

    def testDirectoryEntry(self):
        record = self.writer.addEntry('empty', isDirectory=True, permissions=0o700)
        self.writer.finalize()

        self.assertEqual(record.archivePath, 'empty/')
        with self.openArchive() as zf:
            info = zf.getinfo('empty/')
            self.assertTrue(info.is_dir())
            self.assertEqual(info.file_size, 0)
            self.assertFalse(info.flag_bits & 0x8)
            self.assertTrue(stat.S_ISDIR(info.external_attr >> 16))
            self.assertEqual(info.external_attr & 0x10, 0x10)

    def testStoreCodec(self):
        writer = ArchiveWriter(self.output, codec=StoreCodec())
        writer.addEntry('plain.txt', io.BytesIO(b'x' * 100))
        writer.finalize()

        with self.openArchive() as zf:
            info = zf.getinfo('plain.txt')
            self.assertEqual(info.compress_type, zipfile.ZIP_STORED)
            self.assertEqual(info.compress_size, 100)
            self.assertEqual(zf.read('plain.txt'), b'x' * 100)

    def testEmptyFileAndEmptyArchive(self):
        writer = ArchiveWriter(self.output)
        writer.finalize()
        with self.openArchive() as zf:
            self.assertEqual(zf.namelist(), [])

        self.output = io.BytesIO()
        writer = ArchiveWriter(self.output)
        writer.addEntry('empty.txt', io.BytesIO(b''))
        writer.finalize()
        with self.openArchive() as zf:
            self.assertEqual(zf.read('empty.txt'), b'')

    def testStateMachine(self):
        self.assertEqual(self.writer.state, WriterState.EMPTY)
        self.writer.addEntry('a', io.BytesIO(b'a'))
        self.assertEqual(self.writer.state, WriterState.WRITING)

        size = self.writer.finalize()
        self.assertEqual(self.writer.state, WriterState.FINALIZED)
        self.assertEqual(size, len(self.output.getvalue()))

        # Second finalize is a no-op
        self.assertEqual(self.writer.finalize(), size)
        self.assertEqual(len(self.output.getvalue()), size)

        with self.assertRaises(ArchiveStateError):
            self.writer.addEntry('b', io.BytesIO(b'b'))

    def testUnsafeNamesRefused(self):
        for name in ['../evil', '/abs', 'a\\b', 'C:/x', 'a/../b', '']:
            with self.subTest(name=name):
                with self.assertRaises(ValueError):
                    self.writer.addEntry(name, io.BytesIO(b'x'))

        with self.assertRaises(ValueError):
            self.writer.addEntry('file/', io.BytesIO(b'x'))

        self.assertEqual(self.output.getvalue(), b'')

    def testDuplicateNameRefused(self):
        self.writer.addEntry('a.txt', io.BytesIO(b'1'))
        with self.assertRaises(ValueError):
            self.writer.addEntry('a.txt', io.BytesIO(b'2'))

    def testMaxBytesCutsGrowingSource(self):
        record = self.writer.addEntry('log.txt', io.BytesIO(b'0123456789'), maxBytes=4)
        self.writer.finalize()

        self.assertTrue(record.truncated)
        self.assertEqual(record.uncompressedSize, 4)
        with self.openArchive() as zf:
            self.assertEqual(zf.read('log.txt'), b'0123')

        self.output = io.BytesIO()
        writer = ArchiveWriter(self.output)
        record = writer.addEntry('exact.txt', io.BytesIO(b'0123'), maxBytes=4)
        self.assertFalse(record.truncated)

    def testReadErrorKeepsArchiveConsistent(self):
        record = self.writer.addEntry('flaky.bin', FailingReader(b'a' * 4096, failAfter=1024))
        self.writer.addEntry('next.txt', io.BytesIO(b'next'))
        self.writer.finalize()

        self.assertIsNotNone(record.readError)
        self.assertEqual(record.uncompressedSize, 1024)
        with self.openArchive() as zf:
            self.assertIsNone(zf.testzip())
            self.assertEqual(zf.read('flaky.bin'), b'a' * 1024)
            self.assertEqual(zf.read('next.txt'), b'next')

    def testMissingSourceWritesNothing(self):
        with self.assertRaises(FileNotFoundError):
            self.writer.addEntry('gone.txt', os.path.join(self.tempDir, 'gone.txt'))

        self.assertEqual(self.writer.offset, 0)
        self.assertEqual(self.writer.entryCount, 0)

    def testOutputFailure(self):
        writer = ArchiveWriter(FailingStream(failAfter=40))
        with self.assertRaises(WriteError):
            writer.addEntry('a.txt', io.BytesIO(b'x' * 100))

        with self.assertRaises(ArchiveStateError):
            writer.addEntry('b.txt', io.BytesIO(b'x'))
        with self.assertRaises(ArchiveStateError):
            writer.finalize()

    def testFits(self):
        self.assertTrue(self.writer.fits('a.txt', 1000))
        self.assertTrue(self.writer.fits('dir', 0, isDirectory=True))
        self.assertFalse(self.writer.fits('huge.bin', 0xFFFFFFFF + 1))

        self.writer.offset = 0xFFFFFFFF - 100
        self.assertFalse(self.writer.fits('a.txt', 1000))
        self.assertFalse(self.writer.fits('dir', 0, isDirectory=True))

    def testFitsEntryCeiling(self):
        self.writer.records = [None] * 65535
        self.assertFalse(self.writer.fits('a', 0))

    def testConcurrentAddsAreSerialized(self):
        payloads = {f'file{i}.bin': os.urandom(20000) for i in range(8)}

        def add(name):
            self.writer.addEntry(name, io.BytesIO(payloads[name]))

        threads = [threading.Thread(target=add, args=(name,)) for name in payloads]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.writer.finalize()

        with self.openArchive() as zf:
            self.assertIsNone(zf.testzip())
            for name, payload in payloads.items():
                self.assertEqual(zf.read(name), payload)


class DosTimeTest(unittest.TestCase):

    def testDefaultForMissingTimestamp(self):
        self.assertEqual(unixToDosTime(None), (0, (1 << 5) | 1))
        self.assertEqual(unixToDosTime(0), (0, (1 << 5) | 1))

    def testLocalTimeConversion(self):
        timestamp = time.mktime(datetime.datetime(2024, 5, 17, 13, 45, 31).timetuple())
        dosTime, dosDate = unixToDosTime(timestamp)

        self.assertEqual(dosTime, (13 << 11) | (45 << 5) | 15)
        self.assertEqual(dosDate, ((2024 - 1980) << 9) | (5 << 5) | 17)

    def testBeforeDosEpoch(self):
        timestamp = time.mktime(datetime.datetime(1975, 1, 1, 12, 0, 0).timetuple())
        self.assertEqual(unixToDosTime(timestamp), (0, (1 << 5) | 1))


if __name__ == '__main__':
    unittest.main()
