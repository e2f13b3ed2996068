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

import zipfile
import zlib

from typing import Tuple

from bases.Settings import DEFAULT_COMPRESSION_LEVEL


class CodecStream:
    """Incremental compressor for one entry; tracks CRC-32 and both sizes as data passes through"""

    def __init__(self, compressor=None):
        self._compressor = compressor
        self.crc = 0
        self.uncompressedSize = 0
        self.compressedSize = 0

    def update(self, chunk: bytes) -> bytes:
        self.crc = zlib.crc32(chunk, self.crc)
        self.uncompressedSize += len(chunk)

        data = self._compressor.compress(chunk) if self._compressor else chunk
        self.compressedSize += len(data)
        return data

    def flush(self) -> bytes:
        if not self._compressor:
            return b''

        data = self._compressor.flush()
        self._compressor = None
        self.compressedSize += len(data)
        return data


class StoreCodec:
    """No compression (method 0)"""

    name = 'store'
    method = zipfile.ZIP_STORED

    def compress(self, data: bytes) -> Tuple[bytes, int]:
        return bytes(data), zlib.crc32(data) & 0xFFFFFFFF

    def open(self) -> CodecStream:
        return CodecStream()

    def maxCompressedSize(self, size: int) -> int:
        return size


class DeflateCodec:
    """Raw deflate (method 8), the form ZIP expects: no zlib header or trailer"""

    name = 'deflate'
    method = zipfile.ZIP_DEFLATED

    def __init__(self, level: int = DEFAULT_COMPRESSION_LEVEL):
        if not -1 <= level <= 9:
            raise ValueError(f"Invalid compression level: {level}")
        self.level = level

    def _newCompressor(self):
        return zlib.compressobj(self.level, zlib.DEFLATED, -zlib.MAX_WBITS)

    def compress(self, data: bytes) -> Tuple[bytes, int]:
        compressor = self._newCompressor()
        compressed = compressor.compress(data) + compressor.flush()
        return compressed, zlib.crc32(data) & 0xFFFFFFFF

    def open(self) -> CodecStream:
        return CodecStream(self._newCompressor())

    def maxCompressedSize(self, size: int) -> int:
        # zlib deflateBound() for raw streams, plus one empty final block
        return size + (size >> 12) + (size >> 14) + (size >> 25) + 13 + 6


CODECS = {
    StoreCodec.name: StoreCodec,
    DeflateCodec.name: DeflateCodec,
}


def createCodec(name: str = 'deflate', level: int = None):
    try:
        codecClass = CODECS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown compression method: {name} (expected one of {', '.join(CODECS)})") from None

    if codecClass is DeflateCodec and level is not None:
        return DeflateCodec(level)
    return codecClass()
