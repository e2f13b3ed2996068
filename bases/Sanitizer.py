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

"""
Cross-platform archive entry naming.

Applies the union of Windows, macOS and Linux filename rules so that the same tree produces
the same archive names on every host:

1. decode with the source platform's native encoding, each undecodable code unit -> '_'
2. Unicode NFC
3. < > : " / \\ | ? * and control characters -> '_', trailing '.' or ' ' -> '_'
4. reserved device names (CON, PRN, AUX, NUL, COM1-9, LPT1-9) get '_' appended to the stem
5. over-long segments are cut and tagged with a hash of the full segment
"""

import codecs
import hashlib
import re
import sys
import unicodedata

from dataclasses import dataclass
from typing import Iterable, Tuple, Union

from bases.Errors import PathTooLongError
from bases.Settings import MAX_PATH_BYTES, MAX_SEGMENT_BYTES

PLACEHOLDER = '_'

ILLEGAL_CHARACTERS = frozenset('<>:"/\\|?*') | frozenset(chr(c) for c in range(32))

RESERVED_NAMES = frozenset(
    ['CON', 'PRN', 'AUX', 'NUL'] + [f'COM{i}' for i in range(1, 10)] + [f'LPT{i}' for i in range(1, 10)]
)

# Extensions longer than this are treated as part of the stem when truncating
MAX_KEPT_EXTENSION_BYTES = 16

HASH_TAG_LENGTH = 8

_DRIVE_PATTERN = re.compile(r'^[A-Za-z]:')


def _underscoreErrors(error):
    """Codec error handler: one '_' per undecodable code unit"""
    return PLACEHOLDER * (error.end - error.start), error.end


codecs.register_error('rip.underscore', _underscoreErrors)


def _isSurrogate(char):
    return 0xD800 <= ord(char) <= 0xDFFF


def _utf8Length(text):
    return len(text.encode('utf-8'))


def cutToBytes(text, limit):
    """Longest prefix of text whose UTF-8 encoding fits in limit bytes"""
    encoded = text.encode('utf-8')
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode('utf-8', errors='ignore')


def splitExtension(name):
    """Split 'name.ext' into ('name', '.ext'); dotfiles and names without a dot have no extension."""
    index = name.rfind('.')
    if index <= 0:
        return name, ''
    return name[:index], name[index:]


def isSafeArchivePath(path: str) -> bool:
    """True if path is relative, '/'-separated, and free of '..', drive letters and backslashes."""
    if not path or path.startswith('/') or '\\' in path or _DRIVE_PATTERN.match(path):
        return False

    components = path.rstrip('/').split('/')
    return all(component not in ('', '.', '..') for component in components)


@dataclass(frozen=True)
class SanitizedName:
    archivePath: str
    wasModified: bool


class PathSanitizer:
    """
    Pure, deterministic mapping from OS path segments to a portable archive path.

    Never branches on the host OS: the rules are the union of every supported target, so the
    archive looks the same wherever it was produced.
    """

    def __init__(self, maxSegmentBytes: int = MAX_SEGMENT_BYTES, maxPathBytes: int = MAX_PATH_BYTES,
                 sourceEncoding: str = None):
        minimum = HASH_TAG_LENGTH + 1 + MAX_KEPT_EXTENSION_BYTES + 1
        if maxSegmentBytes < minimum:
            raise ValueError(f"maxSegmentBytes must be at least {minimum}")

        self.maxSegmentBytes = maxSegmentBytes
        self.maxPathBytes = maxPathBytes
        self.sourceEncoding = sourceEncoding or sys.getfilesystemencoding()

    def _decode(self, segment: Union[str, bytes]) -> str:
        if isinstance(segment, bytes):
            return segment.decode(self.sourceEncoding, errors='rip.underscore')

        # os.fsdecode()/os.walk() smuggle undecodable bytes through as lone surrogates
        if any(_isSurrogate(char) for char in segment):
            return ''.join(PLACEHOLDER if _isSurrogate(char) else char for char in segment)

        return segment

    def _replaceIllegal(self, text: str) -> str:
        text = ''.join(PLACEHOLDER if char in ILLEGAL_CHARACTERS else char for char in text)

        stripped = text.rstrip('. ')
        if len(stripped) != len(text):
            text = stripped + PLACEHOLDER * (len(text) - len(stripped))

        return text or PLACEHOLDER

    def _escapeReserved(self, text: str) -> str:
        stem, extension = text, ''
        index = text.find('.')
        if index > 0:
            stem, extension = text[:index], text[index:]

        if stem.rstrip(' ').upper() in RESERVED_NAMES:
            return f'{stem}{PLACEHOLDER}{extension}'

        return text

    def _truncate(self, text: str) -> str:
        if _utf8Length(text) <= self.maxSegmentBytes:
            return text

        tag = '~' + hashlib.sha1(text.encode('utf-8')).hexdigest()[:HASH_TAG_LENGTH]

        stem, extension = splitExtension(text)
        if _utf8Length(extension) > MAX_KEPT_EXTENSION_BYTES:
            stem, extension = text, ''

        budget = self.maxSegmentBytes - _utf8Length(tag) - _utf8Length(extension)
        return cutToBytes(stem, budget) + tag + extension

    def sanitizeSegment(self, segment: Union[str, bytes]) -> Tuple[str, bool]:
        """
        Sanitize one path segment.

        Returns:
            tuple: (sanitized segment, wasModified)
        """
        original = segment
        text = self._decode(segment)
        text = unicodedata.normalize('NFC', text)
        text = self._replaceIllegal(text)
        text = self._escapeReserved(text)
        text = self._truncate(text)

        if isinstance(original, bytes):
            return text, text.encode('utf-8') != original

        return text, text != original

    def sanitize(self, relativeComponents: Iterable[Union[str, bytes]]) -> SanitizedName:
        """
        Sanitize a root-relative path given as its segments.

        Raises:
            PathTooLongError: If the joined path exceeds maxPathBytes
        """
        segments = []
        modified = False

        for component in relativeComponents:
            segment, changed = self.sanitizeSegment(component)
            segments.append(segment)
            modified = modified or changed

        if not segments:
            raise ValueError("Cannot sanitize an empty path")

        archivePath = '/'.join(segments)

        if _utf8Length(archivePath) > self.maxPathBytes:
            raise PathTooLongError(
                f"Archive path is {_utf8Length(archivePath)} bytes, limit is {self.maxPathBytes}: {archivePath}",
                path=archivePath
            )

        return SanitizedName(archivePath=archivePath, wasModified=modified)
