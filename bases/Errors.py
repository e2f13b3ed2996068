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
Error taxonomy for archive creation.

Fatal for one archive:  TraversalError (root unreadable), WriteError (output failure)
Recoverable per entry:  EntrySkipped and its subclasses
Limits:                 ResourceLimitExceeded (per-file skip, or archive truncation)
Interrupt:              ArchiveCancelled (temporary output removed)
"""


class RipError(Exception):
    """Base class of every error raised by the archiving core"""


class TraversalError(RipError):
    """Raised when the source root itself cannot be read"""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class EntrySkipped(RipError):
    """A single entry was rejected; traversal continues"""

    def __init__(self, message: str, path: str = None, reason=None):
        super().__init__(message)
        self.path = path
        self.reason = reason


class PathTooLongError(EntrySkipped):
    """Sanitized archive path exceeds the configured path length bound"""


class CollisionUnresolvedError(EntrySkipped):
    """No free disambiguated name was found within the attempt bound"""


class ResourceLimitExceeded(RipError):
    """Raised when a size or entry-count limit rejects an entry"""

    def __init__(self, message: str, reason=None, terminal: bool = False):
        super().__init__(message)
        self.reason = reason
        self.terminal = terminal


class WriteError(RipError):
    """Underlying output stream failed; the archive is abandoned"""


class ArchiveStateError(RipError, RuntimeError):
    """ArchiveWriter used out of order (e.g. add after finalize)"""


class ArchiveCancelled(RipError):
    """The run was interrupted; the archive in progress is discarded"""
