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

import threading

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bases.Errors import ResourceLimitExceeded
from bases.Kernel import getLogger
from bases.Settings import ARCHIVE_CAP, MAX_ENTRIES, PER_FILE_CAP
from bases.Utils import formatSize

logger = getLogger(__name__)


class LimitReason(Enum):
    FILE_TOO_LARGE = 'file-too-large'
    ARCHIVE_TOO_LARGE = 'archive-too-large'
    TOO_MANY_ENTRIES = 'too-many-entries'


@dataclass
class ArchiveBudget:
    bytesWrittenTotal: int = 0
    entriesWritten: int = 0
    perFileCap: int = PER_FILE_CAP
    archiveCap: int = ARCHIVE_CAP
    maxEntries: int = MAX_ENTRIES


@dataclass(frozen=True)
class Admission:
    admitted: bool
    reason: Optional[LimitReason] = None

    @property
    def terminal(self) -> bool:
        return self.reason in (LimitReason.ARCHIVE_TOO_LARGE, LimitReason.TOO_MANY_ENTRIES)


ADMITTED = Admission(True)


class ResourceGuard:
    """
    Tracks the uncompressed bytes and entries of one archive against its caps.

    A file larger than the per-file cap is rejected on its own. Crossing the archive cap or the
    entry ceiling is terminal: the archive is finished with what it has and every later
    admission is refused with the same reason.
    """

    def __init__(self, budget: ArchiveBudget = None):
        self.budget = budget or ArchiveBudget()
        self.exhaustedReason = None
        self._lock = threading.Lock()

    @property
    def exhausted(self) -> bool:
        return self.exhaustedReason is not None

    def admit(self, candidateSize: int) -> Admission:
        with self._lock:
            if self.exhaustedReason:
                return Admission(False, self.exhaustedReason)

            budget = self.budget
            if candidateSize > budget.perFileCap:
                logger.debug(f"Rejecting {formatSize(candidateSize)} entry: over per-file cap {formatSize(budget.perFileCap)}")
                return Admission(False, LimitReason.FILE_TOO_LARGE)

            if budget.entriesWritten + 1 > budget.maxEntries:
                self.exhaustedReason = LimitReason.TOO_MANY_ENTRIES
            elif budget.bytesWrittenTotal + candidateSize > budget.archiveCap:
                self.exhaustedReason = LimitReason.ARCHIVE_TOO_LARGE

            if self.exhaustedReason:
                logger.info(f"Archive budget exhausted ({self.exhaustedReason.value}) after "
                            f"{budget.entriesWritten} entries, {formatSize(budget.bytesWrittenTotal)}")
                return Admission(False, self.exhaustedReason)

            return ADMITTED

    def commit(self, actualSize: int):
        with self._lock:
            self.budget.bytesWrittenTotal += actualSize
            self.budget.entriesWritten += 1

    def exhaust(self, reason: LimitReason):
        with self._lock:
            if not self.exhaustedReason:
                self.exhaustedReason = reason
                logger.info(f"Archive budget exhausted ({reason.value})")

    def toError(self, admission: Admission, path: str = None) -> ResourceLimitExceeded:
        subject = path or 'entry'
        if admission.reason == LimitReason.FILE_TOO_LARGE:
            message = f"{subject} exceeds the per-file limit of {formatSize(self.budget.perFileCap)}"
        elif admission.reason == LimitReason.TOO_MANY_ENTRIES:
            message = f"Archive reached the limit of {self.budget.maxEntries} entries"
        else:
            message = f"Archive would exceed the limit of {formatSize(self.budget.archiveCap)}"
        return ResourceLimitExceeded(message, admission.reason, terminal=admission.terminal)
