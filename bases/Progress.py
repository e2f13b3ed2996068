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
import threading

from tqdm import tqdm

from bases.Kernel import RipEvent, getLogger
from bases.Utils import formatSize

logger = getLogger(__name__)

UNKNOWN_TOTAL_FORMAT = '{desc}: {n_fmt} [{elapsed}, {rate_fmt}]{postfix}'


class BitmathTqdm(tqdm):
    """tqdm byte counter whose sizes and rates are formatted by bitmath."""

    def __init__(self, *args, sizeFormatter=None, unit='B', unitScale=False, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize

        if 'bar_format' not in kwargs:
            kwargs['bar_format'] = (
                '{desc}: {percentage:3.0f}%|{bar}| '
                '{n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]'
            ) if kwargs.get('total') else UNKNOWN_TOTAL_FORMAT

        super().__init__(*args, unit=unit, unit_scale=unitScale, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        d = super().format_dict

        d['rate_fmt'] = self._formatSpeed(d.get('rate', 0) or 0)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'
        return d

    def __bool__(self):
        # tqdm raises TypeError for bool() when total is None
        return hasattr(self, 'n')


def createProgressBar(totalSize=None, description=None, sizeFormatter=None, **kwargs):
    """Create a progress bar with consistent formatting."""
    return BitmathTqdm(
        total=totalSize, desc=description or "Progress", sizeFormatter=sizeFormatter or formatSize, **kwargs
    )


class ArchiveProgress:
    """
    One byte counter per archive being built, driven by the archiving events.

    Use as a context manager; observers are unsubscribed and bars closed on exit.
    """

    def __init__(self, sizeFormatter=None, leave=True):
        self.sizeFormatter = sizeFormatter or formatSize
        self.leave = leave
        self.bars = {}
        self._lock = threading.Lock()

    def __enter__(self):
        RipEvent.archiveStarted.subscribe(self.onArchiveStarted)
        RipEvent.entryAdmitted.subscribe(self.onEntryAdmitted)
        RipEvent.archiveCompleted.subscribe(self.onArchiveFinished)
        RipEvent.archiveFatal.subscribe(self.onArchiveFinished)
        return self

    def __exit__(self, excType, excVal, excTb):
        RipEvent.archiveStarted.unsubscribe(self.onArchiveStarted)
        RipEvent.entryAdmitted.unsubscribe(self.onEntryAdmitted)
        RipEvent.archiveCompleted.unsubscribe(self.onArchiveFinished)
        RipEvent.archiveFatal.unsubscribe(self.onArchiveFinished)

        with self._lock:
            for bar in self.bars.values():
                bar.close()
            self.bars.clear()

    def onArchiveStarted(self, zipPath=None, **kwargs):
        with self._lock:
            self.bars[zipPath] = createProgressBar(
                description=os.path.basename(zipPath),
                sizeFormatter=self.sizeFormatter,
                position=len(self.bars),
                leave=self.leave,
            )

    def onEntryAdmitted(self, zipPath=None, size=0, **kwargs):
        with self._lock:
            bar = self.bars.get(zipPath)
            if bar is not None:
                bar.update(size)

    def onArchiveFinished(self, zipPath=None, **kwargs):
        with self._lock:
            bar = self.bars.pop(zipPath, None)

        if bar is not None:
            try:
                bar.refresh()
                bar.close()
            except (ValueError, AttributeError) as e:
                logger.debug(f"Exception during progress bar cleanup: {e}")
