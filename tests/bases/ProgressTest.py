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

import io
import unittest
from unittest.mock import MagicMock, patch

from bases.Kernel import RipEvent
from bases.Progress import UNKNOWN_TOTAL_FORMAT, ArchiveProgress, BitmathTqdm, createProgressBar
from bases.Utils import formatSize


class BitmathTqdmTest(unittest.TestCase):

    def testFormatsSizesWithBitmath(self):
        bar = BitmathTqdm(total=4096, desc='test', file=io.StringIO())
        try:
            bar.update(2048)
            formatDict = bar.format_dict
            self.assertEqual(formatDict['n_fmt'], formatSize(2048))
            self.assertEqual(formatDict['total_fmt'], formatSize(4096))
            self.assertTrue(formatDict['rate_fmt'].endswith('/sec'))
        finally:
            bar.close()

    def testUnknownTotal(self):
        bar = createProgressBar(description='stream', file=io.StringIO())
        try:
            self.assertTrue(bar)
            self.assertEqual(bar.bar_format, UNKNOWN_TOTAL_FORMAT)
            self.assertEqual(bar.format_dict['total_fmt'], '?')
        finally:
            bar.close()

    def testCustomFormatter(self):
        bar = createProgressBar(100, sizeFormatter=lambda size: f'{size} bytes', file=io.StringIO())
        try:
            bar.update(10)
            self.assertEqual(bar.format_dict['n_fmt'], '10 bytes')
            self.assertEqual(bar.desc, 'Progress')
        finally:
            bar.close()


class ArchiveProgressTest(unittest.TestCase):

    def trigger(self, event, zipPath, **kwargs):
        event.trigger(sender=self, source='src', zipPath=zipPath, **kwargs)

    def testOneBarPerArchive(self):
        bars = [MagicMock(), MagicMock()]

        with patch('bases.Progress.createProgressBar', side_effect=bars) as factory:
            with ArchiveProgress(leave=False) as progress:
                self.trigger(RipEvent.archiveStarted, '/out/a.zip')
                self.trigger(RipEvent.archiveStarted, '/out/b.zip')
                self.trigger(RipEvent.entryAdmitted, '/out/a.zip', size=10)
                self.trigger(RipEvent.entryAdmitted, '/out/a.zip', size=5)
                self.trigger(RipEvent.entryAdmitted, '/out/b.zip', size=7)
                self.trigger(RipEvent.archiveCompleted, '/out/a.zip')

                self.assertEqual(list(progress.bars), ['/out/b.zip'])

            self.assertEqual(progress.bars, {})

        self.assertEqual(factory.call_args_list[0].kwargs['description'], 'a.zip')
        self.assertEqual(factory.call_args_list[1].kwargs['position'], 1)
        self.assertEqual([c.args for c in bars[0].update.call_args_list], [(10,), (5,)])
        bars[0].close.assert_called_once()
        bars[1].update.assert_called_once_with(7)
        bars[1].close.assert_called_once()

    def testFatalClosesBar(self):
        bar = MagicMock()

        with patch('bases.Progress.createProgressBar', return_value=bar):
            with ArchiveProgress(leave=False) as progress:
                self.trigger(RipEvent.archiveStarted, '/out/a.zip')
                self.trigger(RipEvent.archiveFatal, '/out/a.zip', reason='TraversalError', detail='gone')
                self.assertEqual(progress.bars, {})

        bar.close.assert_called_once()

    def testUnknownArchiveIgnored(self):
        with patch('bases.Progress.createProgressBar') as factory:
            with ArchiveProgress():
                self.trigger(RipEvent.entryAdmitted, '/out/unknown.zip', size=1)
                self.trigger(RipEvent.archiveCompleted, '/out/unknown.zip')

        factory.assert_not_called()


if __name__ == '__main__':
    unittest.main()
