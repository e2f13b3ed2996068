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
import tempfile
import unittest
from unittest.mock import patch

from bases.Kernel import Event, EventService, RipEvent, SecretGetter, StorageLocator


class EventServiceTest(unittest.TestCase):
    """
    Test case for the singleton, signalslot-based EventService.
    """

    def setUp(self):
        self.e = EventService.getInstance()
        self.registered = []

    def tearDown(self):
        for event in self.registered:
            self.e.unregister(event)

    def register(self, event):
        self.assertTrue(self.e.register(event))
        self.registered.append(event)

    def testIsSingleton(self):
        self.assertIs(EventService.getInstance(), EventService.getInstance())
        self.assertIs(self.e, EventService())

    def testArchiveEventsRegistered(self):
        for event in [RipEvent.archiveStarted, RipEvent.archiveCompleted, RipEvent.archiveTruncated,
                      RipEvent.archiveFatal, RipEvent.entryAdmitted, RipEvent.entrySkipped]:
            with self.subTest(event=event.key):
                self.assertTrue(self.e.isRegistered(event.key))

    def testTriggerPassesKeywords(self):
        self.register('/test/trigger')
        received = []

        def observer(**kwargs):
            received.append(kwargs)

        self.e.subscribe('/test/trigger', observer)
        self.e.trigger('/test/trigger', archivePath='a.txt', size=3)

        self.assertEqual(received, [{'archivePath': 'a.txt', 'size': 3}])

    def testSubscribeTwiceCallsOnce(self):
        self.register('/test/twice')
        calls = []

        def observer(**kwargs):
            calls.append(1)

        self.e.subscribe('/test/twice', observer)
        self.e.subscribe('/test/twice', observer)
        self.e.trigger('/test/twice')

        self.assertEqual(calls, [1])

    def testUnsubscribe(self):
        self.register('/test/unsubscribe')
        calls = []

        def observer(**kwargs):
            calls.append(1)

        self.e.subscribe('/test/unsubscribe', observer)
        self.e.unsubscribe('/test/unsubscribe', observer)
        self.e.trigger('/test/unsubscribe')

        self.assertEqual(calls, [])

    def testObserverResultStopsDispatch(self):
        self.register('/test/handled')

        def handler(**kwargs):
            return 'handled'

        self.e.subscribe('/test/handled', handler)
        self.assertEqual(self.e.trigger('/test/handled'), 'handled')

    def testArchiveEventHandles(self):
        self.assertEqual(len(RipEvent.ALL), 6)
        self.assertEqual(len({event.key for event in RipEvent.ALL}), 6)
        self.assertFalse(RipEvent.archiveStarted.register())

    def testSubscribeUnregisteredEvent(self):

        def observer(**kwargs):
            pass

        with self.assertRaises(KeyError):
            self.e.subscribe('/test/never-registered', observer)

        # Triggering an unknown event is silently ignored
        self.e.trigger('/test/never-registered')

    def testUnregisterDisconnectsObservers(self):
        self.register('/test/unregister')

        def observer(**kwargs):
            pass

        self.e.subscribe('/test/unregister', observer)
        self.assertTrue(self.e.unregister('/test/unregister'))
        self.assertFalse(self.e.isRegistered('/test/unregister'))
        self.assertFalse(self.e.unregister('/test/unregister'))
        self.registered.remove('/test/unregister')

    def testEventWrapper(self):
        self.register('/test/wrapper')
        event = Event('/test/wrapper')
        received = []

        def observer(**kwargs):
            received.append(kwargs['value'])

        event.subscribe(observer)
        event.trigger(value=1)
        event.unsubscribe(observer)
        event.trigger(value=2)

        self.assertEqual(received, [1])


class StorageLocatorTest(unittest.TestCase):

    def setUp(self):
        self._tempDirObj = tempfile.TemporaryDirectory()
        self.tempDir = self._tempDirObj.name
        self.locator = StorageLocator.getInstance()

    def tearDown(self):
        self._tempDirObj.cleanup()

    def testEnvironmentLocationWins(self):
        envPath = os.path.join(self.tempDir, '.env')
        with open(envPath, 'w') as f:
            f.write('RIP_COMPRESSION=store\n')

        with patch.dict('os.environ', {'RIP_STORAGE_LOCATION': self.tempDir}):
            self.assertEqual(self.locator.findConfig('.env'), envPath)

    def testEnvironmentLocationUsedForMissingFiles(self):
        with patch.dict('os.environ', {'RIP_STORAGE_LOCATION': self.tempDir}):
            self.assertEqual(
                self.locator.findStorage('rip-test-missing.json'),
                os.path.join(self.tempDir, 'rip-test-missing.json')
            )

    def testInvalidEnvironmentLocationIgnored(self):
        missing = os.path.join(self.tempDir, 'missing')
        with patch.dict('os.environ', {'RIP_STORAGE_LOCATION': missing}):
            path = self.locator.findStorage('rip-test-missing.json')
        self.assertFalse(path.startswith(missing))


class SecretGetterTest(unittest.TestCase):

    def testEnvironmentTakesPrecedence(self):
        with patch.dict('os.environ', {'RIP_TEST_SECRET': 'value-from-env'}):
            self.assertEqual(SecretGetter.getInstance().get('RIP_TEST_SECRET'), 'value-from-env')


if __name__ == '__main__':
    unittest.main()
