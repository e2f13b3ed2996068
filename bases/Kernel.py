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

import json
import logging
import os
import platform
import threading

# Error reporting is off unless RIP_SENTRY_DSN is configured; nothing leaves the machine otherwise.
import sentry_sdk

from pathlib import Path

from signalslot import Signal

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.0.0'

LOG_LEVEL_MAPPING = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s'


def configureGlobalLogLevel(logLevel):
    """
    Set the level of the root logger, which every logger from getLogger() propagates to.

    A console handler on stderr is added the first time; later calls only adjust existing console handlers.
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    consoleHandlers = [
        handler for handler in rootLogger.handlers
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler)
    ]
    if not consoleHandlers:
        consoleHandler = logging.StreamHandler()
        rootLogger.addHandler(consoleHandler)
        consoleHandlers.append(consoleHandler)

    for handler in consoleHandlers:
        handler.setLevel(logLevel)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))


if os.getenv('RIP_LOGGING_LEVEL', '').upper() in LOG_LEVEL_MAPPING:
    configureGlobalLogLevel(LOG_LEVEL_MAPPING[os.getenv('RIP_LOGGING_LEVEL').upper()])


def _initSentry():
    """Start the Sentry client once, if a DSN is configured. Returns True when this call started it."""
    if sentry_sdk.get_client().is_active():
        return False

    sentryDsn = SecretGetter.getInstance().get('RIP_SENTRY_DSN')
    if not sentryDsn:
        return False

    # No "sentry is attempting to send pending events" banner on exit
    sentryAtexit.default_callback = lambda pending, timeout: None

    sentry_sdk.init(
        dsn=sentryDsn,
        release=f'rip@{PUBLIC_VERSION}',
        default_integrations=False,
        integrations=[LoggingIntegration(), sentryAtexit.AtexitIntegration()],
    )
    return True


def getLogger(name, version=PUBLIC_VERSION):
    """
    Logger for a module, with a SentryHandler attached and the version in its context.

    Sentry only receives events when RIP_SENTRY_DSN is set (environment or .secret file).
    """
    try:
        sentryStarted = _initSentry()

        logger = logging.getLogger(name)
        if not any(isinstance(handler, SentryHandler) for handler in logger.handlers):
            sentryHandler = SentryHandler()
            sentryHandler.setFormatter(logging.Formatter('%(asctime)s version[%(version)s] : %(message)s'))
            logger.addHandler(sentryHandler)

        adapter = logging.LoggerAdapter(logger, {'version': version or 'unknown'})
        if sentryStarted:
            adapter.debug('Sentry initialized')
        return adapter

    except Exception as e:
        fallbackLogger = logging.getLogger(name)
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")
        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class. Subclasses put their setup in initialize(), which runs once.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        return cls._instances.get(cls) or cls()


class EventService(Singleton):
    """
    Named events backed by 'signalslot' signals.

    Observers take keyword arguments only. They may run on any archiving thread, so they must not
    block. An observer returning something other than None stops the dispatch and that value is
    returned from trigger().
    """

    def initialize(self):
        self.signals = {}
        self._lock = threading.Lock()

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        with self._lock:
            if event in self.signals:
                return False
            self.signals[event] = Signal(threadsafe=True)
            return True

    def unregister(self, event):
        with self._lock:
            signal = self.signals.pop(event, None)

        if signal is None:
            return False

        for slot in list(signal._slots):
            signal.disconnect(slot)
        return True

    def subscribe(self, event, observer):
        signal = self.signals.get(event)
        if signal is None:
            raise KeyError(f"You must register event '{event}' first.")

        with self._lock:
            if observer not in signal._slots:
                signal.connect(observer)

    def unsubscribe(self, event, observer):
        signal = self.signals.get(event)
        if signal is None:
            return

        with self._lock:
            if observer in signal._slots:
                signal.disconnect(observer)

    def trigger(self, event, **kwargs):
        signal = self.signals.get(event)
        if signal is None:
            return None
        return signal.emit(**kwargs)


class Event:
    """A named event; a thin handle over EventService."""

    def __init__(self, key):
        self.key = key
        self.eventService = EventService.getInstance()

    def register(self):
        return self.eventService.register(self.key)

    def subscribe(self, observer):
        return self.eventService.subscribe(self.key, observer)

    def unsubscribe(self, observer):
        return self.eventService.unsubscribe(self.key, observer)

    def trigger(self, **kwargs):
        return self.eventService.trigger(self.key, **kwargs)


class StorageLocator(Singleton):
    """
    Where configuration files (.env, .secret) live.

    Search order: RIP_STORAGE_LOCATION (when it names an existing directory), the current directory,
    ~/.rip, then the platform configuration directory.
    """

    def initialize(self, appName='rip'):
        self.appName = appName
        self.homeDir = os.path.join(os.path.expanduser('~'), f'.{appName}')
        self.platformDir = self._platformDir()

    def _platformDir(self):
        system = platform.system()

        if system == 'Windows':
            return os.path.join(os.getenv('APPDATA', os.path.expanduser('~')), self.appName)
        if system == 'Darwin':
            return os.path.join(os.path.expanduser('~'), 'Library', 'Application Support', self.appName)
        return os.path.join(os.getenv('XDG_CONFIG_HOME', os.path.expanduser('~/.config')), self.appName)

    def envLocation(self):
        location = os.getenv('RIP_STORAGE_LOCATION')
        return location if location and os.path.isdir(location) else None

    def searchPaths(self):
        paths = [os.getcwd(), self.homeDir, self.platformDir]
        location = self.envLocation()
        return [location] + paths if location else paths

    def findStorage(self, filename):
        """
        Path of 'filename' in the first search directory holding it. When none does, the path it
        should be created at: under RIP_STORAGE_LOCATION if set, otherwise under ~/.rip.
        """
        for directory in self.searchPaths():
            path = os.path.join(directory, filename)
            if os.path.exists(path):
                return path

        return os.path.join(self.envLocation() or self.homeDir, filename)

    def findConfig(self, filename):
        return self.findStorage(filename)


class SecretGetter(Singleton):
    """
    Read-only secrets: the environment first, then the '.secret' JSON object found by StorageLocator.

    Values are cached once found.
    """

    def initialize(self, secretFileName='.secret'):
        self.secretFileName = secretFileName
        self._cache = {}
        self._fileData = None

    def getPath(self):
        return StorageLocator.getInstance().findStorage(self.secretFileName)

    def _readSecretFile(self):
        if self._fileData is not None:
            return self._fileData

        self._fileData = {}
        path = self.getPath()
        if not os.path.exists(path):
            return self._fileData

        try:
            data = json.loads(Path(path).read_text(encoding='utf-8'))
        except (json.JSONDecodeError, OSError) as e:
            logging.getLogger(__name__).warning(f"Failed to load secret file {path}: {e}")
            return self._fileData

        if isinstance(data, dict):
            self._fileData = data
        return self._fileData

    def get(self, key: str):
        if key in self._cache:
            return self._cache[key]

        value = os.getenv(key) or self._readSecretFile().get(key)
        if value:
            self._cache[key] = value
        return value


# Event pattern: RESTful + /[action]
# Diagnostics emitted by the archiving core; formatting them is the CLI's job.
class RipEvent:
    archiveStarted = Event('/archive/start')
    archiveCompleted = Event('/archive/complete')
    archiveTruncated = Event('/archive/truncated')
    archiveFatal = Event('/archive/fatal')

    entryAdmitted = Event('/archive/entry/admitted')
    entrySkipped = Event('/archive/entry/skipped')

    ALL = (archiveStarted, archiveCompleted, archiveTruncated, archiveFatal, entryAdmitted, entrySkipped)


for _event in RipEvent.ALL:
    _event.register()
