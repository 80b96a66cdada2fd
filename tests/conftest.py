from __future__ import annotations

import sys
from collections import deque
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import dbus  # noqa: E402

from portal_bus import (  # noqa: E402
    PORTAL_OBJECT_PATH,
    REQUEST_IFACE,
    SESSION_IFACE,
    BusSubscriptionError,
    DispatchLoop,
    RemoteCallError,
    path_safe_unique_name,
    request_object_path,
)

UNIQUE_NAME = ":1.42"


class FakeMatch:
    def __init__(self, transport, handler, interface, member, path):
        self.transport = transport
        self.handler = handler
        self.interface = interface
        self.member = member
        self.path = path
        self.active = True

    def matches(self, interface, member, path):
        return self.active and (self.interface, self.member, self.path) == (interface, member, path)

    def remove(self):
        self.active = False
        self.transport.removed.append(self)


class FakeMainLoop:
    """Delivers queued signals to matching subscribers; fails instead of blocking forever."""

    def __init__(self, transport):
        self.transport = transport
        self.running = False
        self.runs = 0

    def run(self):
        self.running = True
        self.runs += 1
        while self.running:
            if not self.transport.queue:
                self.running = False
                raise AssertionError("dispatch loop would block forever")
            self.transport.deliver(*self.transport.queue.popleft())

    def quit(self):
        self.running = False

    def is_running(self):
        return self.running


class FakeTransport:
    """
    In-memory stand-in for the session bus and the ScreenCast portal. Every
    portal call queues the Response signal the portal would send back.
    """

    unique_name = UNIQUE_NAME

    def __init__(self):
        self.calls = []
        self.matches = []
        self.removed = []
        self.queue = deque()
        self.loops = []
        self.statuses = {}
        self.streams = [(dbus.UInt32(42), dbus.Dictionary({"foo": "bar"}, signature="sv"))]
        self.predictable = True
        self.close_during = None
        self.close_after = None
        self.duplicate_responses = False
        self.fail_call = set()
        self.fail_subscribe = False
        self.session_path = None

    def call_method(self, path, interface, member, *args):
        self.calls.append((path, interface, member, args))
        if member in self.fail_call:
            raise RemoteCallError(member, "org.freedesktop.DBus.Error.Failed")
        if member == "Close":
            return None
        if member == "Introspect":
            return "<node/>"

        options = args[-1]
        token = str(options["handle_token"])
        if self.predictable:
            handle = request_object_path(self.unique_name, token)
        else:
            handle = f"{PORTAL_OBJECT_PATH}/request/legacy/{token.lower()}"

        results = {}
        if member == "CreateSession":
            sender = path_safe_unique_name(self.unique_name)
            self.session_path = f"{PORTAL_OBJECT_PATH}/session/{sender}/{options['session_handle_token']}"
            results = {"session_handle": self.session_path}
        elif member == "Start":
            results = {"streams": self.streams}

        if self.close_during == member:
            self.emit(SESSION_IFACE, "Closed", self.session_path, {})
        self.emit(REQUEST_IFACE, "Response", handle, dbus.UInt32(self.statuses.get(member, 0)), results)
        if self.duplicate_responses:
            self.emit(REQUEST_IFACE, "Response", handle, dbus.UInt32(0), {"duplicate": True})
        if self.close_after == member:
            self.emit(SESSION_IFACE, "Closed", self.session_path, {})
        return dbus.ObjectPath(handle)

    def subscribe(self, handler, interface, member, path):
        if self.fail_subscribe and member == "Response":
            raise BusSubscriptionError(path, "invalid object path")
        match = FakeMatch(self, handler, interface, member, path)
        self.matches.append(match)
        return match

    def introspect(self, path):
        return self.call_method(path, "org.freedesktop.DBus.Introspectable", "Introspect")

    def new_loop(self):
        main_loop = FakeMainLoop(self)
        self.loops.append(main_loop)
        return DispatchLoop(main_loop)

    def emit(self, interface, member, path, *args):
        self.queue.append((interface, member, path, args))

    def deliver(self, interface, member, path, args):
        for match in list(self.matches):
            if match.matches(interface, member, path):
                match.handler(*args, path=path)

    def active_matches(self, member=None):
        return [m for m in self.matches if m.active and (member is None or m.member == member)]

    def members_called(self):
        return [call[2] for call in self.calls]


@pytest.fixture
def transport():
    return FakeTransport()
