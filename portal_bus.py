import logging
import random
import string

import dbus
import dbus.exceptions
import dbus.mainloop.glib
from gi.repository import GLib

# dbus-python requires a main loop for signals
dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)

logger = logging.getLogger(__name__)

PORTAL_BUS_NAME = 'org.freedesktop.portal.Desktop'
PORTAL_OBJECT_PATH = '/org/freedesktop/portal/desktop'
SCREENCAST_IFACE = 'org.freedesktop.portal.ScreenCast'
REQUEST_IFACE = 'org.freedesktop.portal.Request'
SESSION_IFACE = 'org.freedesktop.portal.Session'
INTROSPECTABLE_IFACE = 'org.freedesktop.DBus.Introspectable'

EXIT_OK = 0
EXIT_FAILURE = 1

TOKEN_LENGTH = 8
TOKEN_ALPHABET = string.ascii_uppercase


class PortalError(Exception):
    """Base class for everything that can go wrong while talking to the portal."""


class RemoteCallError(PortalError):
    def __init__(self, member, reason):
        super().__init__(f"{member} could not be dispatched: {reason}")
        self.member = member
        self.reason = reason


class BusSubscriptionError(PortalError):
    def __init__(self, path, reason):
        super().__init__(f"Cannot subscribe to signals on {path}: {reason}")
        self.path = path
        self.reason = reason


class ResponseFailure(PortalError):
    def __init__(self, member, status):
        super().__init__(f"{member} was rejected with status {status}")
        self.member = member
        self.status = status


class MissingStreamError(PortalError):
    pass


class SessionClosedEarly(PortalError):
    pass


class InvalidTransition(PortalError):
    pass


class TokenGenerator:
    """Hands out short alphabetic tokens, never the same one twice per process."""

    def __init__(self, rng=None):
        self._rng = rng or random.SystemRandom()
        self._issued = set()

    def next(self):
        while True:
            # letters are drawn without replacement, so no token repeats a letter
            token = ''.join(self._rng.sample(TOKEN_ALPHABET, TOKEN_LENGTH))
            if token not in self._issued:
                self._issued.add(token)
                return token


def path_safe_unique_name(unique_name):
    # ':1.42' -> '1_42', see the Request interface documentation
    return unique_name.replace('.', '_').replace(':', '')


def request_object_path(unique_name, token):
    return f"{PORTAL_OBJECT_PATH}/request/{path_safe_unique_name(unique_name)}/{token}"


class DispatchLoop:
    """
    Cooperative loop delivering bus messages to their subscribers until stop()
    is called. stop() may be called from inside a handler, or even before run(),
    in which case run() returns right away.
    """

    def __init__(self, main_loop=None):
        self._main_loop = main_loop if main_loop is not None else GLib.MainLoop()
        self._stop_requested = False

    def run(self):
        if not self._stop_requested:
            self._main_loop.run()
        self._stop_requested = False

    def stop(self):
        self._stop_requested = True
        if self._main_loop.is_running():
            self._main_loop.quit()

    def is_running(self):
        return self._main_loop.is_running()


class SessionBusTransport:
    """Thin adapter over dbus.SessionBus exposing only what the portal client needs."""

    def __init__(self, bus=None):
        self.bus = bus if bus is not None else dbus.SessionBus()

    @property
    def unique_name(self):
        return self.bus.get_unique_name()

    def call_method(self, path, interface, member, *args):
        try:
            proxy = self.bus.get_object(PORTAL_BUS_NAME, path, introspect=False)
            method = proxy.get_dbus_method(member, dbus_interface=interface)
            return method(*args)
        except dbus.exceptions.DBusException as e:
            raise RemoteCallError(member, e.get_dbus_message() or e.get_dbus_name()) from e

    def subscribe(self, handler, interface, member, path):
        """Returns a match object; call .remove() on it to unsubscribe."""
        try:
            return self.bus.add_signal_receiver(
                handler,
                signal_name=member,
                dbus_interface=interface,
                bus_name=PORTAL_BUS_NAME,
                path=path,
                path_keyword='path'
            )
        except (dbus.exceptions.DBusException, ValueError) as e:
            raise BusSubscriptionError(path, e) from e

    def introspect(self, path):
        return str(self.call_method(path, INTROSPECTABLE_IFACE, 'Introspect'))

    def new_loop(self):
        return DispatchLoop()
