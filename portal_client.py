import enum
import json
import logging
import sys
from dataclasses import dataclass, field

import dbus

from portal_bus import (
    EXIT_FAILURE,
    PORTAL_OBJECT_PATH,
    REQUEST_IFACE,
    SCREENCAST_IFACE,
    SESSION_IFACE,
    BusSubscriptionError,
    InvalidTransition,
    MissingStreamError,
    PortalError,
    ResponseFailure,
    SessionClosedEarly,
    TokenGenerator,
    request_object_path,
)

logger = logging.getLogger(__name__)

# Records every portal call and signal payload. Handlers are attached by the
# entry point (--traffic-log), so by default this goes nowhere.
traffic_logger = logging.getLogger("traffic")
traffic_logger.propagate = False
traffic_logger.addHandler(logging.NullHandler())

# AvailableSourceTypes bitmask of the ScreenCast portal: 1 monitor, 2 window, 4 virtual
SOURCE_TYPE_WINDOW = 2

# response: uint32 (0=success, 1=cancelled, 2=ended)
RESPONSE_STATUS_NAMES = {0: "success", 1: "cancelled by user", 2: "ended"}


def log_traffic(direction, member, payload):
    if not traffic_logger.isEnabledFor(logging.INFO):
        return
    try:
        content = json.dumps(payload, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        content = repr(payload)
    traffic_logger.info(f"{direction} {member} -> {content}")


class PortalMethod(enum.Enum):
    """Remote operations the correlator knows how to wrap, with the option keys that get a fresh token."""

    CREATE_SESSION = ("CreateSession", ("handle_token", "session_handle_token"))
    SELECT_SOURCES = ("SelectSources", ("handle_token",))
    START = ("Start", ("handle_token",))

    def __init__(self, member, token_keys):
        self.member = member
        self.token_keys = token_keys


class ScreenCastPortal:
    """Typed wrappers for the org.freedesktop.portal.ScreenCast methods; each returns a request handle."""

    def __init__(self, transport):
        self.transport = transport
        self._operations = {
            PortalMethod.CREATE_SESSION: self.create_session,
            PortalMethod.SELECT_SOURCES: self.select_sources,
            PortalMethod.START: self.start,
        }

    def create_session(self, options):
        return self._call(PortalMethod.CREATE_SESSION, options)

    def select_sources(self, session_path, options):
        return self._call(PortalMethod.SELECT_SOURCES, session_path, options)

    def start(self, session_path, parent_window, options):
        return self._call(PortalMethod.START, session_path, parent_window, options)

    def invoke(self, method, *args):
        return self._operations[method](*args)

    def _call(self, method, *args):
        log_traffic("Call", method.member, list(args))
        return self.transport.call_method(PORTAL_OBJECT_PATH, SCREENCAST_IFACE, method.member, *args)


class Session:
    """A portal session object. Owned by ScreenCastClient."""

    def __init__(self, transport, path):
        self.transport = transport
        self.path = str(path)
        self._closed_match = None

    def on_closed(self, handler):
        self._closed_match = self.transport.subscribe(handler, SESSION_IFACE, "Closed", self.path)

    def unsubscribe(self):
        if self._closed_match is not None:
            self._closed_match.remove()
            self._closed_match = None

    def close(self):
        self.unsubscribe()
        log_traffic("Call", "Close", self.path)
        self.transport.call_method(self.path, SESSION_IFACE, "Close")

    def introspect(self):
        return self.transport.introspect(self.path)

    def __repr__(self):
        return f"Session({self.path!r})"


@dataclass(frozen=True)
class Response:
    status: int
    results: dict

    @property
    def ok(self):
        return self.status == 0


class PendingRequest:
    """One in-flight request: resolved by at most one Response signal."""

    def __init__(self, method, handle, loop):
        self.method = method
        self.handle = handle
        self.loop = loop
        self.match = None
        self.response = None

    @property
    def done(self):
        return self.response is not None

    def resolve(self, status, results):
        if self.done:
            return False
        self.response = Response(int(status), results)
        self.loop.stop()
        return True

    def cancel(self):
        self.loop.stop()


class RequestCorrelator:
    """
    Instead of simply returning an asynchronous result, portal methods return the
    object path of a Request object, which later emits a Response signal once the
    user is done with the portal dialog. call() hides that behind a blocking call
    by running a dedicated dispatch loop until the matching Response arrives.
    """

    def __init__(self, transport, portal=None, tokens=None):
        self.transport = transport
        self.portal = portal if portal is not None else ScreenCastPortal(transport)
        self.tokens = tokens if tokens is not None else TokenGenerator()
        self._pending = {}

    @property
    def in_flight(self):
        return len(self._pending)

    def call(self, method, *args, handler=None):
        options_args = [a for a in args if isinstance(a, dict)]
        if len(options_args) != 1:
            raise ValueError(f"{method.member} expects exactly one options dictionary, got {len(options_args)}")

        tokens = {key: self.tokens.next() for key in method.token_keys}
        options = dbus.Dictionary(options_args[0], signature='sv')
        for key, token in tokens.items():
            options[key] = dbus.String(token)

        # the wire call only takes primitive and object path arguments
        wire_args = [self._normalize(options if isinstance(a, dict) else a) for a in args]

        returned = self.portal.invoke(method, *wire_args)
        handle = str(returned)
        predicted = request_object_path(self.transport.unique_name, tokens["handle_token"])
        if handle != predicted:
            logger.info(f"Request handle doesn't match supplied token:\n  {predicted}\n  {handle}")

        pending = PendingRequest(method, handle, self.transport.new_loop())
        self._pending[handle] = pending
        try:
            # The Response match must exist before we start dispatching, see
            # https://flatpak.github.io/xdg-desktop-portal/docs/doc-org.freedesktop.portal.Request.html
            pending.match = self.transport.subscribe(self._on_response, REQUEST_IFACE, "Response", handle)
            pending.loop.run()
        finally:
            del self._pending[handle]
            if pending.match is not None:
                pending.match.remove()

        if not pending.done:
            raise SessionClosedEarly(f"{method.member} was interrupted before its Response arrived")

        response = pending.response
        if not response.ok:
            raise ResponseFailure(method.member, response.status)
        logger.debug(f"{method.member} succeeded")
        if handler is not None:
            return handler(response.results)
        return response.results

    def cancel_all(self):
        for pending in list(self._pending.values()):
            pending.cancel()

    def _on_response(self, response, results, path=None):
        pending = self._pending.get(str(path))
        if pending is None:
            logger.debug(f"Ignoring Response for unknown request {path}")
            return
        log_traffic("Response", pending.method.member, {"response": response, "results": results})
        if not pending.resolve(response, results):
            logger.debug(f"Ignoring duplicate Response for {path}")

    @staticmethod
    def _normalize(arg):
        if isinstance(arg, Session):
            return dbus.ObjectPath(arg.path)
        return arg


class NegotiationState(enum.Enum):
    IDLE = "idle"
    SESSION_CREATED = "session created"
    SOURCES_SELECTED = "sources selected"
    STARTED = "started"
    CLOSED = "closed"


_NEXT_STATE = {
    NegotiationState.IDLE: NegotiationState.SESSION_CREATED,
    NegotiationState.SESSION_CREATED: NegotiationState.SOURCES_SELECTED,
    NegotiationState.SOURCES_SELECTED: NegotiationState.STARTED,
}


@dataclass(frozen=True)
class StreamDescriptor:
    node_id: int
    properties: dict = field(default_factory=dict)

    @property
    def path(self):
        return str(self.node_id)


@dataclass
class NegotiationContext:
    state: NegotiationState = NegotiationState.IDLE
    session: Session = None
    stream: StreamDescriptor = None
    loop: object = None


class ScreenCastClient:
    """Drives CreateSession -> SelectSources -> Start and keeps an eye on the session afterwards."""

    def __init__(self, transport, correlator=None, debug_objects=False):
        self.transport = transport
        self.correlator = correlator if correlator is not None else RequestCorrelator(transport)
        self.context = NegotiationContext()
        self.debug_objects = debug_objects

    @property
    def state(self):
        return self.context.state

    @property
    def session(self):
        return self.context.session

    @property
    def stream(self):
        return self.context.stream

    def negotiate(self):
        self.create_session()
        self.select_sources()
        return self.start()

    def create_session(self):
        self._expect(NegotiationState.IDLE)

        def on_created(results):
            session = Session(self.transport, results["session_handle"])
            self.context.session = session
            self._dump_object("CreateSession", session)
            session.on_closed(self._on_session_closed)
            return session

        session = self._request(PortalMethod.CREATE_SESSION, {}, handler=on_created)
        logger.info(f"Session created: {session.path}")
        self._advance()
        return session

    def select_sources(self):
        self._expect(NegotiationState.SESSION_CREATED)
        # only offer windows, see AvailableSourceTypes
        options = {"types": dbus.UInt32(SOURCE_TYPE_WINDOW)}
        self._request(PortalMethod.SELECT_SOURCES, self._current_session(), options)
        self._advance()

    def start(self):
        self._expect(NegotiationState.SOURCES_SELECTED)
        results = self._request(PortalMethod.START, self._current_session(), "", {})

        streams = results.get("streams")
        if not streams:
            raise MissingStreamError("Start succeeded but returned no streams")
        node_id, properties = streams[0][0], streams[0][1]
        stream = StreamDescriptor(int(node_id), dict(properties))
        self._advance()
        self.context.stream = stream
        logger.info("********* Session started successfully ********")
        logger.info(f"PipeWire node ID: {stream.node_id}")
        logger.debug(f"Stream properties: {stream.properties}")
        return stream

    def close(self):
        session = self.context.session
        if session is None:
            return
        self.context.session = None
        self.context.state = NegotiationState.CLOSED
        logger.info(f"Closing session {session.path}")
        try:
            session.close()
        except PortalError as e:
            logger.warning(f"Failed to close session {session.path}: {e}")

    def wait_for_exit(self):
        if self.context.session is None:
            logger.info("No active session, nothing to wait for.")
            return
        if self.context.loop is None:
            self.context.loop = self.transport.new_loop()
        self.context.loop.run()

    def stop(self):
        if self.context.loop is not None:
            self.context.loop.stop()

    def _request(self, method, *args, handler=None):
        try:
            return self.correlator.call(method, *args, handler=handler)
        except ResponseFailure as e:
            reason = RESPONSE_STATUS_NAMES.get(e.status, "failed")
            logger.warning(f"Request {e.member} failed ({reason})!")
            self.close()
            sys.exit(e.status)
        except BusSubscriptionError as e:
            logger.debug(str(e))
            self.close()
            sys.exit(EXIT_FAILURE)

    def _on_session_closed(self, details, path=None):
        logger.info(f"Session closed. - {dict(details)}")
        log_traffic("Closed", path, details)
        if self.context.session is not None:
            self.context.session.unsubscribe()
        self.context.session = None
        self.context.state = NegotiationState.CLOSED
        self.correlator.cancel_all()
        self.stop()

    def _current_session(self):
        if self.context.session is None:
            raise SessionClosedEarly("Session is gone")
        return self.context.session

    def _expect(self, state):
        if self.context.state is NegotiationState.CLOSED:
            raise SessionClosedEarly("Session was closed during negotiation")
        if self.context.state is not state:
            raise InvalidTransition(f"Expected state '{state.value}', currently '{self.context.state.value}'")

    def _advance(self):
        # the session may have been closed by a handler while the request ran
        if self.context.state is NegotiationState.CLOSED:
            raise SessionClosedEarly("Session was closed during negotiation")
        self.context.state = _NEXT_STATE[self.context.state]

    def _dump_object(self, label, session):
        if not self.debug_objects:
            return
        logger.debug(f"********* {label} ({session.path}) ********")
        logger.debug(session.introspect())
        logger.debug("*********")
