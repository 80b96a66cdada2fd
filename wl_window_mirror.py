import argparse
import logging
import os
import signal
import subprocess
import sys

from gi.repository import GLib

from portal_bus import EXIT_FAILURE, EXIT_OK, PortalError, SessionBusTransport, SessionClosedEarly
from portal_client import ScreenCastClient, traffic_logger

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
SNAPSHOT_TIMEOUT = 5


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Mirror a Wayland window, picked through the ScreenCast portal, into another window")
    parser.add_argument("--no-display", action="store_true",
                        help="Only print the PipeWire node ID on stdout and keep the session open")
    parser.add_argument("--snapshot", metavar="FILE",
                        help="Capture a single JPEG frame of the selected window to FILE and exit")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--debug-objects", action="store_true",
                        help="Log the introspection data of the portal session object")
    parser.add_argument("--traffic-log", metavar="FILE",
                        help="Log every portal call and signal payload to FILE")
    args = parser.parse_args(argv)
    if args.no_display and args.snapshot:
        parser.error("--no-display and --snapshot are mutually exclusive")
    return args


def configure_logging(args):
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format=LOG_FORMAT
    )
    if args.traffic_log:
        traffic_logger.setLevel(logging.INFO)
        traffic_handler = logging.FileHandler(args.traffic_log)
        traffic_handler.setFormatter(logging.Formatter('%(asctime)s %(message)s'))
        traffic_logger.addHandler(traffic_handler)


def snapshot_command(node_id, location):
    # gst-launch-1.0 pipewiresrc path=<ID> num-buffers=1 ! videoconvert ! jpegenc ! filesink location=<FILE>
    return [
        "gst-launch-1.0",
        "pipewiresrc", f"path={node_id}", "num-buffers=1",
        "!", "videoconvert",
        "!", "jpegenc",
        "!", "filesink", f"location={location}"
    ]


def capture_snapshot(stream, location):
    logger.info(f"Capturing frame from Node {stream.node_id}...")
    try:
        subprocess.run(snapshot_command(stream.node_id, location),
                       check=True, capture_output=True, text=True, timeout=SNAPSHOT_TIMEOUT)
    except subprocess.CalledProcessError as e:
        logger.error(f"GStreamer failed (Exit {e.returncode}):")
        logger.error(f"STDOUT: {e.stdout}")
        logger.error(f"STDERR: {e.stderr}")
        return False
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.error(f"Failed to capture frame: {e}")
        return False
    if not os.path.exists(location):
        logger.error(f"GStreamer did not write {location}")
        return False
    logger.info(f"Frame saved to {location}")
    return True


def install_signal_handlers(client):
    def signal_handler(*_):
        logger.info("Shutting down initiated...")
        client.stop()
        return GLib.SOURCE_CONTINUE

    for sig in (signal.SIGINT, signal.SIGTERM):
        GLib.unix_signal_add(GLib.PRIORITY_DEFAULT, sig, signal_handler)


def run_display(client, stream):
    # imported here so --no-display and --snapshot work without GStreamer introspection data
    from mirror_pipeline import MirrorPipeline, PipelineError, gst_launch_command

    logger.info(f"View it externally with: {' '.join(gst_launch_command(stream.node_id))}")
    pipeline = MirrorPipeline(stream, on_finished=client.stop)
    try:
        pipeline.start()
    except PipelineError as e:
        logger.error(f"Failed to start pipeline: {e}")
        return EXIT_FAILURE
    try:
        client.wait_for_exit()
    finally:
        pipeline.stop()
    if pipeline.error is not None:
        return EXIT_FAILURE
    return EXIT_OK


def run(args, transport=None):
    client = ScreenCastClient(transport if transport is not None else SessionBusTransport(),
                              debug_objects=args.debug_objects)
    try:
        try:
            stream = client.negotiate()
        except SessionClosedEarly as e:
            logger.info(f"Session closed before a stream was started: {e}")
            return EXIT_OK
        except PortalError as e:
            logger.error(f"Error: {e}")
            return EXIT_FAILURE

        if args.snapshot:
            return EXIT_OK if capture_snapshot(stream, args.snapshot) else EXIT_FAILURE

        install_signal_handlers(client)
        if args.no_display:
            print(stream.node_id)  # Output ONLY the node_id to stdout for parsing
            sys.stdout.flush()
            client.wait_for_exit()
            return EXIT_OK
        return run_display(client, stream)
    finally:
        client.close()
        logger.info("Shutdown complete.")


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
