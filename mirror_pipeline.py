import logging

import gi
gi.require_version('Gst', '1.0')
from gi.repository import Gst

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    pass


def gst_launch_command(node_id):
    """The equivalent external pipeline, for viewing the stream with gst-launch instead."""
    return ["gst-launch-1.0", "pipewiresrc", f"path={node_id}", "!", "videoconvert", "!", "autovideosink"]


class MirrorPipeline:
    """
    Displays a PipeWire stream in a window:
      pipewiresrc path=<node id> ! videoconvert ! autovideosink
    """

    def __init__(self, stream, on_finished=None):
        self.stream = stream
        self.on_finished = on_finished
        self.pipeline = None
        self.error = None

    def start(self):
        Gst.init(None)
        pipeline = Gst.Pipeline.new('pipeline')
        src = Gst.ElementFactory.make('pipewiresrc', None)
        if src is None:
            raise PipelineError('need gstreamer-plugin-pipewire')
        src.set_property('path', self.stream.path)
        cnv = Gst.ElementFactory.make('videoconvert', None)
        sink = Gst.ElementFactory.make('autovideosink', None)
        if cnv is None or sink is None:
            raise PipelineError('need gstreamer base and good plugins')

        for element in (src, cnv, sink):
            pipeline.add(element)
        if not (src.link(cnv) and cnv.link(sink)):
            raise PipelineError('Failed to link pipewiresrc ! videoconvert ! autovideosink')

        gst_bus = pipeline.get_bus()
        gst_bus.add_signal_watch()
        gst_bus.connect('message', self._on_message)

        logger.info(f"Starting pipeline for PipeWire node {self.stream.node_id}")
        if pipeline.set_state(Gst.State.PLAYING) == Gst.StateChangeReturn.FAILURE:
            pipeline.set_state(Gst.State.NULL)
            raise PipelineError('Pipeline refused to start playing')
        self.pipeline = pipeline

    def stop(self):
        if self.pipeline is None:
            return
        logger.info("Stopping pipeline...")
        try:
            self.pipeline.get_bus().remove_signal_watch()
            self.pipeline.set_state(Gst.State.NULL)
        finally:
            self.pipeline = None

    def _on_message(self, _bus, message):
        t = message.type
        if t == Gst.MessageType.ERROR:
            err, dbg = message.parse_error()
            logger.error(f"GStreamer error: {err}{' - ' + dbg if dbg else ''}")
            self.error = str(err)
            self._finish()
        elif t == Gst.MessageType.EOS:
            logger.info("End of stream")
            self._finish()

    def _finish(self):
        if self.on_finished is not None:
            self.on_finished()
