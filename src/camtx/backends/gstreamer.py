"""GStreamer implementation of the pipeline backend."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import gi

gi.require_version("Gst", "1.0")
from gi.repository import Gst  # noqa: E402
from loguru import logger  # noqa: E402

from camtx.controller.errors import (  # noqa: E402
    BuildError,
    EncoderUnavailableError,
    PatchError,
    TeardownTimeoutError,
)
from camtx.controller.types import BackendEvent, EventKind  # noqa: E402
from camtx.models.stream_config import AUTO_DETECT, SUPPORTED_ENCODERS, CaptureSource  # noqa: E402

from .capabilities import (  # noqa: E402
    ENCODER_TUNING,
    V4L2_EXTRA_CONTROLS,
    Resolution,
    fallback_resolutions,
    h264_caps,
    raw_caps,
    resolutions_within,
)

if TYPE_CHECKING:
    from camtx.controller.types import FrameCallback
    from camtx.models import StreamConfig

MAX_LIBCAMERA_INDEX = 10
DEFAULT_PROBED_FRAMERATE = 30

_BUS_FILTER = (
    Gst.MessageType.ERROR
    | Gst.MessageType.WARNING
    | Gst.MessageType.INFO
    | Gst.MessageType.EOS
    | Gst.MessageType.STATE_CHANGED
)


@dataclass
class GstPipelineHandle:
    """A built pipeline and the elements the controller touches later."""

    pipeline: Gst.Pipeline
    sink: Gst.Element
    encoder: str
    probe_id: int | None = None


def _make_or_raise(factory: str, name: str) -> Gst.Element:
    element = Gst.ElementFactory.make(factory, name)
    if element is None:
        error_msg = f"Failed to create {factory} element"
        raise BuildError(error_msg, element=name)
    return element


def _has_property(element: Gst.Element, name: str) -> bool:
    return element.find_property(name) is not None


def _message_to_event(message: Gst.Message, pipeline: Gst.Pipeline) -> BackendEvent | None:
    source = message.src.get_name() if message.src is not None else "pipeline"
    from_pipeline = message.src == pipeline

    match message.type:
        case Gst.MessageType.ERROR:
            err, debug = message.parse_error()
            return BackendEvent(EventKind.ERROR, source, err.message, debug, from_pipeline=from_pipeline)
        case Gst.MessageType.WARNING:
            err, debug = message.parse_warning()
            return BackendEvent(EventKind.WARNING, source, err.message, debug, from_pipeline=from_pipeline)
        case Gst.MessageType.INFO:
            err, debug = message.parse_info()
            return BackendEvent(EventKind.INFO, source, err.message, debug, from_pipeline=from_pipeline)
        case Gst.MessageType.EOS:
            return BackendEvent(EventKind.END_OF_STREAM, source, "end of stream", from_pipeline=from_pipeline)
        case Gst.MessageType.STATE_CHANGED:
            old, new, _pending = message.parse_state_changed()
            return BackendEvent(
                EventKind.STATE_CHANGED,
                source,
                old_state=Gst.Element.state_get_name(old),
                new_state=Gst.Element.state_get_name(new),
                from_pipeline=from_pipeline,
            )
        case _:
            return None


class GstBusEventSource:
    """Polls a pipeline bus for the messages the controller cares about."""

    def __init__(self, pipeline: Gst.Pipeline) -> None:
        self._pipeline = pipeline
        self._bus = pipeline.get_bus()
        self._closed = threading.Event()

    def poll(self, timeout: float) -> BackendEvent | None:
        if self._closed.is_set():
            return None
        message = self._bus.timed_pop_filtered(int(timeout * Gst.SECOND), _BUS_FILTER)
        if message is None or self._closed.is_set():
            return None
        return _message_to_event(message, self._pipeline)

    def close(self) -> None:
        self._closed.set()


class GStreamerBackend:
    """Builds libcamera/v4l2 -> H.264 -> RTP -> UDP pipelines.

    Graph: source -> capsfilter -> videoconvert -> encoder -> capsfilter
    (H.264 level) -> h264parse -> rtph264pay -> udpsink. Each build creates a
    fresh ``Gst.Pipeline``; on any failure the partially built pipeline is set
    to NULL before the error is raised.
    """

    def __init__(self, pipeline_name: str = "camtx") -> None:
        Gst.init(None)
        self.pipeline_name = pipeline_name
        logger.debug("GStreamer initialized", version=Gst.version_string())

    # Build

    def build(self, config: StreamConfig) -> GstPipelineHandle:
        encoder = Gst.ElementFactory.make(config.encoder, "encoder")
        if encoder is None:
            raise EncoderUnavailableError(config.encoder)

        source = self._make_source(config)

        capsfilter = _make_or_raise("capsfilter", "capsfilter")
        caps = raw_caps(config.width, config.height, config.framerate)
        capsfilter.set_property("caps", Gst.Caps.from_string(caps))
        logger.debug("Capture caps", caps=caps)

        convert = _make_or_raise("videoconvert", "convert")
        self._tune_encoder(encoder, config.encoder)

        encoder_caps = _make_or_raise("capsfilter", "encoder_caps")
        encoder_caps.set_property("caps", Gst.Caps.from_string(h264_caps()))

        parser = _make_or_raise("h264parse", "parser")

        payloader = _make_or_raise("rtph264pay", "payloader")
        payloader.set_property("config-interval", -1)

        sink = _make_or_raise("udpsink", "sink")
        sink.set_property("host", config.host)
        sink.set_property("port", config.port)
        sink.set_property("sync", False)
        sink.set_property("async", False)

        chain = [source, capsfilter, convert, encoder, encoder_caps, parser, payloader, sink]
        pipeline = Gst.Pipeline.new(self.pipeline_name)
        try:
            for element in chain:
                pipeline.add(element)
            for upstream, downstream in zip(chain, chain[1:], strict=False):
                if not upstream.link(downstream):
                    error_msg = (
                        f"Failed to link {upstream.get_name()} -> {downstream.get_name()}"
                    )
                    raise BuildError(error_msg, element=downstream.get_name())

            if pipeline.set_state(Gst.State.PLAYING) == Gst.StateChangeReturn.FAILURE:
                raise BuildError(self._start_failure(pipeline), element="pipeline")
        except BuildError:
            pipeline.set_state(Gst.State.NULL)
            raise

        return GstPipelineHandle(pipeline=pipeline, sink=sink, encoder=config.encoder)

    def _make_source(self, config: StreamConfig) -> Gst.Element:
        if config.source is CaptureSource.V4L2:
            source = _make_or_raise("v4l2src", "source")
            if not config.auto_detect_device:
                source.set_property("device", config.device)
            return source

        source = _make_or_raise("libcamerasrc", "source")
        if not config.auto_detect_device:
            source.set_property("camera-name", config.device)
            logger.info("Using camera", camera=config.device)
        else:
            logger.info("Using auto-detected camera")

        if not config.autofocus:
            if _has_property(source, "af-mode"):
                Gst.util_set_object_arg(source, "af-mode", "manual")
            if _has_property(source, "lens-position"):
                source.set_property("lens-position", config.lens_position)
        return source

    def _tune_encoder(self, encoder: Gst.Element, name: str) -> None:
        if name == "v4l2h264enc":
            controls = Gst.Structure.new_from_string(V4L2_EXTRA_CONTROLS)
            encoder.set_property("extra-controls", controls)
            return

        for prop, value in ENCODER_TUNING.get(name, {}).items():
            if _has_property(encoder, prop):
                Gst.util_set_object_arg(encoder, prop, value)
            else:
                logger.debug("Encoder has no such property", encoder=name, property=prop)

    def _start_failure(self, pipeline: Gst.Pipeline) -> str:
        message = pipeline.get_bus().pop_filtered(Gst.MessageType.ERROR)
        if message is None:
            return "Pipeline failed to start"
        err, _debug = message.parse_error()
        return f"Pipeline failed to start: {err.message}"

    # Runtime control

    def patch_sink(self, handle: GstPipelineHandle, host: str, port: int) -> None:
        try:
            handle.sink.set_property("host", host)
            handle.sink.set_property("port", port)
        except (TypeError, ValueError) as e:
            error_msg = f"Cannot update sink to {host}:{port}: {e}"
            raise PatchError(error_msg) from e

    def stop(self, handle: GstPipelineHandle, timeout: float) -> None:
        self._remove_probe(handle)
        handle.pipeline.set_state(Gst.State.NULL)
        result, state, _pending = handle.pipeline.get_state(int(timeout * Gst.SECOND))
        if result != Gst.StateChangeReturn.SUCCESS or state != Gst.State.NULL:
            raise TeardownTimeoutError(timeout)
        handle.pipeline.get_bus().set_flushing(True)

    def destroy(self, handle: GstPipelineHandle) -> None:
        self._remove_probe(handle)
        handle.pipeline.get_bus().set_flushing(True)
        # Setting NULL can block on a wedged streaming thread.
        threading.Thread(
            target=handle.pipeline.set_state,
            args=(Gst.State.NULL,),
            name="camtx-pipeline-destroy",
            daemon=True,
        ).start()

    def events(self, handle: GstPipelineHandle) -> GstBusEventSource:
        return GstBusEventSource(handle.pipeline)

    def attach_frame_probe(self, handle: GstPipelineHandle, callback: FrameCallback) -> None:
        pad = handle.sink.get_static_pad("sink")
        if pad is None:
            logger.warning("Sink has no pad, statistics disabled")
            return

        def _on_buffer(_pad: Gst.Pad, info: Gst.PadProbeInfo) -> Gst.PadProbeReturn:
            buffer = info.get_buffer()
            if buffer is not None:
                callback(buffer.get_size())
            return Gst.PadProbeReturn.OK

        handle.probe_id = pad.add_probe(Gst.PadProbeType.BUFFER, _on_buffer)

    def _remove_probe(self, handle: GstPipelineHandle) -> None:
        if handle.probe_id is None:
            return
        pad = handle.sink.get_static_pad("sink")
        if pad is not None:
            pad.remove_probe(handle.probe_id)
        handle.probe_id = None

    # Discovery

    def list_devices(self) -> list[str]:
        devices: list[str] = []

        for index in range(MAX_LIBCAMERA_INDEX):
            source = Gst.ElementFactory.make("libcamerasrc", None)
            if source is None:
                break
            source.set_property("camera-name", f"camera{index}")
            try:
                if source.set_state(Gst.State.READY) != Gst.StateChangeReturn.FAILURE:
                    name = source.get_property("camera-name")
                    if name and name not in devices:
                        devices.append(name)
                        logger.debug("Found camera", camera=name)
            finally:
                source.set_state(Gst.State.NULL)

        devices.extend(str(p) for p in sorted(Path("/dev").glob("video*")))

        if not devices:
            logger.info("No cameras detected, offering auto-detect")
            devices.append(AUTO_DETECT)
        return devices

    def list_encoders(self) -> list[str]:
        encoders: list[str] = []
        for name in SUPPORTED_ENCODERS:
            factory = Gst.ElementFactory.find(name)
            if factory is not None and factory.create(None) is not None:
                encoders.append(name)

        if not encoders:
            logger.warning("No H.264 encoders detected, offering x264enc")
            encoders.append("x264enc")
        return encoders

    def probe_resolutions(self, device: str) -> list[dict[str, Any]]:
        if device.startswith("/dev/"):
            source = Gst.ElementFactory.make("v4l2src", None)
            prop = "device"
        else:
            source = Gst.ElementFactory.make("libcamerasrc", None)
            prop = "camera-name"
        if source is None:
            logger.error("No capture element available for probing", device=device)
            return fallback_resolutions()

        if device and device != AUTO_DETECT:
            source.set_property(prop, device)

        found: list[Resolution] = []
        try:
            if source.set_state(Gst.State.READY) != Gst.StateChangeReturn.FAILURE:
                pad = source.get_static_pad("src")
                caps = pad.query_caps(None) if pad is not None else None
                if caps is not None:
                    found = _resolutions_from_caps(caps)
            else:
                logger.warning("Capture device not ready for probing", device=device)
        finally:
            source.set_state(Gst.State.NULL)

        if not found:
            logger.info("No resolutions probed, using fallbacks", device=device)
            return fallback_resolutions()
        return [r.to_dict() for r in found]


def _int_bounds(value: Any) -> tuple[int, int] | None:
    bounds = getattr(value, "range", None)
    if isinstance(bounds, range):
        return bounds.start, bounds.stop
    return None


def _resolutions_from_caps(caps: Gst.Caps) -> list[Resolution]:
    found: list[Resolution] = []
    for index in range(caps.get_size()):
        structure = caps.get_structure(index)
        if not structure.get_name().startswith("video/x-raw"):
            continue

        has_width, width = structure.get_int("width")
        has_height, height = structure.get_int("height")
        if has_width and has_height:
            has_rate, num, den = structure.get_fraction("framerate")
            fps = num // den if has_rate and den else DEFAULT_PROBED_FRAMERATE
            found.append(Resolution(width, height, fps, format="probed"))
            continue

        width_range = _int_bounds(structure.get_value("width"))
        height_range = _int_bounds(structure.get_value("height"))
        if width_range and height_range:
            found.extend(resolutions_within(*width_range, *height_range))

    unique: dict[tuple[int, int, int], Resolution] = {}
    for resolution in found:
        unique.setdefault(
            (resolution.width, resolution.height, resolution.max_framerate), resolution
        )
    return list(unique.values())
