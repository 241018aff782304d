"""Sessions driven by the real MediaInput/MediaOutput."""

from __future__ import annotations

import threading
import time
from fractions import Fraction
from pathlib import Path

import av

from fakes import DemuxPacket, FakeOutputFactory, FakeStream
from streamarchiver import media
from streamarchiver.config import RecordingConfig
from streamarchiver.media import MediaInput
from streamarchiver.session import RecordingSession, SessionState


def _write_clip(path: Path, frames: int = 48) -> None:
    with av.open(str(path), mode="w", format="mpegts") as container:
        stream = container.add_stream("mpeg2video", rate=24)
        stream.width = 64
        stream.height = 48
        stream.pix_fmt = "yuv420p"
        for index in range(frames):
            frame = av.VideoFrame(64, 48, "yuv420p")
            frame.pts = index
            frame.time_base = Fraction(1, 24)
            container.mux(stream.encode(frame))
        container.mux(stream.encode())


def _count_packets(path) -> int:
    with av.open(str(path)) as container:
        return sum(1 for packet in container.demux() if packet.size > 0)


def _codecs(path) -> list[str]:
    with av.open(str(path)) as container:
        return [stream.codec_context.name for stream in container.streams]


def test_records_file_into_one_segment(tmp_path):
    clip = tmp_path / "clip.ts"
    _write_clip(clip)
    segments: list[str] = []
    session = RecordingSession(
        "clip", str(clip), str(tmp_path / "rec"), settings=RecordingConfig(poll_interval=0.01)
    )

    session.start(lambda: segments.append(session.snapshot()["segment"]))

    assert session.state is SessionState.STOP
    [segment] = list((tmp_path / "rec").rglob("*.ts"))
    assert str(segment) == segments[0]
    assert _codecs(segment) == ["mpeg2video"]
    assert _count_packets(segment) == _count_packets(clip)


def test_slice_splits_recording_into_two_finalized_segments(tmp_path):
    clip = tmp_path / "clip.ts"
    _write_clip(clip)
    segments: list[str] = []
    reads: list = []

    def input_factory(locator, interrupt, **options):
        source = MediaInput(locator, interrupt, **options)
        read = source.read_packet

        def read_packet():
            packet = read()
            reads.append(packet)
            if len(reads) == 20:
                session.slice(lambda error: segments.append(session.snapshot()["segment"]))
            return packet

        source.read_packet = read_packet
        return source

    session = RecordingSession(
        "clip",
        str(clip),
        str(tmp_path / "rec"),
        settings=RecordingConfig(poll_interval=0.01),
        input_factory=input_factory,
    )

    session.start(lambda: segments.append(session.snapshot()["segment"]))

    assert session.slice_count == 1
    first, second = segments
    assert first != second
    assert _codecs(first) == _codecs(second) == ["mpeg2video"]
    assert _count_packets(first) == 19
    assert _count_packets(first) + _count_packets(second) == _count_packets(clip)


class _StallingContainer:
    """First demux run stalls past the read timeout; the resumed run waits for ``release``."""

    def __init__(self, stall: float):
        self.streams = [FakeStream("video", Fraction(1, 1000))]
        self.stall = stall
        self.release = threading.Event()
        self.resumed = threading.Event()
        self.closed = threading.Event()
        self.runs = 0

    def demux(self):
        self.runs += 1
        if self.runs == 1:
            yield DemuxPacket(0, 0, 0, duration=40)
            time.sleep(self.stall)
            raise av.error.ExitError(-1414092869, "Immediate exit requested")
        self.resumed.set()
        self.release.wait(5)
        yield DemuxPacket(0, 1000, 1000, duration=40)

    def close(self):
        self.closed.set()


def test_stall_longer_than_read_timeout_is_ridden_out(tmp_path, monkeypatch):
    container = _StallingContainer(stall=0.5)
    monkeypatch.setattr(media.av, "open", lambda locator, **kwargs: container)
    outputs = FakeOutputFactory()
    exits: list[str] = []
    session = RecordingSession(
        "cam",
        "rtsp://cam",
        str(tmp_path),
        settings=RecordingConfig(stall_threshold=0.2, poll_interval=0.01, read_timeout=0.5),
        output_factory=outputs,
    )
    session.on_exit(lambda: exits.append("exit"))

    worker = threading.Thread(target=session.start, args=(lambda: None,))
    worker.start()
    assert container.resumed.wait(5)

    assert session.state is SessionState.INTERRUPTED
    assert exits == []
    assert outputs.outputs[0].closed

    container.release.set()
    worker.join(5)

    assert not worker.is_alive()
    assert exits == ["exit"]
    first, second = outputs.outputs
    assert [p.pts for p in first.packets] == [0]
    assert len(second.packets) == 1
    assert container.closed.wait(1)
