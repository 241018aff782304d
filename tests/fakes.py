"""In-memory stand-ins for the PyAV input/output wrappers."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Callable

from streamarchiver.media import InputInterrupted


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeStream:
    type: str
    time_base: Fraction
    index: int = 0


@dataclass
class FakePacket:
    stream_index: int
    pts: int | None
    dts: int | None = None
    duration: int | None = None
    label: str = ""

    @property
    def pos(self) -> int:
        # Read-only, as on av.Packet
        return 1234


class DemuxPacket(FakePacket):
    """Packet as yielded by container.demux(); flush packets have no dts and no data."""

    @property
    def size(self) -> int:
        return 0 if self.dts is None else 100


@dataclass
class Stall:
    """Advance the clock without data, polling the interrupt hook every ``step``."""
    seconds: float
    step: float = 0.5


@dataclass
class Call:
    """Run a function from inside a read, like a control thread acting mid-stream."""
    fn: Callable[[], None]


@dataclass
class Block:
    """Block in real time until the interrupt hook asks to abort."""
    reached: threading.Event = field(default_factory=threading.Event)


@dataclass
class Gate:
    """Hold the read until ``release`` is set, polling the interrupt hook meanwhile."""
    release: threading.Event = field(default_factory=threading.Event)
    reached: threading.Event = field(default_factory=threading.Event)


EOF = object()


def default_streams() -> list[FakeStream]:
    return [
        FakeStream("video", Fraction(1, 1000), 0),
        FakeStream("audio", Fraction(1, 48000), 1),
        FakeStream("data", Fraction(1, 1000), 2),
    ]


class FakeInput:
    def __init__(
        self,
        locator: str,
        interrupt: Callable[[], bool],
        *,
        clock: FakeClock,
        script: list,
        open_script: list | None = None,
        streams: list[FakeStream] | None = None,
        open_error: Exception | None = None,
        **options,
    ) -> None:
        self.locator = locator
        self.interrupt = interrupt
        self.clock = clock
        self.script = list(script)
        self.open_script = list(open_script or [])
        self.open_error = open_error
        self.options = options
        self.streams = streams if streams is not None else default_streams()
        self.opened = False
        self.closed = False

    def open(self) -> None:
        self._run(self.open_script)
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def read_packet(self):
        item = self._run(self.script)
        return None if item is EOF else item

    def close(self) -> None:
        self.closed = True

    def _poll(self) -> None:
        if self.interrupt():
            raise InputInterrupted("aborted")

    def _run(self, script: list):
        while True:
            self._poll()
            if not script:
                return EOF
            item = script.pop(0)
            if isinstance(item, Stall):
                elapsed = 0.0
                while elapsed < item.seconds:
                    step = min(item.step, item.seconds - elapsed)
                    self.clock.advance(step)
                    elapsed += step
                    self._poll()
                continue
            if isinstance(item, Call):
                item.fn()
                continue
            if isinstance(item, Gate):
                item.reached.set()
                while not item.release.wait(0.005):
                    self._poll()
                continue
            if isinstance(item, Block):
                item.reached.set()
                while True:
                    time.sleep(0.005)
                    self._poll()
            if isinstance(item, Exception):
                raise item
            return item


class FakeInputFactory:
    """Builds FakeInputs from a script template; counts how many were opened."""

    def __init__(self, clock: FakeClock, script_factory: Callable[[], list], **kwargs) -> None:
        self.clock = clock
        self.script_factory = script_factory
        self.kwargs = kwargs
        self.inputs: list[FakeInput] = []

    def __call__(self, locator, interrupt, **options) -> FakeInput:
        fake = FakeInput(
            locator,
            interrupt,
            clock=self.clock,
            script=self.script_factory(),
            **self.kwargs,
            **options,
        )
        self.inputs.append(fake)
        return fake


class FakeOutput:
    def __init__(self, path: Path, streams, mapping, container_format=None) -> None:
        self.path = Path(path)
        self.streams = streams
        self.mapping = mapping
        self.container_format = container_format
        self.packets: list[FakePacket] = []
        self.closed = False
        self.fail_writes_after: int | None = None

    def time_base(self, index: int) -> Fraction:
        return Fraction(1, 90000)

    def write(self, packet, index: int) -> None:
        if self.closed:
            raise RuntimeError("write after close")
        if self.fail_writes_after is not None and len(self.packets) >= self.fail_writes_after:
            raise OSError("disk full")
        packet.stream_index = index
        self.packets.append(packet)

    def close(self) -> None:
        self.closed = True


class FakeOutputFactory:
    def __init__(self) -> None:
        self.outputs: list[FakeOutput] = []
        self.failures_left = 0
        self.fail_writes_after: int | None = None
        self.lock = threading.Lock()

    def __call__(self, path, streams, mapping, container_format=None) -> FakeOutput:
        with self.lock:
            if self.failures_left > 0:
                self.failures_left -= 1
                raise OSError("cannot create segment")
            output = FakeOutput(path, streams, mapping, container_format)
            if self.fail_writes_after is not None:
                output.fail_writes_after = self.fail_writes_after
                self.fail_writes_after = None
            self.outputs.append(output)
            return output
