from __future__ import annotations

import asyncio
import functools
import json

from aiohttp import test_utils

from fakes import Block, FakeClock, FakeInputFactory, FakeOutputFactory, FakePacket
from streamarchiver.api import create_app
from streamarchiver.config import Config, RecordingConfig, StateConfig, StreamConfig
from streamarchiver.main import ArchiverApp
from streamarchiver.registry import SessionRegistry
from streamarchiver.session import RecordingSession


def _archiver(tmp_path, **input_kwargs) -> ArchiverApp:
    clock = FakeClock()
    recording = RecordingConfig(output_root=str(tmp_path / "rec"), poll_interval=0.01)
    registry = SessionRegistry(
        settings=recording,
        max_sessions=2,
        control_threads=1,
        session_factory=functools.partial(
            RecordingSession,
            input_factory=FakeInputFactory(
                clock, lambda: [FakePacket(0, pts=0, dts=0, duration=40), Block()], **input_kwargs
            ),
            output_factory=FakeOutputFactory(),
            clock=clock,
        ),
    )
    config = Config(
        recording=recording,
        state=StateConfig(state_file=str(tmp_path / "data" / "state.json")),
    )
    return ArchiverApp(config, registry=registry)


def test_http_start_stop_cycle(tmp_path):
    archiver = _archiver(tmp_path)

    async def scenario():
        async with test_utils.TestClient(test_utils.TestServer(create_app(archiver))) as client:
            resp = await client.post("/streams/cam/start", json={"url": "fake://cam"})
            assert resp.status == 200
            body = await resp.json()
            assert body["session"]["state"] == "recording"
            assert body["record"]["status"] == "recording"

            resp = await client.get("/streams")
            listing = await resp.json()
            assert [s["name"] for s in listing["streams"]] == ["cam"]

            resp = await client.post("/streams/cam/stop")
            assert resp.status == 200
            body = await resp.json()
            assert body["session"] is None
            assert body["record"]["status"] == "stopped"

            resp = await client.get("/streams/cam")
            assert resp.status == 200

            resp = await client.get("/streams/unknown")
            assert resp.status == 404
        await archiver.registry.aclose(timeout=5)

    asyncio.run(scenario())

    saved = json.loads((tmp_path / "data" / "state.json").read_text(encoding="utf-8"))
    assert saved["streams"]["cam"]["status"] == "stopped"
    assert saved["streams"]["cam"]["url"] == "fake://cam"


def test_http_rejects_bad_requests(tmp_path):
    archiver = _archiver(tmp_path)

    async def scenario():
        async with test_utils.TestClient(test_utils.TestServer(create_app(archiver))) as client:
            resp = await client.post("/streams/cam/start", json={})
            assert resp.status == 400

            resp = await client.post("/streams/cam/start", data="not json")
            assert resp.status == 400

            resp = await client.post("/streams/cam/slice")
            assert resp.status == 409
        await archiver.registry.aclose(timeout=5)

    asyncio.run(scenario())


def test_http_start_failure_is_reported(tmp_path):
    archiver = _archiver(tmp_path, open_error=ConnectionRefusedError("refused"))

    async def scenario():
        async with test_utils.TestClient(test_utils.TestServer(create_app(archiver))) as client:
            resp = await client.post("/streams/cam/start", json={"url": "fake://cam"})
            assert resp.status == 502
            body = await resp.json()
            assert "refused" in body["error"]
        await archiver.registry.aclose(timeout=5)

    asyncio.run(scenario())

    assert archiver.state.get("cam").status.value == "error"


def test_startup_streams_merge_resumable_records_with_config(tmp_path):
    archiver = _archiver(tmp_path)
    archiver.config.streams = [StreamConfig(name="gate", url="rtsp://gate")]

    async def scenario():
        await archiver.state.mark_recording("lobby", "rtsp://lobby", "/archive")
        await archiver.state.mark_recording("gate", "rtsp://old-gate", "/archive")
        await archiver.state.mark_recording("yard", "rtsp://yard", "/archive")
        await archiver.state.mark_stopped("yard")
        await archiver.registry.aclose(timeout=5)

    asyncio.run(scenario())

    streams = archiver._startup_streams()
    assert sorted(streams) == ["gate", "lobby"]
    assert streams["gate"].url == "rtsp://gate"
    assert streams["lobby"].output_root == "/archive"
