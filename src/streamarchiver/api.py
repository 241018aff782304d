"""
HTTP control API for Stream Archiver.

Routes:
    GET  /streams                 all sessions and stored records
    GET  /streams/{name}          one stream
    POST /streams/{name}/start    body: {"url": ..., "output_root": ...}
    POST /streams/{name}/stop
    POST /streams/{name}/slice
"""

import json
from typing import TYPE_CHECKING

from aiohttp import web

from .logger import get_logger
from .session import SessionNotRunning, SessionStopped

if TYPE_CHECKING:
    from .main import ArchiverApp


ARCHIVER_KEY = web.AppKey("archiver")

_logger = get_logger('api')


def _archiver(request: web.Request) -> "ArchiverApp":
    return request.app[ARCHIVER_KEY]


def _error(status: int, message: str) -> web.Response:
    return web.json_response({'error': message}, status=status)


def _describe(archiver: "ArchiverApp", name: str) -> dict:
    session = archiver.registry.get(name)
    record = archiver.state.get(name)
    return {
        'name': name,
        'session': session.snapshot() if session is not None else None,
        'record': record.to_dict() if record is not None else None,
    }


async def list_streams(request: web.Request) -> web.Response:
    archiver = _archiver(request)
    names = set(archiver.registry.names()) | {r.name for r in archiver.state.all()}
    return web.json_response({'streams': [_describe(archiver, n) for n in sorted(names)]})


async def get_stream(request: web.Request) -> web.Response:
    archiver = _archiver(request)
    name = request.match_info['name']
    info = _describe(archiver, name)
    if info['session'] is None and info['record'] is None:
        return _error(404, f"Unknown stream: {name}")
    return web.json_response(info)


async def start_stream(request: web.Request) -> web.Response:
    archiver = _archiver(request)
    name = request.match_info['name']

    try:
        body = await request.json() if request.can_read_body else {}
    except json.JSONDecodeError:
        return _error(400, "Body must be JSON")
    if not isinstance(body, dict):
        return _error(400, "Body must be a JSON object")

    url = body.get('url')
    if not url:
        record = archiver.state.get(name)
        url = record.url if record is not None else None
    if not url:
        return _error(400, "Missing 'url'")

    try:
        await archiver.start_stream(name, str(url), body.get('output_root'))
    except Exception as e:
        _logger.warning(f"Start of {name} failed: {e}")
        return _error(502, f"Failed to start {name}: {e}")

    return web.json_response(_describe(archiver, name))


async def stop_stream(request: web.Request) -> web.Response:
    archiver = _archiver(request)
    name = request.match_info['name']
    await archiver.stop_stream(name)
    return web.json_response(_describe(archiver, name))


async def slice_stream(request: web.Request) -> web.Response:
    archiver = _archiver(request)
    name = request.match_info['name']
    try:
        await archiver.slice_stream(name)
    except SessionNotRunning as e:
        return _error(409, str(e))
    except SessionStopped as e:
        return _error(502, str(e))
    return web.json_response(_describe(archiver, name))


def create_app(archiver: "ArchiverApp") -> web.Application:
    """Build the aiohttp application bound to ``archiver``."""
    app = web.Application()
    app[ARCHIVER_KEY] = archiver
    app.add_routes([
        web.get('/streams', list_streams),
        web.get('/streams/{name}', get_stream),
        web.post('/streams/{name}/start', start_stream),
        web.post('/streams/{name}/stop', stop_stream),
        web.post('/streams/{name}/slice', slice_stream),
    ])
    return app
