"""
Loopcast API — Callbacks from the local RTMP server (nginx-rtmp ``on_*`` hooks).

The server posts form-encoded fields (app, name, addr, ...); they are only
logged. Answering anything but 2xx would make the RTMP server drop the client.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/rtmp", tags=["RTMP"])

HOOKS = ("publish", "play", "publish_done", "play_done", "record_done")


async def _payload(request: Request) -> dict:
    if not await request.body():
        return {}
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        return await request.json()
    form = await request.form()
    return dict(form)


def _register(hook: str):
    async def handle(request: Request) -> PlainTextResponse:
        payload = await _payload(request)
        logger.info(f"RTMP {hook.replace('_', ' ')}: {payload}")
        return PlainTextResponse("OK")

    handle.__name__ = f"rtmp_{hook}"
    router.add_api_route(f"/{hook}", handle, methods=["POST"], response_class=PlainTextResponse)


for _hook in HOOKS:
    _register(_hook)
