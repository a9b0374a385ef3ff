import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from presence.broadcaster import Broadcaster
from presence.config import Settings
from presence.geo import LocationResolver
from presence.ingestion import Ingestion, RejectedUpdate
from presence.registry import ParticipantRegistry
from presence.sessions import SessionHandler


def configure_logging(level_name: str = "INFO") -> None:
    if logging.getLogger().handlers:
        return

    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


logger = logging.getLogger("presence.main")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def client_address(request: Request, trust_forwarded: bool = True) -> str:
    """取来源地址：可信代理场景下优先 X-Forwarded-For 的第一跳。"""
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


async def read_json_body(request: Request, max_bytes: int):
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_bytes:
        raise RejectedUpdate("payload_too_large", status_code=413)

    raw = bytearray()
    async for chunk in request.stream():
        raw.extend(chunk)
        if len(raw) > max_bytes:
            raise RejectedUpdate("payload_too_large", status_code=413)

    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        raise RejectedUpdate("invalid_json") from None


def rejection_response(error: RejectedUpdate) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error.error}, status_code=error.status_code)


def create_app(
    settings: Optional[Settings] = None,
    geo_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    组装应用：每次调用都创建全新的登记表、广播器与解析器实例，挂在 app.state 上。

    HTTP 入口层只做协议收发与调度，不承载状态逻辑。
    """
    settings = settings or Settings()
    configure_logging(settings.log_level)
    registry = ParticipantRegistry()
    broadcaster = Broadcaster()
    resolver = LocationResolver(settings, transport=geo_transport)
    sessions = SessionHandler(
        registry,
        broadcaster,
        resolver=resolver,
        channel_queue_size=settings.channel_queue_size,
    )
    ingestion = Ingestion(sessions, flag_url_template=settings.state_flag_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await resolver.start()
        try:
            yield
        finally:
            await sessions.shutdown()
            await resolver.aclose()

    app = FastAPI(title="presence-server", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.resolver = resolver
    app.state.sessions = sessions
    app.state.ingestion = ingestion

    @app.get("/events")
    async def events(request: Request) -> StreamingResponse:
        """事件流主通道：每个连接即一个新参与者，断线重连按新参与者接入。"""
        origin = client_address(request, settings.trust_forwarded)
        session = sessions.open(origin)

        async def event_stream():
            try:
                yield f"retry: {settings.retry_ms}\n\n"
                async for frame in session.frames(keepalive=settings.keepalive_sec):
                    if frame is None:
                        if await request.is_disconnected():
                            break
                        yield ": ping\n\n"
                        continue
                    yield f"data: {frame}\n\n"
            except Exception as e:
                logger.exception("Error streaming events to %s: %s", session.participant_id, e)
            finally:
                sessions.close(session)

        async def release() -> None:
            # 流未开始即断开时生成器的 finally 不会执行，这里兜底；close 可重复调用。
            sessions.close(session)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
            background=BackgroundTask(release),
        )

    @app.post("/move")
    async def move(request: Request) -> Response:
        try:
            payload = await read_json_body(request, settings.max_body_bytes)
            ingestion.submit_move(payload)
        except RejectedUpdate as e:
            logger.debug("Rejected move: %s", e)
            return rejection_response(e)
        return Response(status_code=204)

    @app.post("/location")
    async def location(request: Request) -> Response:
        try:
            payload = await read_json_body(request, settings.max_body_bytes)
        except RejectedUpdate as e:
            return rejection_response(e)
        ingestion.submit_location(payload)
        return Response(status_code=204)

    @app.get("/health")
    async def health_check():
        """健康检查：用于探活。"""
        return JSONResponse({"status": "ok"})

    @app.get("/snapshot")
    async def snapshot():
        """调试快照：返回当前参与者与连接状态。"""
        return JSONResponse({
            "server_time": time.time(),
            "users": [participant.to_wire() for participant in registry.snapshot()],
            "connections_count": broadcaster.channel_count,
            "geo": dict(resolver.stats),
        })

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=app.state.settings.host, port=app.state.settings.port)
