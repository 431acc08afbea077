"""Development object store over HTTP plus the ``chatsync`` command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
import sys
from typing import Any, Dict, Iterable, TextIO

from aiohttp import web

from .config import load_sync_config_from_env
from .engine import SyncEngine
from .errors import TransportError, ValidationError
from .hub import KIND_MESSAGES, SyncEvent
from .messages import OutboundDraft
from .sqlite_backend import SQLiteBackend
from .sqlite_cursors import SQLiteCursorStore
from .sqlite_log import SQLiteMessageLog
from .transport import InMemoryObjectStore

logger = logging.getLogger(__name__)

STORE_KEY = web.AppKey("store", InMemoryObjectStore)


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _unauthorized() -> web.Response:
    return web.json_response({"code": "unauthorized", "message": "missing bearer address"}, status=401)


def _unavailable(message: str) -> web.Response:
    return web.json_response({"code": "unavailable", "message": message}, status=503)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


def _authenticate_request(request: web.Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    address = auth_header[len("Bearer ") :].strip()
    return address or None


def _parse_int_query(request: web.Request, name: str) -> int | None:
    raw = request.query.get(name)
    if raw is None:
        return None
    value = int(raw)
    if value < 0:
        raise ValueError(f"{name} must be non-negative")
    return value


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_messages(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    address = _authenticate_request(request)
    if address is None:
        return _unauthorized()
    peer = request.match_info["peer"]
    try:
        since = _parse_int_query(request, "since")
        limit = _parse_int_query(request, "limit")
    except ValueError as exc:
        return _invalid_request(str(exc))

    try:
        if limit is not None:
            messages = store.recent(address, peer, limit)
        elif since is not None:
            messages = store.list_since(address, peer, since)
        else:
            return _invalid_request("since or limit required")
    except TransportError as exc:
        return _unavailable(str(exc))
    return _with_no_store(web.json_response({"messages": [m.to_dict() for m in messages]}))


async def handle_activity(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    address = _authenticate_request(request)
    if address is None:
        return _unauthorized()
    try:
        window_ms = _parse_int_query(request, "window_ms")
    except ValueError as exc:
        return _invalid_request(str(exc))
    if window_ms is None:
        return _invalid_request("window_ms required")
    try:
        active = store.has_incoming_since(address, request.match_info["peer"], store.now_ms() - window_ms)
    except TransportError as exc:
        return _unavailable(str(exc))
    return _with_no_store(web.json_response({"active": active}))


async def handle_send(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    address = _authenticate_request(request)
    if address is None:
        return _unauthorized()
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("body must be an object")

    draft = OutboundDraft(
        recipient=body.get("to"),
        payload=body.get("payload"),
        kind=body.get("kind", "text"),
    )
    try:
        message = store.put(address, draft)
    except ValidationError as exc:
        return _invalid_request(str(exc))
    except TransportError as exc:
        return _unavailable(str(exc))
    return web.json_response({"message": message.to_dict()})


def create_app(store: InMemoryObjectStore | None = None) -> web.Application:
    app = web.Application()
    app[STORE_KEY] = store or InMemoryObjectStore()
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/conversations/{peer}/messages", handle_messages)
    app.router.add_get("/v1/conversations/{peer}/activity", handle_activity)
    app.router.add_post("/v1/messages", handle_send)
    return app


class _ManualClock:
    def __init__(self, start_ms: int) -> None:
        self.now_ms = start_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def now(self) -> int:
        return self.now_ms


async def _never_sleep(_: float) -> None:
    raise RuntimeError("simulation steps cycles explicitly")


async def simulate(frames: Iterable[dict], output: TextIO, *, start_ms: int = 1_000_000, seed: int = 0) -> None:
    """Step sync engines for several users against one in-memory store.

    Every frame is processed in order and produces at most a handful of NDJSON
    lines on ``output``.
    """

    clock = _ManualClock(start_ms)
    store = InMemoryObjectStore(now_func=clock.now)
    config = load_sync_config_from_env()
    engines: Dict[str, SyncEngine] = {}

    def emit(frame: Dict[str, Any]) -> None:
        output.write(json.dumps(frame, sort_keys=True) + "\n")

    def engine_for(address: str) -> SyncEngine:
        if address not in engines:
            engines[address] = SyncEngine(
                store.transport_for(address),
                address,
                config=config,
                now_func=clock.now,
                sleep=_never_sleep,
                rng=random.Random(seed),
                autostart=False,
            )
        return engines[address]

    for frame in frames:
        frame_type = frame.get("t")
        if frame_type == "advance":
            clock.advance(int(frame["ms"]))
        elif frame_type == "fail":
            store.fail_next(int(frame.get("count", 1)))
        elif frame_type == "send":
            engine = engine_for(frame["from"])
            draft = OutboundDraft(recipient=frame["to"], payload=frame.get("payload", ""))
            try:
                message = await engine.submit(draft)
            except (TransportError, ValidationError) as exc:
                emit({"t": "send_failed", "from": frame["from"], "to": frame["to"], "error": str(exc)})
            else:
                emit({"t": "sent", "message": message.to_dict()})
        elif frame_type == "activate":
            engine = engine_for(frame["as"])
            poller = engine.activate(frame["peer"])
            cursor = await poller.seed()
            emit(
                {
                    "t": "seeded",
                    "as": frame["as"],
                    "peer": frame["peer"],
                    "cursor": cursor,
                    "messages": engine.log.count(frame["peer"]),
                    "burst": poller.state.burst_remaining,
                }
            )
        elif frame_type == "cycle":
            engine = engine_for(frame["as"])
            poller = engine.poller(frame["peer"])
            if poller is None:
                raise ValueError(f"{frame['as']} has not activated {frame['peer']}")
            for _ in range(int(frame.get("count", 1))):
                result = await poller.step()
                if result is None:
                    break
                emit(
                    {
                        "t": "cycle",
                        "as": frame["as"],
                        "peer": frame["peer"],
                        "ok": result.ok,
                        "applied": [m.msg_id for m in result.applied],
                        "cursor": result.cursor,
                        "next_delay_ms": result.next_delay_ms,
                    }
                )
        elif frame_type == "deactivate":
            engine_for(frame["as"]).deactivate(frame["peer"])
            emit({"t": "deactivated", "as": frame["as"], "peer": frame["peer"]})
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")

    for engine in engines.values():
        await engine.close()


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _print_event(output: TextIO, event: SyncEvent) -> None:
    if event.kind != KIND_MESSAGES:
        return
    for message in event.messages:
        output.write(json.dumps(message.to_dict(), sort_keys=True) + "\n")
    output.flush()


async def watch(
    base_url: str,
    address: str,
    peer: str,
    output: TextIO,
    *,
    db_path: str | None = None,
) -> None:
    """Sync one conversation against a running server until cancelled.

    With ``db_path`` the log and cursor live in SQLite, so a later run resumes
    from the stored cursor instead of reloading history.
    """

    from .http_transport import HttpTransport

    backend = SQLiteBackend(db_path) if db_path else None
    try:
        async with HttpTransport(base_url, address) as transport:
            engine = SyncEngine(
                transport,
                address,
                log=SQLiteMessageLog(backend) if backend else None,
                cursors=SQLiteCursorStore(backend) if backend else None,
                config=load_sync_config_from_env(),
            )
            engine.subscribe(peer, lambda event: _print_event(output, event))
            engine.activate(peer)
            try:
                await asyncio.Event().wait()
            finally:
                await engine.close()
    finally:
        if backend is not None:
            backend.close()


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file as handle:
            frames = _load_frames(handle)
    asyncio.run(simulate(frames, output, start_ms=args.start_ms, seed=args.seed))
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    logger.info("serving development object store on %s:%d", args.host, args.port)
    web.run_app(create_app(), host=args.host, port=args.port)
    return 0


def _run_watch(args: argparse.Namespace, output: TextIO) -> int:
    try:
        asyncio.run(watch(args.base_url, args.address, args.peer, output, db_path=args.db))
    except KeyboardInterrupt:
        pass
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="chatsync", description="Polling chat sync tools")
    parser.add_argument("--log-level", default="WARNING", help="Logging level for diagnostics on stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Step sync engines through scripted frames")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--start-ms", type=int, default=1_000_000, help="Initial simulated clock")
    simulate_parser.add_argument("--seed", type=int, default=0, help="Seed for back-off jitter")

    serve_parser = subparsers.add_parser("serve", help="Run the development object store")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")

    watch_parser = subparsers.add_parser("watch", help="Print a conversation's messages as they arrive")
    watch_parser.add_argument("--base-url", default="http://127.0.0.1:8080", help="Object store URL")
    watch_parser.add_argument("--db", default=None, help="SQLite file for a durable log and cursor")
    watch_parser.add_argument("address", help="Own address")
    watch_parser.add_argument("peer", help="Counterpart address")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    if args.command == "serve":
        return _run_serve(args)
    return _run_watch(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
