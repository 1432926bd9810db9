"""Command line entry points: run the aiohttp server or replay scripted frames."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, List, Optional, TextIO

from aiohttp import web

from .backend import Backend
from .config import EngineConfig, load_engine_config_from_env
from .engine import ConversationEngine
from .hub import SubscriptionHub
from .models import THREAD_DM, THREAD_SPOT, ThreadKey, UserProfile
from .notify import CollectingNotifier
from .store import InMemoryRowStore
from .ws_transport import create_app

SIM_EPOCH_MS = 1_700_000_000_000


class SimClock:
    def __init__(self, start_ms: int = SIM_EPOCH_MS) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, delta_ms: int) -> None:
        self.now_ms += delta_ms


class _Simulation:
    """Drives one in-process backend and an engine per scripted user."""

    def __init__(self, output: TextIO, config: EngineConfig) -> None:
        self.output = output
        self.config = config
        self.clock = SimClock()
        self.hub = SubscriptionHub()
        self.backend = Backend(InMemoryRowStore(config, now_func=self.clock), self.hub)
        self.engines: Dict[str, ConversationEngine] = {}
        self.notifiers: Dict[str, CollectingNotifier] = {}
        self.rooms: Dict[str, str] = {}

    async def engine(self, user_id: str) -> ConversationEngine:
        engine = self.engines.get(user_id)
        if engine is None:
            notifier = CollectingNotifier()
            engine = ConversationEngine(
                user_id, self.backend, self.hub, notifier, self.config, now_func=self.clock
            )
            self.engines[user_id] = engine
            self.notifiers[user_id] = notifier
            await engine.start()
        return engine

    def emit(self, record: Dict[str, Any]) -> None:
        self.output.write(json.dumps(record, sort_keys=True) + "\n")

    async def thread_for(self, engine: ConversationEngine, frame: Dict[str, Any]) -> ThreadKey:
        if "room" in frame:
            return ThreadKey(THREAD_SPOT, self.rooms[frame["room"]])
        peer = frame["peer"]
        for connection in await self.backend.list_connections(engine.user_id):
            if connection.peer_id == peer:
                return ThreadKey(THREAD_DM, connection.invitation_id)
        raise ValueError(f"{engine.user_id} is not connected to {peer}")

    async def pending_from(self, engine: ConversationEngine, sender_id: str) -> str:
        for invitation in await self.backend.list_pending_invitations(engine.user_id):
            if invitation.sender_id == sender_id:
                return invitation.invitation_id
        raise ValueError(f"no pending invitation from {sender_id} to {engine.user_id}")

    async def apply(self, frame: Dict[str, Any]) -> None:
        self.clock.advance(int(frame.get("advance_ms", 1000)))
        frame_type = frame.get("t")
        user_id = frame.get("user")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError(f"frame {frame_type} requires a user")
        engine = await self.engine(user_id)

        if frame_type == "profile":
            await self.backend.put_profile(UserProfile(user_id, frame["display_name"], frame.get("avatar")))
        elif frame_type == "invite":
            await engine.send_invitation(frame["to"], frame["activity"])
        elif frame_type == "accept":
            await engine.accept_invitation(await self.pending_from(engine, frame["from"]))
        elif frame_type == "decline":
            await engine.decline_invitation(await self.pending_from(engine, frame["from"]))
        elif frame_type == "create_room":
            room = await engine.create_room(
                frame["title"], frame.get("category", "social"), duration_minutes=int(frame.get("duration_minutes", 60))
            )
            if room is not None:
                self.rooms[frame.get("alias", frame["title"])] = room.event_id
        elif frame_type == "join":
            await engine.join_room(self.rooms[frame["room"]])
        elif frame_type == "leave":
            await engine.leave_room(self.rooms[frame["room"]])
        elif frame_type == "ban":
            await engine.ban_user(self.rooms[frame["room"]], frame["target"])
        elif frame_type == "unban":
            await engine.unban_user(self.rooms[frame["room"]], frame["target"])
        elif frame_type == "open":
            await engine.open_thread(await self.thread_for(engine, frame))
        elif frame_type == "close":
            await engine.close_thread()
        elif frame_type == "type":
            engine.set_compose(frame.get("text", ""))
        elif frame_type == "send":
            await engine.send_message(frame.get("text"))
        elif frame_type == "mute":
            await engine.toggle_mute(await self.thread_for(engine, frame))
        elif frame_type == "disconnect":
            thread = await self.thread_for(engine, frame)
            await engine.disconnect(thread.thread_id)
        elif frame_type == "snapshot":
            pass
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")

        for other in self.engines.values():
            await other.wait_idle()
        self.flush_notices()
        if frame_type == "snapshot" or frame.get("snapshot"):
            self.emit({"t": "inbox", **self.engines[user_id].snapshot()})

    def flush_notices(self) -> None:
        for user_id in sorted(self.notifiers):
            notifier = self.notifiers[user_id]
            for notice in notifier.notices:
                self.emit({"t": "notice", "user": user_id, "title": notice.title, "variant": notice.variant})
            notifier.notices.clear()

    async def close(self) -> None:
        for engine in self.engines.values():
            await engine.stop()


async def _simulate(frames: Iterable[Dict[str, Any]], output: TextIO, config: EngineConfig) -> None:
    simulation = _Simulation(output, config)
    try:
        for frame in frames:
            await simulation.apply(frame)
    finally:
        await simulation.close()


def simulate(frames: Iterable[Dict[str, Any]], output: TextIO, config: EngineConfig | None = None) -> None:
    """Replay scripted user actions against an in-process backend and print inbox snapshots."""

    asyncio.run(_simulate(frames, output, config or EngineConfig()))


def _load_frames(handle: TextIO) -> List[Dict[str, Any]]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: List[Dict[str, Any]] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file as handle:
            frames = _load_frames(handle)
    simulate(frames, output, load_engine_config_from_env())
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    app = create_app(ping_interval_s=args.ping_interval, db_path=args.db, config=load_engine_config_from_env())
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="signalroom", description="Signalroom conversation engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay scripted user frames")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp backend server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
