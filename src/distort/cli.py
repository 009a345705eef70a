from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Optional

from .api.node import DistortNode
from .config import NodeConfig
from .crypto.default_crypto_provider import DefaultCryptoProvider
from .exceptions import InvalidLevelError
from .models import ROOT_ACCOUNT, InMessage
from .protocol.group_tree import MAX_PATH_DEPTH, random_from_level, random_path
from .protocol.topics import certificate_topic, message_topic
from .store.memory import InMemoryStore
from .transport.memory import InMemoryBroker

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEMO_GROUP = "demo"


def configure_logging(debug: bool = False) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger("distort")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="distort")
    p.add_argument("--debug", action="store_true", help="verbose logging")
    p.add_argument("--env-file", default=None, help="read DISTORT_* settings from this file")
    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser("keygen")
    path = sub.add_parser("path")
    path.add_argument("--level", type=int, default=None, help=f"0..{MAX_PATH_DEPTH}")
    topic = sub.add_parser("topic")
    topic.add_argument("name")
    topic.add_argument("index", type=int)
    demo = sub.add_parser("demo")
    demo.add_argument("--message", default="hello")
    demo.add_argument("--cycles", type=int, default=3)
    return p


async def run_demo(message: str, cycles: int, config: Optional[NodeConfig] = None) -> Optional[InMessage]:
    """Two in-memory nodes exchange ``message``; returns what the receiver stored."""
    config = config or NodeConfig.recommended()
    broker = InMemoryBroker()
    alice = DistortNode(broker.transport("alice"), InMemoryStore(), config, run_scheduler=False)
    bob = DistortNode(broker.transport("bob"), InMemoryStore(), config, run_scheduler=False)
    async with alice, bob:
        for node in (alice, bob):
            await node.accounts.join_group(ROOT_ACCOUNT, DEMO_GROUP, 0)
        for node in (alice, bob):
            await node.scheduler.run_certificate_cycle()
        await broker.drain()

        await alice.accounts.enqueue_message(ROOT_ACCOUNT, DEMO_GROUP, message, to_peer_id=bob.peer_id)
        for _ in range(cycles):
            await alice.scheduler.run_message_cycle()
            await bob.scheduler.run_message_cycle()
            await broker.drain()
            entries = await bob.accounts.read_conversation(ROOT_ACCOUNT, DEMO_GROUP, alice.peer_id)
            received = [e for e in entries if isinstance(e, InMessage)]
            if received:
                return received[0]
    return None


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    config = NodeConfig.from_env(args.env_file)
    configure_logging(args.debug or config.debug)

    if args.cmd == "keygen":
        kp = DefaultCryptoProvider().generate_key_pair()
        print(json.dumps({"pub": kp.pub, "sec": kp.sec}))
        return 0
    if args.cmd == "path":
        if args.level is None:
            print(json.dumps(random_path()))
        else:
            try:
                print(random_from_level(args.level))
            except InvalidLevelError as e:
                p.error(str(e))
        return 0
    if args.cmd == "topic":
        print(message_topic(args.name, args.index))
        print(certificate_topic(args.name))
        return 0
    if args.cmd == "demo":
        received = asyncio.run(run_demo(args.message, args.cycles, config))
        if received is None:
            print("no message received")
            return 1
        print(json.dumps({"index": received.index, "message": received.message, "verified": received.verified}))
        return 0
    return 2
