from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, TextIO

from tqdm import tqdm

from ingestion.chain.source import BlockLogFileSource, HiveRpcSource
from ingestion.contracts.source import ChainDataSource
from workerbee.bee import WorkerBee
from workerbee.exceptions.core import ConfigurationError
from workerbee.queen import QueenBee
from workerbee.runtime.lifecycle import SubscriptionPhase
from workerbee.runtime.subscription import Observer
from workerbee.utils.config import EngineConfig
from workerbee.utils.logger import get_logger, init_logging, log_error, safe_jsonable

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Observe Hive blocks and print matches as JSON lines")

    src = parser.add_mutually_exclusive_group()
    src.add_argument("--node", default="https://api.hive.blog", help="JSON-RPC API node")
    src.add_argument("--block-log", default=None, help="parquet / jsonl block log (past mode only)")

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument("--live", action="store_true", help="follow the head")
    mode.add_argument("--past", nargs=2, type=int, metavar=("START", "END"), help="replay [START, END]")
    mode.add_argument("--since", default=None, help="replay a relative range, e.g. --since=-1h")
    parser.add_argument("--then-live", action="store_true", help="continue live after the replay")

    filters = parser.add_argument_group("filters (combined with OR)")
    filters.add_argument("--posts", action="append", default=[], metavar="AUTHOR")
    filters.add_argument("--comments", action="append", default=[], metavar="AUTHOR")
    filters.add_argument("--votes", action="append", default=[], metavar="VOTER")
    filters.add_argument("--mentions", action="append", default=[], metavar="ACCOUNT")
    filters.add_argument("--impacted", action="append", default=[], metavar="ACCOUNT")
    filters.add_argument("--custom-op", action="append", default=[], metavar="ID")
    filters.add_argument("--whale", default=None, metavar="AMOUNT", help='e.g. "10000.000 HIVE"')
    filters.add_argument("--new-accounts", action="store_true")
    filters.add_argument("--exchange-transfers", action="store_true")

    providers = parser.add_argument_group("providers")
    providers.add_argument("--provide-accounts", action="append", default=[], metavar="ACCOUNT")
    providers.add_argument("--provide-block-header", action="store_true")

    parser.add_argument("--config", default=None, help="EngineConfig JSON file")
    parser.add_argument("--log-profile", default=None, help="logging profile in configs/logging.json")
    parser.add_argument("--run-id", default=None)
    parser.add_argument("--no-progress", action="store_true", help="disable the replay progress bar")
    return parser


def build_source(args: argparse.Namespace) -> ChainDataSource:
    if args.block_log:
        if args.live or args.then_live:
            raise ConfigurationError("a block log cannot be observed live")
        return BlockLogFileSource(args.block_log)
    return HiveRpcSource(node_url=args.node)


def build_observer(bee: WorkerBee, args: argparse.Namespace) -> QueenBee:
    """Translate CLI flags into a subscription builder."""
    if args.live:
        queen = bee.observe_live()
    elif args.since is not None:
        queen = bee.observe_past(args.since)
    else:
        queen = bee.observe_past(args.past[0], args.past[1])
    if args.then_live:
        queen.then_live()

    if args.posts:
        queen.on_posts(*args.posts)
    if args.comments:
        queen.on_comments(*args.comments)
    if args.votes:
        queen.on_votes(*args.votes)
    if args.mentions:
        queen.on_mention(*args.mentions)
    if args.impacted:
        queen.on_impacted_accounts(*args.impacted)
    if args.custom_op:
        queen.on_custom_operation(*args.custom_op)
    if args.whale:
        queen.on_whale_alert(args.whale)
    if args.new_accounts:
        queen.on_new_account()
    if args.exchange_transfers:
        queen.on_exchange_transfer()

    if args.provide_accounts:
        queen.provide_accounts(*args.provide_accounts)
    if args.provide_block_header:
        queen.provide_block_header_data()
    return queen


class JsonLinesObserver(Observer):
    def __init__(self, out: TextIO):
        self._out = out
        self.errors: list[dict[str, Any]] = []

    def next(self, result):
        self._out.write(json.dumps(safe_jsonable(result.to_dict()), ensure_ascii=False) + "\n")
        self._out.flush()

    def error(self, error):
        self.errors.append(error.to_dict())
        log_error(logger, "run_observer.subscription_error", **error.to_dict())

    def diagnostics(self, error):
        self._out.write(json.dumps({"diagnostics": safe_jsonable(error.to_dict())}) + "\n")


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    init_logging(run_id=args.run_id, profile=args.log_profile or ("live" if args.live else "past"))

    config = EngineConfig.from_file(args.config) if args.config else EngineConfig(run_id=args.run_id)
    bee = WorkerBee(build_source(args), config=config)
    queen = build_observer(bee, args)

    pbar = None
    if not args.live and not args.no_progress:
        total = args.past[1] - args.past[0] + 1 if args.past else None
        pbar = tqdm(total=total, desc="replay", unit="block", file=sys.stderr)

    def on_progress(tick, matched):
        if pbar is not None and tick.phase == "past":
            pbar.update(1)

    observer = JsonLinesObserver(sys.stdout)
    subscription = queen.subscribe(observer, on_progress=on_progress)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, subscription.unsubscribe)

    try:
        phase = await subscription.wait()
    finally:
        if pbar is not None:
            pbar.close()
        await bee.close()
    return 1 if phase is SubscriptionPhase.ERRORED else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
