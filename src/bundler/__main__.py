import argparse
import asyncio
import json
import logging
import sys

import uvicorn

from bundler.config import load_config
from bundler.constants import StageName, SubmissionMode
from bundler.errors import BundlerError, PreflightError
from bundler.logging_config import setup_logging

log = logging.getLogger("bundler.main")

EXIT_OK = 0
EXIT_FATAL = 1


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="bundler")
    parser.add_argument("-c", "--config", help="TOML file merged over the packaged defaults")
    parser.add_argument("-i", "--inventory", help="Wallet inventory JSON (default from config)")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    sell = sub.add_parser("sell", help="Sell one stage (or all accounts)")
    sell.add_argument("stage", choices=[s.value for s in StageName])
    sell.add_argument("--wait-threshold", action=argparse.BooleanOptionalAction, default=None,
                      help="Hold the stage until market depth reaches its threshold")

    launch = sub.add_parser("launch", help="Fund, pack and submit the launch bundle")
    launch.add_argument("--mode", choices=[m.value for m in SubmissionMode])

    gather = sub.add_parser("gather", help="Return leftover tokens and XRP to the funding account")
    gather.add_argument("--new-only", action="store_true",
                        help="Only sweep auto-created accounts; supplied accounts keep their funds")

    status = sub.add_parser("bundle-status", help="Look up a submitted bundle")
    status.add_argument("bundle_id")
    return parser.parse_args(argv)


async def _sell(orch, args) -> int:
    summary = await orch.run_stage(args.stage, wait_for_threshold=args.wait_threshold)
    print(json.dumps(summary.to_dict(), indent=2))
    # per-account failures are reported, not fatal
    return EXIT_OK


async def _launch(orch, args) -> int:
    result = await orch.launch(args.mode)
    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK if result.ok else EXIT_FATAL


async def _bundle_status(orch, args) -> int:
    status = await orch.bundle_status(args.bundle_id)
    print(json.dumps(status, indent=2))
    return EXIT_OK if status is not None else EXIT_FATAL


async def _gather(orch, args) -> int:
    summary = await orch.gather(new_only=args.new_only)
    print(json.dumps(summary.to_dict(), indent=2))
    return EXIT_OK


COMMANDS = {
    "sell": _sell,
    "launch": _launch,
    "gather": _gather,
    "bundle-status": _bundle_status,
}


def run(args, conf) -> int:
    from bundler.orchestrator import from_config

    try:
        orch = from_config(conf, args.inventory)
        return asyncio.run(COMMANDS[args.command](orch, args))
    except PreflightError as e:
        log.critical("Preflight failed: %s", e)
        return EXIT_FATAL
    except BundlerError as e:
        log.critical("%s failed: %s: %s", args.command, e.__class__.__name__, e)
        return EXIT_FATAL


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    conf = load_config(args.config)
    if args.inventory:
        conf["inventory"]["path"] = args.inventory

    if args.command == "serve":
        from bundler.app import app

        app.state.conf = conf
        api = conf.get("api", {})
        uvicorn.run(
            app,
            host=args.host or api.get("host", "0.0.0.0"),
            port=args.port or int(api.get("port", 8000)),
            lifespan="on",
        )
        return EXIT_OK
    return run(args, conf)


if __name__ == "__main__":
    sys.exit(main())
