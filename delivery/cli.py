"""Command line for submitting, inspecting and cancelling rollouts."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from config.logging import configure_logging
from config.settings import get_settings
from delivery.errors import (
    AdapterError,
    RolloutExistsError,
    RolloutNotFoundError,
    RolloutValidationError,
)
from delivery.service import RolloutService
from delivery.state_store import JsonFileRolloutStateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rolloutctl", description=__doc__)
    parser.add_argument("--state-dir", type=Path, default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    submit = commands.add_parser("submit", help="Submit a rollout spec from a JSON file.")
    submit.add_argument("spec_file", type=Path)

    status = commands.add_parser("status", help="Print the current rollout state.")
    status.add_argument("rollout_id")

    cancel = commands.add_parser("cancel", help="Request cancellation of a rollout.")
    cancel.add_argument("rollout_id")
    cancel.add_argument("--reason", default="operator request")
    return parser


async def _run(args: argparse.Namespace, service: RolloutService) -> int:
    if args.command == "submit":
        payload = json.loads(args.spec_file.read_text(encoding="utf-8"))
        rollout_id = await service.submit(payload)
        print(rollout_id)
        return 0
    if args.command == "status":
        state = await service.get_state(args.rollout_id)
        print(state.model_dump_json(indent=2))
        return 0
    cancelled = await service.cancel(args.rollout_id, reason=args.reason)
    print("cancellation requested" if cancelled else "rollout already terminal")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    store = JsonFileRolloutStateStore(args.state_dir or settings.state_dir)
    service = RolloutService(store)
    try:
        return asyncio.run(_run(args, service))
    except RolloutValidationError as exc:
        print(f"{exc}", file=sys.stderr)
        for error in exc.errors:
            print(f"  {error}", file=sys.stderr)
        return 2
    except (RolloutNotFoundError, RolloutExistsError, AdapterError) as exc:
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
