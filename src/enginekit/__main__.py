#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command-line entry point.

    python -m enginekit probe         # detected hardware as JSON
    python -m enginekit candidates    # compute backends that would be tried
    python -m enginekit tiers         # throughput -> model tier table
    python -m enginekit recommend     # quick model pick from RAM/VRAM/cores
    python -m enginekit models        # installed model files
    python -m enginekit setup --yes   # full setup, then serve until Ctrl+C
"""

import argparse
import asyncio
import json
import logging
import sys

from .engine import recommend_from_profile
from .exceptions import EngineKitError
from .hardware import enumerate_candidates, probe_hardware
from .kit import create_engine_kit
from .models import tier_table
from .orchestrator import SetupPhase

logger = logging.getLogger("enginekit")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_progress(progress) -> None:
    if progress is None:
        return
    done = progress.written_bytes / (1024 ** 2)
    if progress.total_bytes:
        total = progress.total_bytes / (1024 ** 2)
        line = f"{progress.label}: {done:.1f}/{total:.1f} MB"
    else:
        line = f"{progress.label}: {done:.1f} MB"
    if progress.speed_bytes_per_sec:
        line += f" ({progress.speed_bytes_per_sec / (1024 ** 2):.1f} MB/s)"
    print(f"\r{line}", end="", file=sys.stderr, flush=True)


async def _setup(args) -> int:
    kit = create_engine_kit()
    orchestrator = kit.orchestrator
    kit.progress.subscribe(_print_progress)
    try:
        session = await orchestrator.run()
        if session.phase is not SetupPhase.SELECTING:
            print(f"\nSetup failed: {session.error}", file=sys.stderr)
            return 1

        print()
        for entry in session.entries:
            print(f"  {entry.candidate.label:<12} {entry.tokens_per_second:8.1f} tok/s  tier {entry.tier}")
        print(f"Recommended model: {session.recommended_model_id}")

        if not args.yes and args.model is None and args.tier is None:
            answer = input("Install and start the recommended model? [Y/n] ").strip().lower()
            if answer not in ("", "y", "yes"):
                await orchestrator.cancel()
                return 0

        session = await orchestrator.confirm(model_id=args.model, tier=args.tier)
        if session.phase is not SetupPhase.DONE:
            print(f"\nSetup failed during {session.error_phase}: {session.error}", file=sys.stderr)
            return 1

        status = kit.service.status()
        print(f"\nServing {status.running_model_id} at {status.base_url} (Ctrl+C to stop)")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            pass
        return 0
    finally:
        kit.progress.unsubscribe()
        await kit.service.stop()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="enginekit", description="Local llama.cpp engine setup")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("probe", help="Print the detected hardware profile")
    sub.add_parser("candidates", help="Print the compute backends that would be benchmarked")
    sub.add_parser("tiers", help="Print the throughput to model tier table")
    recommend = sub.add_parser("recommend", help="Recommend a model from hardware resources, without benchmarking")
    recommend.add_argument("--tier", default=None, help="Pin the tier (0-5) or 'auto'")
    recommend.add_argument("--compute", default=None, choices=["cpu", "gpu", "hybrid"], help="Pin the compute mode")
    sub.add_parser("models", help="List installed model files")

    setup = sub.add_parser("setup", help="Benchmark, install and start the best engine")
    setup.add_argument("--yes", action="store_true", help="Accept the recommended model without asking")
    choice = setup.add_mutually_exclusive_group()
    choice.add_argument("--model", help="Model id to install instead of the recommendation")
    choice.add_argument("--tier", type=int, help="Model tier to install instead of the recommendation")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "probe":
            _print_json(probe_hardware().model_dump())
        elif args.command == "candidates":
            _print_json([c.model_dump() for c in enumerate_candidates(probe_hardware())])
        elif args.command == "tiers":
            _print_json([row.model_dump() for row in tier_table()])
        elif args.command == "recommend":
            rec = recommend_from_profile(probe_hardware(), preferred_tier=args.tier, preferred_compute=args.compute)
            _print_json({**rec.model_dump(), "runtime_key": rec.config.runtime_key})
        elif args.command == "models":
            _print_json([m.model_dump() for m in create_engine_kit().models.list_installed_models()])
        elif args.command == "setup":
            return asyncio.run(_setup(args))
    except KeyboardInterrupt:
        return 130
    except EngineKitError as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
