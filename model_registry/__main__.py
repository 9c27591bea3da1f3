"""
Model registry CLI.

  python -m model_registry --run                 # one research cycle
  python -m model_registry --run --providers openai,anthropic
  python -m model_registry --list-providers
  python -m model_registry --stats
  python -m model_registry --discoveries 10
  python -m model_registry --show-registry
  python -m model_registry --snapshot 1850000
  python -m model_registry --timeline
  python -m model_registry --init-schema

Exit codes: 0 ok, 1 storage unreachable, 2 rate limited, 3 snapshot rejected,
4 every source failed.
"""

from __future__ import annotations

import argparse
import asyncio
import fcntl
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import Settings
from .errors import AdmissionDenied, ConnectivityError, InvalidEcosystemData
from .records import CycleStatus
from .researcher import ModelResearcher
from .sources import PROVIDER_REGISTRY, build_ecosystem_source, build_sources
from .storage import RemoteBackend
from .util import format_timestamp, mkdirp

log = logging.getLogger("model_registry")

EXIT_CONNECTIVITY = 1
EXIT_RATE_LIMITED = 2
EXIT_INVALID_SNAPSHOT = 3
EXIT_CYCLE_FAILED = 4

_lock_fd = None  # held open for the process lifetime


def acquire_instance_lock(state_dir: Path) -> bool:
    """Exclusive, non-blocking lock so two research runs never overlap."""
    global _lock_fd
    mkdirp(state_dir)
    _lock_fd = open(state_dir / ".registry.lock", "w")
    try:
        fcntl.flock(_lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except OSError:
        _lock_fd.close()
        _lock_fd = None
        return False


def print_providers() -> None:
    print("Configured providers:")
    for name, (env_var, _) in PROVIDER_REGISTRY.items():
        if env_var is None:
            status = "local (probed at run time)"
        elif os.environ.get(env_var, "").strip():
            status = "key set"
        else:
            status = f"{env_var} not set"
        print(f"  {name:12s} {status}")


async def _show_registry(researcher: ModelResearcher) -> None:
    models = await researcher.get_all_models()
    if not models:
        print("Registry is empty. Run a research cycle first.")
        return
    print(f"Model registry ({len(models)} models):\n")
    print(f"  {'Provider/Model':<50s} {'Context':>10s} {'Cost':>8s}  Capabilities")
    print(f"  {'-'*50} {'-'*10} {'-'*8}  {'-'*24}")
    for m in sorted(models, key=lambda r: r.key):
        ctx = m.metadata.get("context_length")
        cost = m.metadata.get("cost_class") or "-"
        caps = ",".join(sorted(m.capabilities)) or "-"
        print(f"  {m.key:<50s} {str(ctx) if ctx else '-':>10s} {cost:>8s}  {caps}")


async def open_storage(researcher: ModelResearcher, attempts: int) -> None:
    """Load storage, retrying transient failures until the controller degrades."""
    for attempt in range(1, attempts + 1):
        try:
            await researcher.backend.load()
            return
        except ConnectivityError as e:
            if attempt == attempts:
                raise
            log.warning("Storage not ready (attempt %d/%d): %s", attempt, attempts, e)
            await asyncio.sleep(1)


async def _dispatch(args: argparse.Namespace, settings: Settings,
                    requested: Optional[List[str]]) -> int:
    if args.init_schema:
        backend = RemoteBackend(settings.postgres)
        try:
            await backend.create_schema()
        finally:
            await backend.close()
        print("Schema ready.")
        return 0

    sources = build_sources(requested) if args.run else []
    ecosystem = build_ecosystem_source(settings.ecosystem_total_models)
    researcher = ModelResearcher.from_settings(settings, sources, ecosystem_source=ecosystem)
    try:
        await open_storage(researcher, settings.degrade_after_failures)
        if args.run:
            if not sources:
                log.warning("No providers configured; the cycle will observe nothing")
            result = await researcher.run_cycle(args.identity)
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.status is CycleStatus.COMPLETED else EXIT_CYCLE_FAILED

        if args.stats:
            print(json.dumps((await researcher.get_stats()).to_dict(), indent=2))
        if args.discoveries is not None:
            events = await researcher.get_recent_discoveries(args.discoveries)
            if not events:
                print("No discoveries recorded.")
            for e in events:
                print(f"  {format_timestamp(e.observed_at)}  {e.kind.value:<8s} "
                      f"{e.model_key:<50s} significance={e.significance}")
        if args.show_registry:
            await _show_registry(researcher)
        if args.snapshot is not None:
            snapshot = await researcher.capture_snapshot(total_models=args.snapshot)
            print(json.dumps(snapshot.to_dict(), indent=2))
        if args.timeline:
            print(json.dumps(await researcher.timeline(), indent=2))
        return 0
    finally:
        await researcher.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="AI model registry and discovery tracker")
    parser.add_argument("--run", action="store_true",
                        help="Run one research cycle against the configured providers")
    parser.add_argument("--providers", type=str, default=None,
                        help="Comma-separated list of providers to poll (default: all configured)")
    parser.add_argument("--list-providers", action="store_true",
                        help="Show which providers have keys configured and exit")
    parser.add_argument("--identity", type=str, default="cli",
                        help="Caller identity used for rate limiting (default: cli)")
    parser.add_argument("--stats", action="store_true",
                        help="Print registry statistics")
    parser.add_argument("--discoveries", type=int, metavar="N", default=None,
                        help="Print the N most recent discoveries")
    parser.add_argument("--show-registry", action="store_true",
                        help="Print every curated model")
    parser.add_argument("--snapshot", type=int, metavar="TOTAL", default=None,
                        help="Capture an ecosystem snapshot with the given catalog total")
    parser.add_argument("--timeline", action="store_true",
                        help="Print the ecosystem growth timeline")
    parser.add_argument("--init-schema", action="store_true",
                        help="Create the PostgreSQL tables and exit")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    if args.list_providers:
        print_providers()
        return 0

    if args.run and not acquire_instance_lock(settings.state_dir):
        log.info("Another research run is in progress; skipping")
        return 0

    requested = [p.strip() for p in args.providers.split(",")] if args.providers else None
    try:
        return asyncio.run(_dispatch(args, settings, requested))
    except ConnectivityError as e:
        log.error("Storage unavailable: %s", e)
        return EXIT_CONNECTIVITY
    except AdmissionDenied as e:
        log.error("%s", e)
        return EXIT_RATE_LIMITED
    except InvalidEcosystemData as e:
        log.error("%s", e)
        return EXIT_INVALID_SNAPSHOT


if __name__ == "__main__":
    sys.exit(main())
