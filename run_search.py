#!/usr/bin/env python3
"""
CLI for the physician directory engine.

Usage:
    python run_search.py radius 43.6532 -79.3832 --radius 2
    python run_search.py postal "M5H 2N"
    python run_search.py enrich --limit 20
    python run_search.py stats
"""

import argparse
import json
import logging
import sys
import time

from doctor_finder.config import Config
from doctor_finder.engine import DirectoryEngine


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def add_filter_args(parser: argparse.ArgumentParser):
    parser.add_argument("--doctor-type", default="Any", choices=["Any", "Family Doctor", "Specialist"])
    parser.add_argument("--specialist-type", default=None, help="Specialty name, e.g. Cardiology")
    parser.add_argument("--language", default="ENGLISH")
    parser.add_argument("--include-inactive", action="store_true")


def radius_search(engine: DirectoryEngine, args):
    result = engine.radius_search(
        args.lat, args.lng, args.radius,
        doctor_type=args.doctor_type, specialist_type=args.specialist_type,
        language=args.language, include_inactive=args.include_inactive,
        use_cache=not args.no_cache,
    )
    print(json.dumps(result.to_dict(), indent=2))


def postal_search(engine: DirectoryEngine, args):
    result = engine.search_postal_code(
        args.code,
        doctor_type=args.doctor_type, specialist_type=args.specialist_type,
        language=args.language, include_inactive=args.include_inactive,
    )
    print(json.dumps(result.to_dict(), indent=2))


def enrichment_pass(engine: DirectoryEngine, args):
    """Fetch the demographic field for stored records that still lack it."""
    numbers = args.numbers or engine.cache.pending_enrichment(limit=args.limit)
    if not numbers:
        print("Nothing pending enrichment")
        return
    results = engine.fetch_enrichment(numbers)
    print(json.dumps([r.to_dict() for r in results], indent=2))


def main():
    parser = argparse.ArgumentParser(description="Physician directory engine")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--db", default=None, help="SQLite database path")
    parser.add_argument("--concurrency", type=int, default=None, help="Registry queries in flight")
    sub = parser.add_subparsers(dest="command")

    p_radius = sub.add_parser("radius", help="Physicians within a radius of a point")
    p_radius.add_argument("lat", type=float)
    p_radius.add_argument("lng", type=float)
    p_radius.add_argument("--radius", type=float, default=5.0, help="Radius in km")
    p_radius.add_argument("--no-cache", action="store_true", help="Query the registry for every area")
    add_filter_args(p_radius)

    p_postal = sub.add_parser("postal", help="Physicians under one postal prefix")
    p_postal.add_argument("code")
    add_filter_args(p_postal)

    p_enrich = sub.add_parser("enrich", help="Run an enrichment pass")
    p_enrich.add_argument("numbers", nargs="*", help="Registration numbers (default: pending records)")
    p_enrich.add_argument("--limit", type=int, default=50)

    sub.add_parser("stats", help="Store statistics")

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = Config.from_env()
    if args.db:
        config.db_path = args.db
    if args.concurrency:
        config.fanout_concurrency = args.concurrency

    print("Loading engine...", file=sys.stderr)
    t0 = time.time()
    # The CLI process exits right after; enrichment runs only on request
    engine = DirectoryEngine(config, background_enrichment=False)
    print(f"Engine ready in {time.time() - t0:.1f}s", file=sys.stderr)

    try:
        if args.command == "radius":
            radius_search(engine, args)
        elif args.command == "postal":
            postal_search(engine, args)
        elif args.command == "enrich":
            enrichment_pass(engine, args)
        elif args.command == "stats":
            print(json.dumps(engine.stats().to_dict(), indent=2))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
