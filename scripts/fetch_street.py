#!/usr/bin/env python3
"""
Fetch and merge the canonical geometry of a street from Overpass.

Prints the merged geometry as JSON.  With two --point options, also
prints the distance along the street between them.

Usage:
  python scripts/fetch_street.py "Via Torino"
  python scripts/fetch_street.py "Via Torino" --bbox 45.45,9.17,45.47,9.19
  python scripts/fetch_street.py "Via Torino" --point 9.180,45.460 --point 9.184,45.462
"""

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path

from dotenv import load_dotenv

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from bbp_trace import TraceContext, clear_trace, set_trace  # noqa: E402
from path_query import path_distance_m, snap_to_path  # noqa: E402
from street_geometry import MERGE_TOLERANCE_DEG, fetch_street_geometry  # noqa: E402


def _parse_pair(value):
    try:
        a, b = (float(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected two comma-separated numbers, got {value!r}")
    return a, b


def _parse_bbox(value):
    try:
        min_lat, min_lon, max_lat, max_lon = (float(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected min_lat,min_lon,max_lat,max_lon, got {value!r}"
        )
    return {"min_lat": min_lat, "min_lon": min_lon, "max_lat": max_lat, "max_lon": max_lon}


def main(argv=None):
    load_dotenv()

    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("name", help="street name as tagged in OSM")
    parser.add_argument("--bbox", type=_parse_bbox, default=None,
                        help="min_lat,min_lon,max_lat,max_lon (default: Milan)")
    parser.add_argument("--tolerance", type=float, default=MERGE_TOLERANCE_DEG,
                        help="endpoint merge tolerance in degrees")
    parser.add_argument("--point", type=_parse_pair, action="append", default=[],
                        metavar="LON,LAT", help="query point (give exactly two)")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.point and len(args.point) != 2:
        parser.error("--point must be given exactly twice")

    ctx = TraceContext(trace_id=uuid.uuid4().hex[:8])
    set_trace(ctx)
    try:
        geometry = fetch_street_geometry(args.name, bbox=args.bbox, tolerance=args.tolerance)
    finally:
        ctx.log_summary()
        clear_trace()

    if geometry is None:
        print(f"No geometry found for {args.name!r}", file=sys.stderr)
        return 1

    output = geometry.to_dict()
    if args.point:
        a, b = args.point
        output["query"] = {
            "start_snapped": list(snap_to_path(a, geometry)),
            "end_snapped": list(snap_to_path(b, geometry)),
            "distance_m": round(path_distance_m(a, b, geometry), 1),
        }
    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
