"""
Segment ingestion — Overpass way/node responses to coordinate chains.

Turns a raw map-data response into an ordered list of independent
segments, each a list of (lon, lat) pairs.  Two wire formats are
accepted:

  - Overpass JSON ([out:json]).  Ways from ``out geom`` carry an inline
    ``geometry`` list; ways from ``out body`` carry ``nodes`` ids that are
    resolved against the node elements of the same response.
  - Overpass XML (the interpreter's default).  Same two shapes, expressed
    as ``<nd lat lon/>`` or ``<nd ref/>`` children of ``<way>``.

Coordinate order is preserved as supplied.  A way whose inline geometry
has fewer than 2 usable points falls back to its node references.
Unresolved node references are dropped, and a way with fewer than 2
usable points is omitted.
Malformed or empty input yields an empty list, never an exception, so a
bad response from one query strategy does not stop the next one.
"""

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

Coordinate = Tuple[float, float]  # (lon, lat)
Segment = List[Coordinate]

MIN_SEGMENT_POINTS = 2


@dataclass
class RawWay:
    """A way as read from the response, before merging."""
    way_id: Optional[str]
    name: Optional[str]
    coordinates: Segment = field(default_factory=list)
    highway: Optional[str] = None


# =============================================================================
# JSON
# =============================================================================

def _to_coord(lat: Any, lon: Any) -> Optional[Coordinate]:
    try:
        return (float(lon), float(lat))
    except (TypeError, ValueError):
        return None


def _json_ways(data: Dict[str, Any]) -> List[RawWay]:
    elements = data.get("elements") or []
    if not isinstance(elements, list):
        return []

    # Pass 1: node id -> (lon, lat)
    node_coords: Dict[Any, Coordinate] = {}
    for element in elements:
        if not isinstance(element, dict) or element.get("type") != "node":
            continue
        coord = _to_coord(element.get("lat"), element.get("lon"))
        if coord is not None and "id" in element:
            node_coords[element["id"]] = coord

    # Pass 2: ways, inline geometry first, node refs when it is too short
    ways: List[RawWay] = []
    for element in elements:
        if not isinstance(element, dict) or element.get("type") != "way":
            continue
        tags = element.get("tags") or {}

        coords: Segment = []
        geometry = element.get("geometry")
        if isinstance(geometry, list):
            for point in geometry:
                if not isinstance(point, dict):
                    continue
                coord = _to_coord(point.get("lat"), point.get("lon"))
                if coord is not None:
                    coords.append(coord)
        if len(coords) < MIN_SEGMENT_POINTS:
            coords = []
            for node_id in element.get("nodes") or []:
                coord = node_coords.get(node_id)
                if coord is not None:
                    coords.append(coord)

        if len(coords) < MIN_SEGMENT_POINTS:
            continue

        way_id = element.get("id")
        ways.append(RawWay(
            way_id=str(way_id) if way_id is not None else None,
            name=tags.get("name"),
            coordinates=coords,
            highway=tags.get("highway"),
        ))

    return ways


def parse_overpass_json(data: Any) -> List[Segment]:
    """Parse an Overpass JSON response (dict) into segments."""
    return [w.coordinates for w in extract_ways(data)]


# =============================================================================
# XML
# =============================================================================

def _xml_ways(text: Union[str, bytes]) -> List[RawWay]:
    root = ET.fromstring(text)

    node_coords: Dict[str, Coordinate] = {}
    for node in root.iter("node"):
        node_id = node.get("id")
        coord = _to_coord(node.get("lat"), node.get("lon"))
        if node_id and coord is not None:
            node_coords[node_id] = coord

    ways: List[RawWay] = []
    for way in root.iter("way"):
        name = None
        highway = None
        for tag in way.findall("tag"):
            if tag.get("k") == "name":
                name = tag.get("v")
            elif tag.get("k") == "highway":
                highway = tag.get("v")

        inline: Segment = []
        refs: List[str] = []
        for nd in way.findall("nd"):
            if nd.get("lat") is not None and nd.get("lon") is not None:
                coord = _to_coord(nd.get("lat"), nd.get("lon"))
                if coord is not None:
                    inline.append(coord)
            elif nd.get("ref"):
                refs.append(nd.get("ref"))

        if len(inline) >= MIN_SEGMENT_POINTS:
            coords = inline
        else:
            coords = [node_coords[r] for r in refs if r in node_coords]

        if len(coords) < MIN_SEGMENT_POINTS:
            continue

        ways.append(RawWay(
            way_id=way.get("id"),
            name=name,
            coordinates=coords,
            highway=highway,
        ))

    return ways


def parse_overpass_xml(text: Union[str, bytes]) -> List[Segment]:
    """Parse an Overpass XML response into segments."""
    return [w.coordinates for w in extract_ways(text)]


# =============================================================================
# Dispatch
# =============================================================================

def extract_ways(payload: Any) -> List[RawWay]:
    """Parse any supported response shape into RawWay objects.

    ``dict`` is treated as Overpass JSON.  ``str``/``bytes`` are sniffed:
    a leading ``<`` means XML, anything else is decoded as JSON text.
    Returns an empty list on malformed input.
    """
    if payload is None:
        return []

    try:
        if isinstance(payload, dict):
            return _json_ways(payload)

        if isinstance(payload, (str, bytes)):
            text = payload.strip()
            if not text:
                return []
            first = text[:1]
            if first in ("<", b"<"):
                return _xml_ways(text)
            decoded = json.loads(text)
            if isinstance(decoded, dict):
                return _json_ways(decoded)
            return []
    except (ET.ParseError, json.JSONDecodeError, UnicodeDecodeError, TypeError, AttributeError) as e:
        logger.warning("Malformed Overpass response, treating as empty: %s", e)
        return []

    logger.warning("Unsupported Overpass payload type %s", type(payload).__name__)
    return []


def parse_overpass_response(payload: Any) -> List[Segment]:
    """Parse a JSON dict, JSON text or XML text response into segments."""
    return [w.coordinates for w in extract_ways(payload)]
