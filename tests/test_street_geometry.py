"""Unit tests for street_geometry.py — segment merge and the query fallback chain.

Tests cover: endpoint joins in all four orientations, greedy merge order,
longest-cluster selection, input immutability, Overpass query building,
the sequential strategy fallback, trace recording, and nearby streets.
"""

import pytest

from bbp_trace import TraceContext, set_trace
from overpass_http import OverpassQueryError, OverpassRateLimitError
from street_geometry import (
    DEFAULT_BBOX,
    MERGE_TOLERANCE_DEG,
    StreetGeometry,
    build_street_geometry,
    build_street_queries,
    compute_bounds,
    escape_overpass_string,
    fetch_street_geometry,
    fetch_street_segments,
    find_nearby_streets,
    merge_segments,
)


def _way(way_id, coords, name="Via Roma", highway="residential"):
    return {
        "type": "way",
        "id": way_id,
        "tags": {"name": name, "highway": highway},
        "geometry": [{"lat": lat, "lon": lon} for lon, lat in coords],
    }


def _response(*ways):
    return {"elements": list(ways)}


# =========================================================================
# Merge: basic behavior
# =========================================================================

class TestMergeSegments:
    def test_chains_adjacent_segments_and_keeps_longest(self):
        a = [[0, 0], [1, 1]]
        b = [[1, 1], [2, 2]]
        c = [[5, 5], [6, 6]]

        assert merge_segments([a, b, c]) == [(0, 0), (1, 1), (2, 2)]

    def test_empty_input(self):
        assert merge_segments([]) is None

    def test_only_short_segments(self):
        assert merge_segments([[[0, 0]], [[1, 1]]]) is None

    def test_short_segments_ignored(self):
        assert merge_segments([[[0, 0]], [[1, 1], [2, 2]]]) == [(1, 1), (2, 2)]

    def test_single_segment_returned_unchanged(self):
        seg = [(9.0, 45.0), (9.1, 45.1), (9.2, 45.2)]
        assert merge_segments([seg]) == seg

    def test_inputs_not_mutated(self):
        a = [[0, 0], [1, 1]]
        b = [[1, 1], [2, 2]]
        merge_segments([a, b])

        assert a == [[0, 0], [1, 1]]
        assert b == [[1, 1], [2, 2]]

    def test_result_at_least_two_points(self):
        result = merge_segments([[(0, 0), (0, 0.0001)]])
        assert len(result) >= 2

    def test_disjoint_segments_keep_longest(self):
        short = [(0, 0), (0, 0.01)]
        long = [(5, 5), (5, 5.01), (5, 5.02)]
        assert merge_segments([short, long]) == long

    def test_equal_length_disjoint_keeps_first(self):
        first = [(0, 0), (0, 0.01)]
        second = [(5, 5), (5, 5.01)]
        assert merge_segments([first, second]) == first


# =========================================================================
# Merge: orientations
# =========================================================================

class TestMergeOrientations:
    """c1 is the longer (first-sorted) chain; c2 attaches in each orientation."""

    c1 = [(0.0, 0.0), (0.01, 0.0), (0.02, 0.0)]

    def test_end_to_start_appends(self):
        c2 = [(0.02, 0.0), (0.03, 0.0)]
        assert merge_segments([self.c1, c2]) == [
            (0.0, 0.0), (0.01, 0.0), (0.02, 0.0), (0.03, 0.0),
        ]

    def test_end_to_end_appends_reversed(self):
        c2 = [(0.03, 0.0), (0.02, 0.0)]
        assert merge_segments([self.c1, c2]) == [
            (0.0, 0.0), (0.01, 0.0), (0.02, 0.0), (0.03, 0.0),
        ]

    def test_start_to_end_prepends(self):
        c2 = [(-0.01, 0.0), (0.0, 0.0)]
        assert merge_segments([self.c1, c2]) == [
            (-0.01, 0.0), (0.0, 0.0), (0.01, 0.0), (0.02, 0.0),
        ]

    def test_start_to_start_prepends_reversed(self):
        c2 = [(0.0, 0.0), (-0.01, 0.0)]
        assert merge_segments([self.c1, c2]) == [
            (-0.01, 0.0), (0.0, 0.0), (0.01, 0.0), (0.02, 0.0),
        ]

    def test_near_but_not_identical_endpoints_join(self):
        c2 = [(0.0205, 0.0), (0.03, 0.0)]
        result = merge_segments([self.c1, c2])

        assert len(result) == 4
        assert result[-1] == (0.03, 0.0)

    def test_endpoints_beyond_tolerance_stay_apart(self):
        c2 = [(0.02 + MERGE_TOLERANCE_DEG * 2, 0.0), (0.03, 0.0)]
        assert merge_segments([self.c1, c2]) == self.c1

    def test_out_of_order_fragments_chain_fully(self):
        a = [(0.0, 0.0), (0.01, 0.0), (0.02, 0.0)]
        b = [(0.04, 0.0), (0.03, 0.0)]
        c = [(0.02, 0.0), (0.03, 0.0)]
        assert merge_segments([a, b, c]) == [
            (0.0, 0.0), (0.01, 0.0), (0.02, 0.0), (0.03, 0.0), (0.04, 0.0),
        ]

    def test_lowest_index_wins_ambiguous_join(self):
        # Both b and c start at a's end; b comes first after sorting.
        a = [(0.0, 0.0), (0.01, 0.0), (0.02, 0.0)]
        b = [(0.02, 0.0), (0.03, 0.0)]
        c = [(0.02, 0.0), (0.02, 0.01)]
        result = merge_segments([a, b, c])

        assert result[:4] == [(0.0, 0.0), (0.01, 0.0), (0.02, 0.0), (0.03, 0.0)]


# =========================================================================
# Bounds and StreetGeometry
# =========================================================================

class TestStreetGeometry:
    def test_bounds(self):
        bounds = compute_bounds([(9.1, 45.5), (9.3, 45.4), (9.2, 45.6)])
        assert bounds.min_lon == 9.1
        assert bounds.max_lon == 9.3
        assert bounds.min_lat == 45.4
        assert bounds.max_lat == 45.6

    def test_build_returns_none_without_data(self):
        assert build_street_geometry("Via Roma", []) is None

    def test_to_dict_shape(self):
        geom = build_street_geometry("Via Roma", [[(9.0, 45.0), (9.1, 45.1)]])
        d = geom.to_dict()

        assert d["name"] == "Via Roma"
        assert d["coordinates"] == [[9.0, 45.0], [9.1, 45.1]]
        assert d["bounds"] == {"minLat": 45.0, "maxLat": 45.1, "minLon": 9.0, "maxLon": 9.1}


# =========================================================================
# Query building
# =========================================================================

class TestQueryBuilding:
    def test_escape_quotes_and_backslashes(self):
        assert escape_overpass_string('Via "Roma"') == 'Via \\"Roma\\"'
        assert escape_overpass_string("a\\b") == "a\\\\b"

    def test_escape_backslash_before_quote(self):
        assert escape_overpass_string('\\"') == '\\\\\\"'

    def test_five_strategies_in_order(self):
        keys = [s.key for s in build_street_queries("Via Roma")]
        assert keys == ["exact", "exact_qt", "highway", "partial", "broad"]

    def test_default_bbox_is_milan(self):
        q = build_street_queries("Via Roma")[0].query
        assert (
            f"[bbox:{DEFAULT_BBOX['min_lat']},{DEFAULT_BBOX['min_lon']},"
            f"{DEFAULT_BBOX['max_lat']},{DEFAULT_BBOX['max_lon']}]"
        ) in q

    def test_custom_bbox_and_timeout(self):
        bbox = {"min_lat": 1, "min_lon": 2, "max_lat": 3, "max_lon": 4}
        strategies = build_street_queries("X", bbox=bbox, timeout_s=10)

        assert strategies[0].query.startswith("[out:json][timeout:10][bbox:1,2,3,4];")
        assert all(s.timeout_s == 10 for s in strategies)

    def test_name_is_escaped_in_query(self):
        q = build_street_queries('Via "X"')[0].query
        assert '["name"="Via \\"X\\""]' in q

    def test_partial_strategies_use_regex_match(self):
        strategies = {s.key: s.query for s in build_street_queries("Roma")}
        assert '["name"~"Roma"]' in strategies["partial"]
        assert '["highway"]' in strategies["broad"]
        assert "out geom qt;" in strategies["exact_qt"]


# =========================================================================
# Fallback chain
# =========================================================================

class TestFetchFallback:
    def test_first_strategy_wins(self, fake_fetcher):
        fetcher = fake_fetcher([_response(_way(1, [(9.0, 45.0), (9.1, 45.1)]))])
        segments, key = fetch_street_segments("Via Roma", fetcher=fetcher)

        assert key == "exact"
        assert segments == [[(9.0, 45.0), (9.1, 45.1)]]
        assert len(fetcher.calls) == 1

    def test_errors_and_empty_results_fall_through(self, fake_fetcher):
        fetcher = fake_fetcher([
            OverpassRateLimitError("429"),
            {"elements": []},
            _response(_way(1, [(9.0, 45.0), (9.1, 45.1)])),
        ])
        segments, key = fetch_street_segments("Via Roma", fetcher=fetcher)

        assert key == "highway"
        assert len(fetcher.calls) == 3
        assert [c["caller"] for c in fetcher.calls] == [
            "street_geometry.exact",
            "street_geometry.exact_qt",
            "street_geometry.highway",
        ]

    def test_malformed_response_falls_through(self, fake_fetcher):
        fetcher = fake_fetcher([
            "<osm><broken",
            _response(_way(1, [(9.0, 45.0), (9.1, 45.1)])),
        ])
        _, key = fetch_street_segments("Via Roma", fetcher=fetcher)
        assert key == "exact_qt"

    def test_all_strategies_exhausted(self, fake_fetcher):
        fetcher = fake_fetcher([OverpassQueryError("504")] * 5)
        segments, key = fetch_street_segments("Via Roma", fetcher=fetcher)

        assert segments == []
        assert key is None
        assert len(fetcher.calls) == 5

    def test_strategy_timeout_passed_to_fetcher(self, fake_fetcher):
        fetcher = fake_fetcher([_response(_way(1, [(9.0, 45.0), (9.1, 45.1)]))])
        fetch_street_segments("Via Roma", fetcher=fetcher, timeout_s=12)
        assert fetcher.calls[0]["timeout"] == 12

    def test_unexpected_exceptions_propagate(self, fake_fetcher):
        fetcher = fake_fetcher([RuntimeError("bug")])
        with pytest.raises(RuntimeError):
            fetch_street_segments("Via Roma", fetcher=fetcher)


class TestFetchStreetGeometry:
    def test_merges_fragments(self, fake_fetcher):
        fetcher = fake_fetcher([_response(
            _way(1, [(9.0, 45.0), (9.001, 45.0)]),
            _way(2, [(9.002, 45.0), (9.001, 45.0)]),
        )])
        geom = fetch_street_geometry("Via Roma", fetcher=fetcher)

        assert isinstance(geom, StreetGeometry)
        assert geom.name == "Via Roma"
        assert geom.coordinates == [(9.0, 45.0), (9.001, 45.0), (9.002, 45.0)]
        assert geom.bounds.min_lon == 9.0
        assert geom.bounds.max_lon == 9.002

    def test_returns_none_when_nothing_found(self, fake_fetcher):
        fetcher = fake_fetcher([OverpassQueryError("boom")] * 5)
        assert fetch_street_geometry("Nowhere", fetcher=fetcher) is None

    def test_records_trace_stage(self, fake_fetcher):
        ctx = TraceContext(trace_id="t-1")
        set_trace(ctx)
        fetcher = fake_fetcher([_response(_way(1, [(9.0, 45.0), (9.1, 45.1)]))])

        fetch_street_geometry("Via Roma", fetcher=fetcher)

        assert [s.stage_name for s in ctx.stages] == ["street_geometry"]
        assert ctx.stages[0].result == "exact"

    def test_trace_stage_marks_missing_geometry(self, fake_fetcher):
        ctx = TraceContext(trace_id="t-2")
        set_trace(ctx)
        fetch_street_geometry("Nowhere", fetcher=fake_fetcher([{"elements": []}] * 5))

        assert ctx.stages[0].result == "none"

    def test_no_trace_is_fine(self, fake_fetcher):
        fetcher = fake_fetcher([_response(_way(1, [(9.0, 45.0), (9.1, 45.1)]))])
        assert fetch_street_geometry("Via Roma", fetcher=fetcher) is not None


# =========================================================================
# Nearby streets
# =========================================================================

class TestNearbyStreets:
    def test_unique_names_sorted_by_distance(self, fake_fetcher):
        lat, lon = 45.0, 9.0
        fetcher = fake_fetcher([_response(
            _way(1, [(9.0003, 45.0), (9.0004, 45.0)], name="Via Lontana", highway="primary"),
            _way(2, [(9.0, 45.0001), (9.0, 45.0002)], name="Via Vicina"),
            _way(3, [(9.0, 45.0001), (9.0, 45.0003)], name="Via Vicina"),
        )])
        streets = find_nearby_streets(lat, lon, radius_m=50, fetcher=fetcher)

        assert [s.name for s in streets] == ["Via Vicina", "Via Lontana"]
        assert streets[0].distance_m == 11
        assert streets[1].highway_type == "primary"
        assert fetcher.calls[0]["caller"] == "nearby_streets"
        assert "around:50,45.0,9.0" in fetcher.calls[0]["query"]

    def test_unnamed_ways_skipped(self, fake_fetcher):
        fetcher = fake_fetcher([_response(_way(1, [(9.0, 45.0), (9.1, 45.1)], name=None))])
        assert find_nearby_streets(45.0, 9.0, fetcher=fetcher) == []

    def test_overpass_failure_returns_empty(self, fake_fetcher):
        fetcher = fake_fetcher([OverpassRateLimitError("429")])
        assert find_nearby_streets(45.0, 9.0, fetcher=fetcher) == []
