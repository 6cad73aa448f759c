"""
Unit tests for agents/RouteAgent.py.

The Directions endpoint is faked with httpx.MockTransport.
"""
from unittest.mock import patch

import httpx
import pytest

from agents.RouteAgent import (Route, RouteFinder, decode_polyline, estimate_route,
                               format_distance, format_duration, haversine_meters)
from cache import MemoryCache
from conftest import run

# Google's documented example: (38.5, -120.2), (40.7, -120.95), (43.252, -126.453)
EXAMPLE_POLYLINE = "_p~iF~ps|U_ulLnnqC_mqNvxq`@"

ALFAMA = {"lat": 38.7115, "lng": -9.1300, "name": "Miradouro de Santa Luzia"}
BAIXA = {"lat": 38.7078, "lng": -9.1366, "name": "Praça do Comércio"}
CHIADO = {"lat": 38.7107, "lng": -9.1421, "name": "Café A Brasileira"}


def _directions(polyline=EXAMPLE_POLYLINE):
    return {
        "status": "OK",
        "routes": [{
            "legs": [
                {"start_address": "Largo Santa Luzia, Lisboa", "end_address": "Praça do Comércio, Lisboa",
                 "distance": {"text": "0.9 km", "value": 900}, "duration": {"text": "12 mins", "value": 720}},
                {"start_address": "Praça do Comércio, Lisboa", "end_address": "R. Garrett 120, Lisboa",
                 "distance": {"text": "0.7 km", "value": 700}, "duration": {"text": "10 mins", "value": 600}},
            ],
            "overview_polyline": {"points": polyline},
        }],
    }


def _finder(reply, seen=None, cache=None, api_key="test-key"):
    def handler(request: httpx.Request):
        if seen is not None:
            seen.append(dict(request.url.params))
        if isinstance(reply, Exception):
            raise reply
        return httpx.Response(200, json=reply)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RouteFinder(api_key=api_key, client=client, cache=cache)


class TestDecodePolyline:
    def test_documented_example(self):
        points = decode_polyline(EXAMPLE_POLYLINE)
        assert points == [
            [pytest.approx(-120.2), pytest.approx(38.5)],
            [pytest.approx(-120.95), pytest.approx(40.7)],
            [pytest.approx(-126.453), pytest.approx(43.252)],
        ]

    def test_empty(self):
        assert decode_polyline("") == []


class TestFormatting:
    def test_distance(self):
        assert format_distance(850) == "850 m"
        assert format_distance(1930) == "1.9 km"

    def test_duration(self):
        assert format_duration(20) == "1 mins"
        assert format_duration(720) == "12 mins"
        assert format_duration(5400) == "1 h 30 mins"

    def test_haversine(self):
        # Lisbon to Porto is roughly 274 km as the crow flies
        porto = {"lat": 41.1496, "lng": -8.6109}
        assert haversine_meters({"lat": 38.7223, "lng": -9.1393}, porto) == \
            pytest.approx(274000, rel=0.02)


class TestEstimateRoute:
    def test_straight_line_legs(self):
        route = estimate_route([ALFAMA, BAIXA, CHIADO])
        assert route.estimated is True
        assert len(route.legs) == 2
        assert route.legs[0].start_address == "Miradouro de Santa Luzia"
        assert route.legs[1].end_address == "Café A Brasileira"
        assert route.polyline[0] == [ALFAMA["lng"], ALFAMA["lat"]]
        assert route.total_distance_meters == sum(leg.distance_meters for leg in route.legs)

    def test_faster_modes_take_less_time(self):
        walking = estimate_route([ALFAMA, CHIADO], "walking")
        driving = estimate_route([ALFAMA, CHIADO], "driving")
        assert driving.total_duration_seconds < walking.total_duration_seconds

    def test_unnamed_points_get_labels(self):
        route = estimate_route([{"lat": 0.0, "lng": 0.0}, {"lat": 0.0, "lng": 0.01}])
        assert (route.legs[0].start_address, route.legs[0].end_address) == ("Point 1", "Point 2")


class TestRouteFinder:
    def test_provider_route(self):
        seen = []
        route = run(_finder(_directions(), seen).route([ALFAMA, BAIXA, CHIADO]))
        assert route.estimated is False
        assert route.total_distance_meters == 1600
        assert route.total_duration_seconds == 1320
        assert route.legs[0].duration_text == "12 mins"
        assert len(route.polyline) == 3
        params = seen[0]
        assert params["origin"] == "38.7115,-9.13"
        assert params["destination"] == "38.7107,-9.1421"
        assert params["waypoints"] == "38.7078,-9.1366"
        assert params["mode"] == "walking"

    def test_two_points_send_no_waypoints(self):
        seen = []
        run(_finder(_directions(), seen).route([ALFAMA, CHIADO], mode="transit"))
        assert "waypoints" not in seen[0]
        assert seen[0]["mode"] == "transit"

    def test_no_route_falls_back_to_estimate(self):
        route = run(_finder({"status": "ZERO_RESULTS", "routes": []}).route([ALFAMA, BAIXA]))
        assert route.estimated is True
        assert len(route.legs) == 1

    def test_transport_error_falls_back_to_estimate(self):
        route = run(_finder(httpx.ConnectError("down")).route([ALFAMA, BAIXA]))
        assert route.estimated is True

    def test_malformed_body_falls_back_to_estimate(self):
        route = run(_finder({"status": "OK", "routes": [{"legs": [{}]}]}).route([ALFAMA, BAIXA]))
        assert route.estimated is True

    def test_no_key_makes_no_request(self):
        seen = []
        with patch.dict("os.environ", {}, clear=True):
            route = run(_finder(_directions(), seen, api_key=None).route([ALFAMA, BAIXA]))
        assert seen == []
        assert route.estimated is True

    def test_needs_two_points(self):
        with pytest.raises(ValueError):
            run(_finder(_directions()).route([ALFAMA]))

    def test_provider_route_cached(self):
        seen = []
        finder = _finder(_directions(), seen, cache=MemoryCache())
        first = run(finder.route([ALFAMA, BAIXA, CHIADO]))
        second = run(finder.route([ALFAMA, BAIXA, CHIADO]))
        assert len(seen) == 1
        assert isinstance(second, Route)
        assert second == first

    def test_estimates_not_cached(self):
        seen = []
        cache = MemoryCache()
        finder = _finder({"status": "OVER_QUERY_LIMIT"}, seen, cache=cache)
        run(finder.route([ALFAMA, BAIXA]))
        run(finder.route([ALFAMA, BAIXA]))
        assert len(seen) == 2
        assert len(cache) == 0
