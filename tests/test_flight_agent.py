"""
Unit tests for agents/FlightAgent.py

The Amadeus SDK client is replaced with a MagicMock; segment resolution
runs against FakeFlightSearch from conftest.
"""
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from agents import FlightAgent as fa
from conftest import FakeFlightSearch, run
from FlightSegment import GENERIC_FLIGHTS_URL, FlightOffer, FlightSegment, SegmentRequest


def _raw_offer(offer_id="1", total="412.30", carrier="TP", origin="LIS", dest="CDG"):
    return {
        "id": offer_id,
        "price": {"currency": "EUR", "total": total, "grandTotal": total},
        "itineraries": [{
            "duration": "PT2H35M",
            "segments": [{
                "carrierCode": carrier, "number": "432",
                "departure": {"iataCode": origin, "at": "2026-06-01T07:05:00"},
                "arrival": {"iataCode": dest, "at": "2026-06-01T10:40:00"},
            }],
        }],
    }


def _offer(price, offer_id="x"):
    return FlightOffer(id=offer_id, total_amount=price, currency="USD", carrier="TP",
                       carrier_name="TAP", flight_number="TP1", origin="LIS",
                       destination="CDG", departing_at="2026-06-01T07:05:00",
                       arriving_at="2026-06-01T10:40:00")


# ---------------------------------------------------------------------------
# city_to_iata
# ---------------------------------------------------------------------------

class TestCityToIata:
    def test_exact(self):
        assert fa.city_to_iata("Lisbon") == "LIS"
        assert fa.city_to_iata("  new york ") == "JFK"

    def test_city_with_country(self):
        assert fa.city_to_iata("Paris, France") == "CDG"

    def test_city_with_postcode(self):
        assert fa.city_to_iata("Paris 75001") == "CDG"

    def test_longest_name_wins(self):
        assert fa.city_to_iata("Rio de Janeiro, Brazil") == "GIG"
        assert fa.city_to_iata("Tokyo Narita") == "NRT"

    def test_whole_word_inside_text(self):
        assert fa.city_to_iata("Old Town, Lisbon") == "LIS"

    def test_local_spellings(self):
        assert fa.city_to_iata("Lisboa") == "LIS"
        assert fa.city_to_iata("München") == "MUC"
        assert fa.city_to_iata("Roma, Italia") == "FCO"
        assert fa.city_to_iata("São Paulo") == "GRU"

    def test_unknown_is_none(self):
        assert fa.city_to_iata("Nowhereland") is None
        assert fa.city_to_iata("") is None
        assert fa.city_to_iata(None) is None

    def test_no_partial_word_match(self):
        # "la" and "rio" must not match inside other words
        assert fa.city_to_iata("Atlantis") is None
        assert fa.city_to_iata("Riodeville") is None


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

class TestNormalizeOffer:
    def test_fields(self):
        offer = fa.normalize_offer(_raw_offer(), {"TP": "TAP PORTUGAL"})
        assert offer.id == "1"
        assert offer.total_amount == pytest.approx(412.30)
        assert offer.currency == "EUR"
        assert offer.carrier_name == "TAP PORTUGAL"
        assert offer.flight_number == "TP432"
        assert offer.origin == "LIS"
        assert offer.destination == "CDG"
        assert offer.duration_minutes == 155

    def test_unknown_carrier_uses_code(self):
        assert fa.normalize_offer(_raw_offer(carrier="ZZ")).carrier_name == "ZZ"

    def test_offer_without_segments(self):
        assert fa.normalize_offer({"id": "9", "itineraries": []}) is None


class TestCheapestOffer:
    def test_sorts_by_price(self):
        offers = [_offer(300, "a"), _offer(120.5, "b"), _offer(180, "c")]
        assert fa.cheapest_offer(offers).id == "b"

    def test_empty(self):
        assert fa.cheapest_offer([]) is None


class TestDeepLink:
    def test_offer_link(self):
        link = fa.build_deep_link(_offer(100))
        assert link.startswith(GENERIC_FLIGHTS_URL)
        assert "LIS" in link and "CDG" in link and "2026-06-01" in link

    def test_no_offer_generic(self):
        assert fa.build_deep_link(None) == GENERIC_FLIGHTS_URL


class TestFlightSearch:
    def test_unconfigured_without_credentials(self):
        with patch.dict("os.environ", {}, clear=True):
            assert fa.FlightSearch().configured is False

    def test_configured_with_credentials(self):
        with patch.dict("os.environ", {"AMADEUS_CLIENT_ID": "id",
                                       "AMADEUS_CLIENT_SECRET": "secret"}, clear=True):
            assert fa.FlightSearch().configured is True

    def test_calls_amadeus_with_correct_params(self):
        client = MagicMock()
        resp = MagicMock()
        resp.data = [_raw_offer("1", "500"), _raw_offer("2", "300")]
        resp.result = {"dictionaries": {"carriers": {"TP": "TAP PORTUGAL"}}}
        client.shopping.flight_offers_search.get.return_value = resp

        offers = run(fa.FlightSearch(client=client).search("LIS", "CDG", "2026-06-01", 2))

        client.shopping.flight_offers_search.get.assert_called_once_with(
            originLocationCode="LIS",
            destinationLocationCode="CDG",
            departureDate="2026-06-01",
            adults=2,
            currencyCode="USD",
            max=10,
        )
        assert [o.id for o in offers] == ["1", "2"]
        assert offers[0].carrier_name == "TAP PORTUGAL"

    def test_response_error_propagates(self):
        from amadeus import ResponseError

        client = MagicMock()
        client.shopping.flight_offers_search.get.side_effect = ResponseError(MagicMock())
        with pytest.raises(ResponseError):
            run(fa.FlightSearch(client=client).search("BAD", "CDG", "2026-06-01"))


# ---------------------------------------------------------------------------
# resolve_segments
# ---------------------------------------------------------------------------

def _req(origin, dest, day="2026-06-01", **kw):
    return SegmentRequest(origin_city=origin, destination_city=dest, date=day, **kw)


class TestResolveSegments:
    def test_picks_cheapest_and_marks_available(self):
        search = FakeFlightSearch(prices={("LIS", "CDG"): [300.0, 99.0, 150.0]})
        [segment] = run(fa.resolve_segments([_req("Lisbon", "Paris, France")], search))
        assert segment.status == "available"
        assert segment.origin_iata == "LIS"
        assert segment.destination_iata == "CDG"
        assert segment.cheapest_offer.total_amount == 99.0
        assert segment.deep_link_url == f"https://flights.example/{segment.cheapest_offer.id}"

    def test_unknown_city_still_returned(self):
        search = FakeFlightSearch()
        [segment] = run(fa.resolve_segments([_req("Nowhereland", "Paris")], search))
        assert segment.status == "unavailable"
        assert segment.origin_iata is None
        assert segment.deep_link_url == GENERIC_FLIGHTS_URL
        assert search.calls == []

    def test_unconfigured_provider(self):
        search = FakeFlightSearch(configured=False)
        [segment] = run(fa.resolve_segments([_req("Lisbon", "Paris")], search))
        assert segment.status == "unavailable"
        assert segment.origin_iata == "LIS"
        assert search.calls == []

    def test_no_search_capability(self):
        [segment] = run(fa.resolve_segments([_req("Lisbon", "Paris")], None))
        assert segment.status == "unavailable"

    def test_iata_override(self):
        search = FakeFlightSearch()
        run(fa.resolve_segments([_req("Somewhere", "Paris", origin_iata="OPO")], search))
        assert search.calls[0][:2] == ("OPO", "CDG")

    def test_no_offers_is_unavailable(self):
        search = FakeFlightSearch(prices={("LIS", "CDG"): []})
        [segment] = run(fa.resolve_segments([_req("Lisbon", "Paris")], search))
        assert segment.status == "unavailable"
        assert segment.cheapest_offer is None

    def test_one_failing_segment_does_not_affect_siblings(self):
        search = FakeFlightSearch(fail_routes={("CDG", "FCO")})
        segments = [_req("Lisbon", "Paris"), _req("Paris", "Rome"), _req("Rome", "Lisbon")]
        result = run(fa.resolve_segments(segments, search))
        assert [s.status for s in result] == ["available", "unavailable", "available"]
        assert "timeout" in result[1].error

    @pytest.mark.parametrize("n_fail", [0, 1, 3, 5])
    def test_output_length_equals_input_length(self, n_fail):
        cities = ["Lisbon", "Paris", "Rome", "Berlin", "Madrid", "Nowhereland"]
        segments = [_req(cities[i], cities[(i + 1) % len(cities)]) for i in range(6)]
        failing = {(fa.city_to_iata(s.origin_city), fa.city_to_iata(s.destination_city))
                   for s in segments[:n_fail]}
        search = FakeFlightSearch(fail_routes=failing)
        result = run(fa.resolve_segments(segments, search, concurrency=2))
        assert len(result) == len(segments)
        assert [s.origin_city for s in result] == [s.origin_city for s in segments]

    def test_unexpected_error_becomes_unavailable(self):
        with patch.object(fa, "_resolve_one", side_effect=ValueError("bad segment")):
            result = run(fa.resolve_segments([_req("Lisbon", "Paris")], FakeFlightSearch()))
        assert len(result) == 1
        assert result[0].status == "unavailable"
        assert result[0].deep_link_url == GENERIC_FLIGHTS_URL


# ---------------------------------------------------------------------------
# Segment suggestions
# ---------------------------------------------------------------------------

def _loc(address, day, lat=38.7):
    return {"name": "x", "coordinates": {"lat": lat, "lng": -9.1} if lat is not None else None,
            "enrichment": {"formatted_address": address, "day": day}}


class TestExtractCity:
    def test_postcode_stripped(self):
        assert fa.extract_city("5 Av. Anatole France, 75007 Paris, France") == "Paris"

    def test_single_segment(self):
        assert fa.extract_city("Lisbon") == "Lisbon"

    def test_portuguese_postcode(self):
        assert fa.extract_city("R. das Flores 103, 4050-265 Porto, Portugal") == "Porto"


class TestCitySequence:
    def test_ordered_by_day_and_collapsed(self):
        locations = [
            _loc("Rua A, 1100 Lisbon, Portugal", 2),
            _loc("Rua B, 1100 Lisbon, Portugal", 1),
            _loc("Rua C, 75001 Paris, France", 3),
            _loc("Rua D, 1100 Lisbon, Portugal", 4),
        ]
        assert fa.city_sequence(locations) == ["Lisbon", "Paris"]

    def test_skips_locations_without_coordinates(self):
        locations = [_loc("Rua A, 1100 Lisbon, Portugal", 1),
                     _loc("Via B, 00100 Rome, Italy", 2, lat=None)]
        assert fa.city_sequence(locations) == ["Lisbon"]


class TestSuggestSegments:
    def test_legs_plus_return(self):
        locations = [_loc("A, 1100 Lisbon, Portugal", 1), _loc("B, 75001 Paris, France", 2),
                     _loc("C, 00100 Rome, Italy", 3)]
        segments = fa.suggest_segments(locations, start_date=date(2026, 6, 1))
        assert [(s.origin_city, s.destination_city) for s in segments] == [
            ("Lisbon", "Paris"), ("Paris", "Rome"), ("Rome", "Lisbon"),
        ]
        assert [s.date for s in segments] == ["2026-06-01", "2026-06-04", "2026-06-07"]
        assert all(s.status == "suggested" for s in segments)
        assert segments[0].origin_iata == "LIS"

    def test_single_city_no_segments(self):
        assert fa.suggest_segments([_loc("A, 1100 Lisbon, Portugal", 1)]) == []

    def test_default_start_is_thirty_days_out(self):
        locations = [_loc("A, 1100 Lisbon, Portugal", 1), _loc("B, 75001 Paris, France", 2)]
        segments = fa.suggest_segments(locations)
        first = date.fromisoformat(segments[0].date)
        assert (first - date.today()).days == 30

    def test_segment_round_trips_through_dict(self):
        segment = FlightSegment(origin_city="Lisbon", destination_city="Paris", date="2026-06-01",
                                cheapest_offer=_offer(99))
        data = segment.to_dict()
        assert data["cheapest_offer"]["total_amount"] == 99
        assert FlightSegment.from_dict(data) == segment

    def test_local_city_names_get_airports(self):
        locations = [_loc("Av. Alm. Reis 1, 1150-007 Lisboa, Portugal", 1),
                     _loc("Via del Corso 12, 00186 Roma RM, Italy", 2)]
        segments = fa.suggest_segments(locations, start_date=date(2026, 6, 1))
        assert segments[0].origin_city == "Lisboa"
        assert (segments[0].origin_iata, segments[0].destination_iata) == ("LIS", "FCO")
