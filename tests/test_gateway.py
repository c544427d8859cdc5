from datetime import timedelta

from courtatlas.cache import cache_key
from courtatlas.config import GOOGLE_BUDGET_CAP_K, GOOGLE_FALLBACK_ENABLED_K, GOOGLE_PROVIDER
from courtatlas.gateway import EMPTY_REVERSE, CachedReverseGeocoder, parse_bias
from courtatlas.models import ReverseResult

from conftest import NOW, FakePlaces, place


def _enable_google(config, cap_cents=10000):
    config.set(GOOGLE_FALLBACK_ENABLED_K, True)
    config.set(GOOGLE_BUDGET_CAP_K, cap_cents)


def test_short_query_returns_empty_without_provider_calls(make_gateway):
    low, paid = FakePlaces(places=[place()]), FakePlaces(places=[place()])
    gw = make_gateway(low, paid)
    assert gw.text_search("ab", now=NOW) == {"places": []}
    assert gw.text_search_paged("  ab ", now=NOW) == {"places": []}
    assert low.calls == [] and paid.calls == []


def test_reverse_with_empty_cache_and_kill_switch_returns_placeholder(make_gateway):
    low, paid = FakePlaces(reverse=None), FakePlaces(reverse=ReverseResult("1 Main", "LA", "CA"))
    gw = make_gateway(low, paid)
    assert gw.reverse_geocode(34.0522, -118.2437, now=NOW) == {"address": "", "city": "", "state": ""}
    assert paid.calls == []


def test_low_cost_hit_is_cached_and_free(make_gateway, governor):
    low, paid = FakePlaces(places=[place()]), FakePlaces(places=[place("g1", provider="google")])
    gw = make_gateway(low, paid)
    first = gw.text_search("rucker park", {"lat": 40.8, "lng": -73.9}, now=NOW)
    second = gw.text_search("rucker park", {"lat": 40.8, "lng": -73.9}, now=NOW + timedelta(days=1))

    assert first == second
    assert first["places"][0]["provider"] == "geoapify"
    assert first["places"][0]["location"] == {"latitude": 40.83, "longitude": -73.94}
    assert len(low.calls) == 1
    assert paid.calls == []
    assert governor.spent_cents(now=NOW) == 0


def test_commercial_fallback_charges_once(make_gateway, config, governor):
    _enable_google(config)
    low, paid = FakePlaces(places=[]), FakePlaces(places=[place("g1", provider="google")])
    gw = make_gateway(low, paid)

    out = gw.text_search("pickleball austin", now=NOW)
    assert out["places"][0]["id"] == "g1"
    assert governor.spent_cents(now=NOW) == 2

    gw.text_search("pickleball austin", now=NOW)  # cached
    assert governor.spent_cents(now=NOW) == 2
    assert len(paid.calls) == 1


def test_exhausted_budget_skips_commercial(make_gateway, config, governor):
    _enable_google(config, cap_cents=2)
    governor.charge_calls(GOOGLE_PROVIDER, 1, now=NOW)
    low, paid = FakePlaces(places=None), FakePlaces(places=[place(provider="google")])
    gw = make_gateway(low, paid)
    assert gw.text_search("tennis dallas", now=NOW) == {"places": []}
    assert paid.calls == []


def test_empty_results_are_not_cached(make_gateway, cache):
    low, paid = FakePlaces(places=[]), FakePlaces(places=None)
    gw = make_gateway(low, paid)
    gw.text_search("nowhere courts", now=NOW)
    assert cache.get(cache_key("text", {"text": "nowhere courts", "bias": None}), now=NOW) is None
    low.places = [place()]
    assert gw.text_search("nowhere courts", now=NOW)["places"]


def test_paged_search_charges_pages_within_budget(make_gateway, config, governor):
    _enable_google(config, cap_cents=4)  # two calls left
    low = FakePlaces(places=None)
    paid = FakePlaces(places=[place("g1", provider="google"), place("g2", provider="google")], pages=5)
    gw = make_gateway(low, paid)

    out = gw.text_search_paged("hoops", page_all=True, max_pages=6, page_size=50, now=NOW)
    assert len(out["places"]) == 2
    assert paid.calls == [("paged", ("hoops", 2, 20))]
    assert governor.spent_cents(now=NOW) == 4


def test_reverse_commercial_fallback_and_cache_rounding(make_gateway, config, governor, cache, settings):
    _enable_google(config)
    low, paid = FakePlaces(reverse=ReverseResult()), FakePlaces(reverse=ReverseResult("1 Main St", "Los Angeles", "CA"))
    gw = make_gateway(low, paid)

    out = gw.reverse_geocode("34.052201", -118.243701, now=NOW)
    assert out == {"address": "1 Main St", "city": "Los Angeles", "state": "CA"}
    assert governor.spent_cents(now=NOW) == 2
    # within the rounding tolerance -> cache hit, no second charge
    assert gw.reverse_geocode(34.0522014, -118.2437014, now=NOW) == out
    assert len(paid.calls) == 1


def test_reverse_rejects_bad_coordinates(make_gateway):
    low = FakePlaces(reverse=ReverseResult("x", "y", "z"))
    gw = make_gateway(low, FakePlaces())
    assert gw.reverse_geocode("north", 10, now=NOW) == EMPTY_REVERSE
    assert gw.reverse_geocode(95, 10, now=NOW) == EMPTY_REVERSE
    assert low.calls == []


def test_place_details_is_commercial_only(make_gateway, config, governor):
    low, paid = FakePlaces(), FakePlaces(details=place("ChIJ1", "Venice Beach Courts", provider="google"))
    gw = make_gateway(low, paid)

    off = gw.place_details("ChIJ1", now=NOW)
    assert off == {"id": "ChIJ1", "displayName": "Unknown", "formattedAddress": "", "location": None, "provider": "google"}

    _enable_google(config)
    on = gw.place_details("ChIJ1", now=NOW)
    assert on["displayName"] == "Venice Beach Courts"
    assert governor.spent_cents(now=NOW) == 2
    assert low.calls == []


def test_place_details_failure_does_not_charge(make_gateway, config, governor):
    _enable_google(config)
    gw = make_gateway(FakePlaces(), FakePlaces(details=None))
    assert gw.place_details("nope", now=NOW)["displayName"] == "Unknown"
    assert governor.spent_cents(now=NOW) == 0


def test_internal_errors_fail_soft(make_gateway):
    class Exploding(FakePlaces):
        def text_search(self, text, bias=None):
            raise RuntimeError("provider exploded")

        def reverse_geocode(self, lat, lon):
            raise RuntimeError("provider exploded")

    gw = make_gateway(Exploding(), FakePlaces())
    assert gw.text_search("rucker park", now=NOW) == {"places": []}
    assert gw.reverse_geocode(1.0, 2.0, now=NOW) == EMPTY_REVERSE


def test_parse_bias_variants():
    assert parse_bias({"lat": 1, "lng": 2}) == (1.0, 2.0)
    assert parse_bias({"latitude": "1.5", "longitude": "2.5"}) == (1.5, 2.5)
    assert parse_bias([3, 4]) == (3.0, 4.0)
    assert parse_bias({"lat": 100, "lng": 0}) is None
    assert parse_bias("nope") is None


def test_cached_reverse_geocoder_never_uses_commercial(cache):
    low = FakePlaces(reverse=ReverseResult("1 Main", "Boise", "ID"))
    geo = CachedReverseGeocoder(cache, low)
    assert geo.reverse_geocode(43.6, -116.2).city == "Boise"
    assert geo.reverse_geocode(43.6, -116.2).city == "Boise"
    assert len(low.calls) == 1
