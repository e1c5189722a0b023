import sys
from importlib import reload
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.visitor_insights.exceptions import GeoLookupFailure  # noqa: E402
from backend.visitor_insights.geo import GeoCache, GeoLocation, GeoResolver  # noqa: E402


class FakeIpProvider:
    name = "fake"

    def __init__(self, locations=None, fail=False):
        self.locations = locations or {}
        self.fail = fail
        self.calls = []

    def lookup(self, ip):
        self.calls.append(ip)
        if self.fail:
            raise GeoLookupFailure(f"lookup failed for {ip}")
        return self.locations.get(ip)


class FakeGeocoder:
    def __init__(self, result=None, fail=False):
        self.result = result
        self.fail = fail
        self.queries = []

    def geocode(self, query):
        self.queries.append(query)
        if self.fail:
            raise GeoLookupFailure("geocoder unavailable")
        return self.result


@pytest.fixture
def db_module(tmp_path, monkeypatch):
    db_path = tmp_path / "ingestion.db"
    monkeypatch.setenv("INGESTION_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("INGESTION_GEOCODE_MIN_INTERVAL_SECONDS", "0")

    from backend.visitor_insights import database, geo

    reload(database)
    database.init_db()
    geo.reset_geo_state()

    yield database

    database.engine.dispose()


@pytest.fixture
def ip_provider():
    return FakeIpProvider(
        locations={
            "203.0.113.7": GeoLocation(lat=51.5, lng=-0.12, city="London", region="England", country="GB"),
        }
    )


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def resolver(db_module, ip_provider, geocoder):
    return GeoResolver(GeoCache(), ip_provider, geocoder)
