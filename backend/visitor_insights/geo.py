"""Geolocation of visitors from event coordinates, postal addresses and IPs."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional

import requests
from sqlalchemy.exc import SQLAlchemyError

from . import config, database, storage
from .exceptions import GeoLookupFailure

if TYPE_CHECKING:
    from .normalizer import CanonicalEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass
class GeoLocation:
    lat: Optional[float] = None
    lng: Optional[float] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass(frozen=True)
class AddressQuery:
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None

    @property
    def has_components(self) -> bool:
        # Country alone is too coarse to place a visitor on a map.
        return any((self.address, self.city, self.state, self.zip))

    def to_query_string(self) -> str:
        parts = (self.address, self.city, self.state, self.zip, self.country)
        return ", ".join(part for part in parts if part)


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if number != number:
        return None
    return number


def parse_coordinates(value: Any) -> Optional[Coordinates]:
    """Accept ``{"lat": .., "lng": ..}`` or ``"lat,lng"``; anything else is None."""
    if value is None:
        return None
    if isinstance(value, dict):
        lat = _to_float(value.get("lat"))
        lng = _to_float(value.get("lng"))
    elif isinstance(value, str):
        parts = value.split(",")
        if len(parts) != 2:
            return None
        lat = _to_float(parts[0])
        lng = _to_float(parts[1])
    else:
        return None
    if lat is None or lng is None:
        return None
    return Coordinates(lat=lat, lng=lng)


class MinIntervalRateLimiter:
    """Spaces calls at least ``min_interval`` seconds apart across all threads.

    Callers that arrive early block until their slot; nothing is dropped.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = threading.Lock()

    def wait(self) -> float:
        """Block until the next call may proceed and return the time spent waiting."""
        with self._lock:
            waited = 0.0
            now = self._clock()
            if self._last_call is not None:
                remaining = self._min_interval - (now - self._last_call)
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
                    now = self._clock()
            self._last_call = now
            return waited


class ThreadLocalHttp:
    """Hands each thread its own ``requests.Session`` behind a single ``get``."""

    def __init__(self, factory: Callable[[], requests.Session] = requests.Session) -> None:
        self._factory = factory
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._factory()
            self._local.session = session
        return session

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.session.get(url, **kwargs)


def _get_json(
    http: requests.Session,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float,
) -> Any:
    try:
        response = http.get(url, params=params, headers=headers, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except requests.RequestException as exc:
        raise GeoLookupFailure(f"Request to {url} failed: {exc}") from exc
    except ValueError as exc:
        raise GeoLookupFailure(f"Malformed response from {url}") from exc


class IpInfoProvider:
    name = "ipinfo"

    def __init__(self, http: requests.Session, api_key: Optional[str] = None, timeout: float = 5.0) -> None:
        self._http = http
        self._api_key = api_key
        self._timeout = timeout

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        params = {"token": self._api_key} if self._api_key else None
        data = _get_json(self._http, f"https://ipinfo.io/{ip}/json", params=params, timeout=self._timeout)
        if not isinstance(data, dict):
            raise GeoLookupFailure(f"ipinfo returned {type(data).__name__} for {ip}")
        coordinates = parse_coordinates(data.get("loc"))
        if coordinates is None:
            return None
        return GeoLocation(
            lat=coordinates.lat,
            lng=coordinates.lng,
            city=data.get("city") or None,
            region=data.get("region") or None,
            country=data.get("country") or None,
        )


class IpApiProvider:
    name = "ipapi"

    def __init__(self, http: requests.Session, api_key: Optional[str] = None, timeout: float = 5.0) -> None:
        self._http = http
        self._api_key = api_key
        self._timeout = timeout

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        params = {"key": self._api_key} if self._api_key else None
        data = _get_json(self._http, f"https://ipapi.co/{ip}/json/", params=params, timeout=self._timeout)
        if not isinstance(data, dict):
            raise GeoLookupFailure(f"ipapi returned {type(data).__name__} for {ip}")
        lat = _to_float(data.get("latitude"))
        lng = _to_float(data.get("longitude"))
        if lat is None or lng is None:
            return None
        return GeoLocation(
            lat=lat,
            lng=lng,
            city=data.get("city") or None,
            region=data.get("region") or None,
            country=data.get("country_name") or None,
        )


IP_PROVIDERS = {
    IpInfoProvider.name: IpInfoProvider,
    IpApiProvider.name: IpApiProvider,
}


def build_ip_provider(name: str, http: requests.Session, api_key: Optional[str] = None, timeout: float = 5.0):
    try:
        provider_cls = IP_PROVIDERS[name]
    except KeyError as exc:
        raise ValueError(f"Unknown geo provider {name!r}; expected one of {sorted(IP_PROVIDERS)}") from exc
    return provider_cls(http, api_key=api_key, timeout=timeout)


class AddressGeocoder:
    """Free-text address search against a Nominatim-compatible endpoint."""

    def __init__(
        self,
        http: requests.Session,
        rate_limiter: MinIntervalRateLimiter,
        url: str = config.DEFAULT_GEOCODE_URL,
        user_agent: str = config.DEFAULT_GEOCODE_USER_AGENT,
        timeout: float = 5.0,
    ) -> None:
        self._http = http
        self._rate_limiter = rate_limiter
        self._url = url
        self._user_agent = user_agent
        self._timeout = timeout

    def geocode(self, query: AddressQuery) -> Optional[GeoLocation]:
        text = query.to_query_string()
        if not text:
            return None

        self._rate_limiter.wait()
        data = _get_json(
            self._http,
            self._url,
            params={"format": "json", "q": text, "limit": 1, "addressdetails": 1},
            headers={"User-Agent": self._user_agent},
            timeout=self._timeout,
        )
        if not isinstance(data, list):
            raise GeoLookupFailure(f"Geocoder returned {type(data).__name__} for {text!r}")
        if not data:
            return None

        result = data[0]
        if not isinstance(result, dict):
            raise GeoLookupFailure(f"Geocoder returned a malformed result for {text!r}")
        lat = _to_float(result.get("lat"))
        lng = _to_float(result.get("lon"))
        if lat is None or lng is None:
            return None
        address = result.get("address")
        if not isinstance(address, dict):
            address = {}
        return GeoLocation(
            lat=lat,
            lng=lng,
            city=address.get("city") or address.get("town") or address.get("village"),
            region=address.get("state"),
            country=address.get("country"),
        )


class GeoCache:
    """Read-through cache of IP locations backed by the ``geo_cache`` table.

    A miss (no row, or a row without coordinates) calls the fetcher and, when it
    returns coordinates, writes the result back before returning it.
    """

    def __init__(self, session_scope: Optional[Callable] = None) -> None:
        self._session_scope = session_scope

    def _scope(self):
        if self._session_scope is not None:
            return self._session_scope()
        return database.session_scope()

    def get(self, ip: str) -> Optional[GeoLocation]:
        with self._scope() as db:
            entry = storage.get_geo_cache_entry(db, ip)
            if entry is None or entry.lat is None or entry.lng is None:
                return None
            return GeoLocation(
                lat=entry.lat,
                lng=entry.lng,
                city=entry.city,
                region=entry.region,
                country=entry.country,
            )

    def store(self, ip: str, location: GeoLocation) -> None:
        with self._scope() as db:
            storage.upsert_geo_cache_entry(db, ip, location)

    def lookup(self, ip: str, fetch: Callable[[str], Optional[GeoLocation]]) -> Optional[GeoLocation]:
        cached = self.get(ip)
        if cached is not None:
            return cached
        location = fetch(ip)
        if location is not None and location.has_coordinates:
            self.store(ip, location)
        return location


class GeoResolver:
    """Picks the best available location for a visitor.

    Explicit event coordinates win, then a geocoded postal address, then an
    IP lookup through the cache. Provider failures resolve to no location.
    """

    def __init__(self, cache: GeoCache, ip_provider, geocoder: Optional[AddressGeocoder]) -> None:
        self._cache = cache
        self._ip_provider = ip_provider
        self._geocoder = geocoder

    def _fetch_ip(self, ip: str) -> Optional[GeoLocation]:
        if self._ip_provider is None:
            return None
        try:
            return self._ip_provider.lookup(ip)
        except GeoLookupFailure as exc:
            logger.warning("IP geolocation failed for %s: %s", ip, exc)
            return None

    def locate_ip(self, ip: Optional[str]) -> Optional[GeoLocation]:
        if not ip:
            return None
        try:
            return self._cache.lookup(ip, self._fetch_ip)
        except SQLAlchemyError:
            logger.exception("Geo cache unavailable for %s", ip)
            return None

    def geocode_address(self, query: AddressQuery) -> Optional[GeoLocation]:
        if self._geocoder is None or not query.has_components:
            return None
        try:
            result = self._geocoder.geocode(query)
        except GeoLookupFailure as exc:
            logger.warning("Address geocoding failed for %r: %s", query.to_query_string(), exc)
            return None
        if result is None or not result.has_coordinates:
            return None
        return GeoLocation(
            lat=result.lat,
            lng=result.lng,
            city=result.city or query.city,
            region=result.region or query.state,
            country=result.country or query.country,
        )

    def resolve(
        self,
        visitor_key: str,
        events: Iterable["CanonicalEvent"],
        address: Optional[AddressQuery] = None,
    ) -> Optional[GeoLocation]:
        events = list(events)

        for event in events:
            if event.coordinates is not None:
                logger.debug("Using event coordinates for visitor %s", visitor_key)
                return GeoLocation(lat=event.coordinates.lat, lng=event.coordinates.lng)

        if address is not None and address.has_components:
            location = self.geocode_address(address)
            if location is not None:
                logger.debug("Using address geocode for visitor %s", visitor_key)
                return location

        ip = next((event.ip for event in events if event.ip), None)
        location = self.locate_ip(ip)
        if location is not None and location.has_coordinates:
            logger.debug("Using IP geo for visitor %s", visitor_key)
            return location
        return None


def _get_rate_limiter() -> MinIntervalRateLimiter:
    return MinIntervalRateLimiter(config.get_geocode_min_interval_seconds())


_geocode_rate_limiter = _get_rate_limiter()


def build_geo_resolver(http=None) -> GeoResolver:
    """Assemble a resolver from configuration, sharing the process-wide geocode limiter.

    Without an explicit ``http`` client each worker thread gets its own session.
    """
    http = http or ThreadLocalHttp()
    timeout = config.get_geo_timeout_seconds()
    ip_provider = build_ip_provider(
        config.get_geo_provider(), http, api_key=config.get_geo_api_key(), timeout=timeout
    )
    geocoder = AddressGeocoder(
        http,
        _geocode_rate_limiter,
        url=config.get_geocode_url(),
        user_agent=config.get_geocode_user_agent(),
        timeout=timeout,
    )
    return GeoResolver(GeoCache(), ip_provider, geocoder)


def reset_geo_state() -> None:
    """Reset the shared geocode limiter. Intended for use in tests."""

    global _geocode_rate_limiter
    _geocode_rate_limiter = _get_rate_limiter()
