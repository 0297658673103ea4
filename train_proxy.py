#!/usr/bin/env python3
# Viaggiatreno + OpenWeather proxy for small departure displays.

from dataclasses import dataclass, field
import datetime
from decimal import ROUND_HALF_UP, Decimal
import hmac
import logging
import math
import os
import threading
import time
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Tuple,
    TypedDict,
    TypeVar,
    cast,
)
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

load_dotenv()

log = logging.getLogger("train_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_groups(items: List[str]) -> Dict[str, Tuple[str, ...]]:
    """Parse ``name=Dest|Dest`` items into an ordered group -> allow-list map."""
    groups: Dict[str, Tuple[str, ...]] = {}
    for item in items:
        name, sep, members = item.partition("=")
        name = name.strip()
        if not sep or not name:
            raise RuntimeError(f"Invalid DEPARTURE_GROUPS entry: {item!r}")
        groups[name] = tuple(m.strip() for m in members.split("|") if m.strip())
    return groups


APP_ENVS = ("development", "production", "test")
APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
if APP_ENV not in APP_ENVS:
    raise RuntimeError(f"APP_ENV must be one of {', '.join(APP_ENVS)}, got {APP_ENV!r}")

VIAGGIATRENO_BASE = os.getenv(
    "VIAGGIATRENO_BASE_URL",
    "https://www.viaggiatreno.it/infomobilita/resteasy/viaggiatreno",
)
OPENWEATHER_BASE = os.getenv("OPENWEATHER_BASE_URL", "https://api.openweathermap.org/data/2.5")

OPENWEATHER_API_KEY = os.getenv("OPENWEATHER_API_KEY") or None
if OPENWEATHER_API_KEY is None and APP_ENV == "production":
    raise RuntimeError("OPENWEATHER_API_KEY must be set in production")

# Empty means the departures endpoint is open.
API_KEY = os.getenv("API_KEY", "")

CORS_ALLOWED_ORIGINS = set(env_csv("CORS_ALLOWED_ORIGINS", "*"))

UPSTREAM_CONNECT_TIMEOUT_SEC = env_float("UPSTREAM_CONNECT_TIMEOUT_SEC", 3.0)
UPSTREAM_READ_TIMEOUT_SEC = env_float("UPSTREAM_READ_TIMEOUT_SEC", 7.0)

DEPARTURES_TTL_SEC = env_int("DEPARTURES_TTL_SEC", 60)
STATION_NAME_TTL_SEC = env_int("STATION_NAME_TTL_SEC", 86400)
WEATHER_TTL_SEC = env_int("WEATHER_TTL_SEC", 300)

DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "Europe/Rome")
DISPLAY_TZ = ZoneInfo(DISPLAY_TIMEZONE)

WEATHER_CITY = os.getenv("WEATHER_CITY", "Bologna")
WEATHER_LANG = os.getenv("WEATHER_LANG", "it")

FILTER_DEPARTED = env_bool("FILTER_DEPARTED", False)
DELAY_ZERO_SIGNED = env_bool("DELAY_ZERO_SIGNED", True)
DESTINATION_TITLE_CASE = env_bool("DESTINATION_TITLE_CASE", False)
TEMPERATURE_DECIMAL_COMMA = env_bool("TEMPERATURE_DECIMAL_COMMA", True)

RESPONSE_LAYOUTS = ("flat", "grouped")
RESPONSE_LAYOUT = os.getenv("RESPONSE_LAYOUT", "flat").strip().lower()
if RESPONSE_LAYOUT not in RESPONSE_LAYOUTS:
    raise RuntimeError(f"RESPONSE_LAYOUT must be one of {', '.join(RESPONSE_LAYOUTS)}")
DEPARTURE_GROUPS = parse_groups(env_csv("DEPARTURE_GROUPS", ""))
if RESPONSE_LAYOUT == "grouped" and not DEPARTURE_GROUPS:
    raise RuntimeError("Grouped layout requires DEPARTURE_GROUPS")

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("PORT", 3000)

UPSTREAM_FAILURE_MESSAGE = "Failed to fetch train data from the external API."

JsonDict = Dict[str, Any]
T = TypeVar("T")


class RawTrain(TypedDict, total=False):
    compNumeroTreno: str
    destinazione: str
    orarioPartenza: int
    ritardo: int


class Departure(TypedDict):
    type: str
    destination: str
    departureTime: str
    delay: str


class Weather(TypedDict):
    temperature: str
    description: str


class ValidationError(Exception):
    pass


class AuthError(Exception):
    pass


class UpstreamError(Exception):
    def __init__(self, status: int, message: str, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass
class CacheEntry:
    data: Any
    expires_at: float


class TTLCache:
    """In-memory key/value store with per-entry TTL.

    Expiry is lazy: stale entries are dropped on the next ``get``. There is
    no capacity bound, the key space is one entry per station plus one per
    weather city.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry.data

    def set(self, key: str, value: Any, ttl_sec: float) -> None:
        expires_at = self._clock() + ttl_sec
        with self._lock:
            self._entries[key] = CacheEntry(data=value, expires_at=expires_at)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class FetchResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[UpstreamError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# --- formatting ---


def format_time(
    timestamp_ms: float, include_seconds: bool = False, tz: datetime.tzinfo = DISPLAY_TZ
) -> str:
    moment = datetime.datetime.fromtimestamp(timestamp_ms / 1000, tz=tz)
    return moment.strftime("%H:%M:%S" if include_seconds else "%H:%M")


def format_upstream_date(timestamp_ms: float, tz: datetime.tzinfo = DISPLAY_TZ) -> str:
    # Viaggiatreno takes the timestamp the way a browser prints Date.toString().
    moment = datetime.datetime.fromtimestamp(timestamp_ms / 1000, tz=tz)
    return moment.strftime("%a %b %d %Y %H:%M:%S GMT%z")


def format_delay(minutes: float, zero_signed: bool = True) -> str:
    if minutes > 0 or (minutes == 0 and zero_signed):
        return f"+{minutes}"
    return str(minutes)


def format_temperature(celsius: float, decimal_comma: bool = True) -> str:
    rounded = Decimal(str(celsius)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    if rounded.is_zero():
        rounded = rounded.copy_abs()
    text = f"{rounded}°C"
    return text.replace(".", ",") if decimal_comma else text


def extract_destination_token(raw: str, title_case: bool = False) -> str:
    """Reduce a destination like ``"BOLOGNA C.LE"`` to its first word.

    Multi-word names lose their tail (``"SAN BENEDETTO"`` -> ``"SAN"``); the
    display only has room for a headline.
    """
    parts = raw.split()
    token = parts[0] if parts else ""
    return token.title() if title_case else token


def parse_minutes(raw: Any) -> float:
    """Whole delays come back as ``int``; fractional ones keep their value."""
    minutes = float(raw)
    if not math.isfinite(minutes):
        raise ValueError(f"non-finite delay {raw!r}")
    return int(minutes) if minutes.is_integer() else minutes


def format_train_type(raw: str) -> str:
    return raw.replace("REG", "R")


@dataclass
class FormatOptions:
    tz: datetime.tzinfo = DISPLAY_TZ
    zero_signed: bool = True
    title_case: bool = False


def format_departure(train: RawTrain, options: FormatOptions) -> Departure:
    try:
        label = train["compNumeroTreno"]
        destination = train["destinazione"]
        departs_at = train["orarioPartenza"]
        delay = train["ritardo"]
        return {
            "type": format_train_type(label),
            "destination": extract_destination_token(destination, options.title_case),
            "departureTime": format_time(departs_at, tz=options.tz),
            "delay": format_delay(parse_minutes(delay), options.zero_signed),
        }
    except (KeyError, TypeError, AttributeError, ValueError, OverflowError, OSError) as exc:
        raise UpstreamError(502, "Viaggiatreno malformed train record", train) from exc


def group_departures(
    departures: List[Departure], groups: Mapping[str, Tuple[str, ...]]
) -> Dict[str, List[Departure]]:
    normalized = {
        name: {member.strip().lower() for member in members} for name, members in groups.items()
    }
    grouped: Dict[str, List[Departure]] = {name: [] for name in groups}
    for dep in departures:
        token = dep["destination"].strip().lower()
        for name, members in normalized.items():
            if token in members:
                grouped[name].append(dep)
    return grouped


# --- upstream clients ---

session = requests.Session()


def request_upstream(
    url: str,
    *,
    params: Optional[Dict[str, str]] = None,
    timeout: Optional[Tuple[float, float]] = None,
    service_name: str = "upstream",
) -> requests.Response:
    try:
        resp = session.get(url, params=params, timeout=timeout, headers={"Accept": "application/json"})
    except requests.RequestException as exc:
        # The exception text carries the full URL, query string (appid) included.
        raise UpstreamError(504, f"{service_name} request failed", type(exc).__name__) from exc

    if resp.status_code >= 400:
        raise UpstreamError(resp.status_code, f"{service_name} upstream error", resp.text)
    return resp


def request_json(
    url: str,
    *,
    params: Optional[Dict[str, str]] = None,
    timeout: Optional[Tuple[float, float]] = None,
    service_name: str = "upstream",
) -> Any:
    resp = request_upstream(url, params=params, timeout=timeout, service_name=service_name)
    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamError(502, f"{service_name} invalid JSON", resp.text) from exc


def request_text(
    url: str,
    *,
    timeout: Optional[Tuple[float, float]] = None,
    service_name: str = "upstream",
) -> str:
    return request_upstream(url, timeout=timeout, service_name=service_name).text


def upstream_timeout() -> Tuple[float, float]:
    return (UPSTREAM_CONNECT_TIMEOUT_SEC, UPSTREAM_READ_TIMEOUT_SEC)


def fetch_raw_departures(station_code: str, now_ms: float) -> FetchResult[Any]:
    url = f"{VIAGGIATRENO_BASE}/partenze/{station_code}/{format_upstream_date(now_ms)}"
    log.info("Requesting departures: %s", url)
    try:
        data = request_json(url, timeout=upstream_timeout(), service_name="Viaggiatreno")
    except UpstreamError as exc:
        return FetchResult(error=exc)
    return FetchResult(value=data)


def fetch_station_name(station_code: str) -> FetchResult[str]:
    try:
        region = request_text(
            f"{VIAGGIATRENO_BASE}/regione/{station_code}",
            timeout=upstream_timeout(),
            service_name="Viaggiatreno",
        ).strip()
        if not region:
            raise UpstreamError(502, "Viaggiatreno empty region", region)
        details = request_json(
            f"{VIAGGIATRENO_BASE}/dettaglioStazione/{station_code}/{region}",
            timeout=upstream_timeout(),
            service_name="Viaggiatreno",
        )
    except UpstreamError as exc:
        return FetchResult(error=exc)

    localita = details.get("localita") if isinstance(details, dict) else None
    name = localita.get("nomeLungo") if isinstance(localita, dict) else None
    if not name or not isinstance(name, str):
        return FetchResult(error=UpstreamError(502, "Viaggiatreno station name missing", details))
    return FetchResult(value=name)


def fetch_weather(city: str, decimal_comma: bool = True) -> FetchResult[Weather]:
    if OPENWEATHER_API_KEY is None:
        return FetchResult(error=UpstreamError(500, "OpenWeather API key not set"))
    try:
        data = request_json(
            f"{OPENWEATHER_BASE}/weather",
            params={"q": city, "appid": OPENWEATHER_API_KEY, "units": "metric", "lang": WEATHER_LANG},
            timeout=upstream_timeout(),
            service_name="OpenWeather",
        )
    except UpstreamError as exc:
        return FetchResult(error=exc)

    try:
        temp = float(data["main"]["temp"])
        description = str(data["weather"][0]["description"])
    except (KeyError, IndexError, TypeError, ValueError):
        return FetchResult(error=UpstreamError(502, "OpenWeather malformed payload", data))
    return FetchResult(
        value={
            "temperature": format_temperature(temp, decimal_comma),
            "description": description,
        }
    )


# --- request handling ---


def parse_limit(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        value = int(float(raw))
    except (ValueError, OverflowError) as exc:
        raise ValidationError("limit must be positive") from exc
    if value < 1:
        raise ValidationError("limit must be positive")
    return value


def apply_limit(payload: JsonDict, limit: Optional[int]) -> JsonDict:
    if limit is None:
        return dict(payload)
    return {key: value[:limit] if isinstance(value, list) else value for key, value in payload.items()}


@dataclass
class DeparturesOptions:
    layout: str = "flat"
    groups: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    filter_departed: bool = False
    weather_city: str = "Bologna"
    departures_ttl_sec: float = 60
    station_name_ttl_sec: float = 86400
    weather_ttl_sec: float = 300
    decimal_comma: bool = True
    format: FormatOptions = field(default_factory=FormatOptions)


class DeparturesService:
    """Builds the display payload for one station, caching each piece."""

    def __init__(
        self,
        cache: TTLCache,
        options: DeparturesOptions,
        *,
        clock: Callable[[], float] = time.time,
        departures_fetcher: Callable[[str, float], FetchResult[Any]] = fetch_raw_departures,
        station_name_fetcher: Callable[[str], FetchResult[str]] = fetch_station_name,
        weather_fetcher: Callable[[str, bool], FetchResult[Weather]] = fetch_weather,
    ) -> None:
        self.cache = cache
        self.options = options
        self.clock = clock
        self.departures_fetcher = departures_fetcher
        self.station_name_fetcher = station_name_fetcher
        self.weather_fetcher = weather_fetcher

    def now_ms(self) -> float:
        return self.clock() * 1000

    def stamp(self, payload: JsonDict) -> JsonDict:
        body: JsonDict = {"time": format_time(self.now_ms(), include_seconds=True, tz=self.options.format.tz)}
        body.update(payload)
        return body

    def empty_payload(self) -> JsonDict:
        if self.options.layout == "grouped":
            return {name: [] for name in self.options.groups}
        return {"departures": []}

    def station_name(self, station_code: str) -> str:
        cache_key = f"station_name_{station_code}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            log.info("Using cached station name for %s", station_code)
            return cast(str, cached)

        result = self.station_name_fetcher(station_code)
        if not result.ok or result.value is None:
            err = result.error
            log.warning(
                "Station name lookup failed for %s: %s %s",
                station_code,
                err,
                err.body if err is not None else None,
            )
            return station_code

        self.cache.set(cache_key, result.value, self.options.station_name_ttl_sec)
        log.info("Cached station name for %s: %s", station_code, result.value)
        return result.value

    def weather(self) -> Weather:
        city = self.options.weather_city
        cache_key = f"weather_{city}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            log.info("Using cached weather data for %s", city)
            return cast(Weather, cached)

        result = self.weather_fetcher(city, self.options.decimal_comma)
        if result.error is not None:
            raise result.error
        weather = cast(Weather, result.value)
        self.cache.set(cache_key, weather, self.options.weather_ttl_sec)
        log.info("Cached weather data for %s", city)
        return weather

    def shape(self, station_code: str, departures: List[Departure]) -> JsonDict:
        if self.options.layout == "grouped":
            payload: JsonDict = {"weather": self.weather()}
            payload.update(group_departures(departures, self.options.groups))
            return payload
        return {
            "stationName": self.station_name(station_code),
            "weather": self.weather(),
            "departures": departures,
        }

    def departures(self, station_code: str, limit: Optional[int]) -> JsonDict:
        """Return the response body for ``station_code``.

        Raises ``UpstreamError`` when the departure list or the weather
        cannot be fetched. The cached payload is stored untruncated and
        without ``time``, so every caller gets a fresh timestamp and its own
        ``limit`` slice.
        """
        cache_key = f"departures_{station_code}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            log.info("Using cached departures for station: %s", station_code)
            return self.stamp(apply_limit(cached, limit))

        log.info("Fetching departures for station: %s", station_code)
        now_ms = self.now_ms()
        result = self.departures_fetcher(station_code, now_ms)
        if result.error is not None:
            raise result.error

        raw_trains = result.value
        if not isinstance(raw_trains, list):
            # Wrong station code or no data upstream.
            log.warning("Invalid data received from Viaggiatreno: %r", raw_trains)
            return self.stamp(self.empty_payload())

        if self.options.filter_departed:
            raw_trains = [t for t in raw_trains if _departs_at(t) >= now_ms]
        departures = [format_departure(t, self.options.format) for t in raw_trains]
        log.info("Fetched %d departures for station: %s", len(departures), station_code)

        payload = self.shape(station_code, departures)
        self.cache.set(cache_key, payload, self.options.departures_ttl_sec)
        log.info("Cached departures for station: %s", station_code)
        return self.stamp(apply_limit(payload, limit))


def _departs_at(train: Any) -> float:
    try:
        return float(train["orarioPartenza"])
    except (KeyError, TypeError, ValueError) as exc:
        raise UpstreamError(502, "Viaggiatreno malformed train record", train) from exc


def build_options() -> DeparturesOptions:
    return DeparturesOptions(
        layout=RESPONSE_LAYOUT,
        groups=DEPARTURE_GROUPS,
        filter_departed=FILTER_DEPARTED,
        weather_city=WEATHER_CITY,
        departures_ttl_sec=DEPARTURES_TTL_SEC,
        station_name_ttl_sec=STATION_NAME_TTL_SEC,
        weather_ttl_sec=WEATHER_TTL_SEC,
        decimal_comma=TEMPERATURE_DECIMAL_COMMA,
        format=FormatOptions(
            tz=DISPLAY_TZ,
            zero_signed=DELAY_ZERO_SIGNED,
            title_case=DESTINATION_TITLE_CASE,
        ),
    )


cache = TTLCache()
service = DeparturesService(cache, build_options())

app = Flask(__name__)
# Keep "time" first and groups in configured order.
app.json.sort_keys = False  # type: ignore[attr-defined]


def error_response(status: int, code: str, message: str) -> Response:
    resp = jsonify({"error": {"code": code, "message": message}})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


def check_api_key() -> None:
    if not API_KEY:
        return
    key = request.args.get("key", "")
    if not hmac.compare_digest(key.encode(), API_KEY.encode()):
        raise AuthError("Invalid or missing API key.")


@app.before_request
def apply_api_key() -> Optional[Response]:
    if not request.path.startswith("/departures"):
        return None
    if request.method == "OPTIONS":
        return make_response("", 204)
    try:
        check_api_key()
    except AuthError as exc:
        return error_response(401, "unauthorized", str(exc))
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    origin = request.headers.get("Origin")
    if "*" in CORS_ALLOWED_ORIGINS:
        resp.headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in CORS_ALLOWED_ORIGINS:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
    if "Access-Control-Allow-Origin" in resp.headers:
        resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
        resp.headers["Access-Control-Max-Age"] = "600"

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    return resp


@app.route("/")
def index() -> Response:
    resp = make_response(
        "Train Departures API is running. Use /departures/:stationCode to get data."
    )
    resp.mimetype = "text/plain"
    return resp


@app.route("/departures/", defaults={"station_code": ""}, methods=["GET"])
@app.route("/departures/<station_code>", methods=["GET"])
def departures(station_code: str) -> Response:
    try:
        station_code = station_code.strip()
        if not station_code:
            raise ValidationError("station code required")
        limit = parse_limit(request.args.get("limit"))
    except ValidationError as exc:
        return error_response(400, "invalid_parameter", str(exc))

    try:
        body = service.departures(station_code, limit)
    except UpstreamError as exc:
        log.error("Error fetching train data: %s (%s) %s", exc, exc.status, exc.body)
        return error_response(500, "upstream_error", UPSTREAM_FAILURE_MESSAGE)
    except Exception:
        log.exception("Unexpected error serving station %s", station_code)
        return error_response(500, "internal_error", "Unexpected error")

    return jsonify(body)


if __name__ == "__main__":
    if OPENWEATHER_API_KEY is None:
        raise RuntimeError("OPENWEATHER_API_KEY must be set")
    log.info("Server is listening on http://%s:%s", APP_HOST, APP_PORT)
    app.run(host=APP_HOST, port=APP_PORT)
