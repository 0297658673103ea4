import datetime
import importlib
import sys

import pytest


_ENV_KEYS = [
    "APP_ENV",
    "OPENWEATHER_API_KEY",
    "API_KEY",
    "PORT",
    "CORS_ALLOWED_ORIGINS",
    "DEPARTURES_TTL_SEC",
    "STATION_NAME_TTL_SEC",
    "WEATHER_TTL_SEC",
    "DISPLAY_TIMEZONE",
    "WEATHER_CITY",
    "WEATHER_LANG",
    "FILTER_DEPARTED",
    "DELAY_ZERO_SIGNED",
    "DESTINATION_TITLE_CASE",
    "TEMPERATURE_DECIMAL_COMMA",
    "RESPONSE_LAYOUT",
    "DEPARTURE_GROUPS",
]

# 2026-10-17 10:00:00 in Rome (CEST, UTC+2).
NOW = datetime.datetime(2026, 10, 17, 8, 0, tzinfo=datetime.timezone.utc).timestamp()


def minutes_from_now_ms(minutes):
    return int((NOW + minutes * 60) * 1000)


def raw_train(number, destination, minutes, delay):
    return {
        "compNumeroTreno": number,
        "destinazione": destination,
        "orarioPartenza": minutes_from_now_ms(minutes),
        "ritardo": delay,
    }


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _reload(monkeypatch, env):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    sys.modules.pop("train_proxy", None)
    return importlib.import_module("train_proxy")


@pytest.fixture
def load_module(monkeypatch):
    def load(**env):
        env.setdefault("OPENWEATHER_API_KEY", "weather-key")
        return _reload(monkeypatch, env)

    return load


@pytest.fixture
def import_module(monkeypatch):
    def load(**env):
        return _reload(monkeypatch, env)

    return load
