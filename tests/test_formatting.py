import datetime

import pytest

from conftest import NOW, raw_train


@pytest.fixture
def mod(load_module):
    return load_module()


def test_format_time(mod):
    ts = NOW * 1000 + 7_000
    assert mod.format_time(ts) == "10:00"
    assert mod.format_time(ts, include_seconds=True) == "10:00:07"


def test_format_time_uses_target_zone(mod):
    ts = NOW * 1000
    assert mod.format_time(ts, tz=datetime.timezone.utc) == "08:00"
    # Winter time in Rome is UTC+1.
    winter = datetime.datetime(2026, 1, 5, 23, 30, tzinfo=datetime.timezone.utc).timestamp()
    assert mod.format_time(winter * 1000) == "00:30"


def test_format_upstream_date(mod):
    assert mod.format_upstream_date(NOW * 1000) == "Sat Oct 17 2026 10:00:00 GMT+0200"


@pytest.mark.parametrize(
    "minutes, zero_signed, expected",
    [
        (5, True, "+5"),
        (0, True, "+0"),
        (0, False, "0"),
        (-2, True, "-2"),
        (-2, False, "-2"),
        (12, False, "+12"),
    ],
)
def test_format_delay(mod, minutes, zero_signed, expected):
    assert mod.format_delay(minutes, zero_signed) == expected


@pytest.mark.parametrize(
    "celsius, decimal_comma, expected",
    [
        (12.04, True, "12,0°C"),
        (12.05, True, "12,1°C"),
        (-0.05, True, "-0,1°C"),
        (-0.04, True, "0,0°C"),
        (21, True, "21,0°C"),
        (7.26, False, "7.3°C"),
    ],
)
def test_format_temperature(mod, celsius, decimal_comma, expected):
    assert mod.format_temperature(celsius, decimal_comma) == expected


def test_extract_destination_token(mod):
    assert mod.extract_destination_token("BOLOGNA C.LE") == "BOLOGNA"
    assert mod.extract_destination_token("  SAN BENEDETTO VAL DI SAMBRO") == "SAN"
    assert mod.extract_destination_token("BOLOGNA C.LE", title_case=True) == "Bologna"
    assert mod.extract_destination_token("") == ""


def test_format_train_type(mod):
    assert mod.format_train_type("REG 2456") == "R 2456"
    assert mod.format_train_type("FR 9512") == "FR 9512"


@pytest.mark.parametrize(
    "ritardo, expected", [(2.7, "+2.7"), (3.0, "+3"), ("4", "+4"), (-1.5, "-1.5")]
)
def test_format_departure_keeps_upstream_delay(mod, ritardo, expected):
    departure = mod.format_departure(raw_train("REG 1", "IMOLA", 0, ritardo), mod.FormatOptions())
    assert departure["delay"] == expected


def test_format_departure_malformed(mod):
    record = raw_train("REG 1", "IMOLA", 0, "late")
    with pytest.raises(mod.UpstreamError):
        mod.format_departure(record, mod.FormatOptions())
    with pytest.raises(mod.UpstreamError):
        mod.format_departure({"destinazione": "IMOLA"}, mod.FormatOptions())
    with pytest.raises(mod.UpstreamError):
        mod.format_departure(None, mod.FormatOptions())


def test_group_departures(mod):
    def dep(destination):
        return {"type": "R 1", "destination": destination, "departureTime": "10:00", "delay": "+0"}

    departures = [dep("MODENA"), dep(" bologna "), dep("VERONA"), dep("Carpi")]
    grouped = mod.group_departures(
        departures,
        {"toModena": ("Modena", " carpi "), "toBologna": ("BOLOGNA",), "both": ("modena", "bologna")},
    )
    assert list(grouped) == ["toModena", "toBologna", "both"]
    assert [d["destination"] for d in grouped["toModena"]] == ["MODENA", "Carpi"]
    assert [d["destination"] for d in grouped["toBologna"]] == [" bologna "]
    assert [d["destination"] for d in grouped["both"]] == ["MODENA", " bologna "]


def test_parse_groups(mod):
    assert mod.parse_groups(["toModena=Modena| Carpi", "toBologna=Bologna"]) == {
        "toModena": ("Modena", "Carpi"),
        "toBologna": ("Bologna",),
    }
    with pytest.raises(RuntimeError):
        mod.parse_groups(["Modena"])


@pytest.mark.parametrize("raw, expected", [(None, None), ("", None), ("3", 3), ("2.9", 2)])
def test_parse_limit(mod, raw, expected):
    assert mod.parse_limit(raw) == expected


@pytest.mark.parametrize("raw", ["0", "0.5", "-4", "ten", "inf"])
def test_parse_limit_rejects(mod, raw):
    with pytest.raises(mod.ValidationError, match="limit must be positive"):
        mod.parse_limit(raw)


def test_apply_limit_leaves_payload_untouched(mod):
    payload = {"stationName": "Imola", "weather": {"temperature": "1,0°C"}, "departures": [1, 2, 3]}
    limited = mod.apply_limit(payload, 2)
    assert limited["departures"] == [1, 2]
    assert limited["weather"] is payload["weather"]
    assert payload["departures"] == [1, 2, 3]
    assert mod.apply_limit(payload, None) == payload
