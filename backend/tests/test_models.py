"""
Tests for record decoding.
"""

from datetime import datetime

import pytest

from airmonitor.exceptions import ParseError
from airmonitor.models import (
    MeasurementSeries,
    Station,
    decode_geocode,
    decode_measurement_values,
    decode_sensors,
    decode_stations,
)
from conftest import sensor_json


class TestDecodeStations:

    def test_keeps_upstream_fields(self):
        payload = [{
            "id": 114,
            "stationName": "Wrocław - Bartnicza",
            "gegrLat": "51.115933",
            "gegrLon": "17.141125",
            "city": {"id": 1064, "name": "Wrocław"},
            "addressStreet": "ul. Bartnicza",
        }]

        stations = decode_stations(payload)

        assert stations[0].name == "Wrocław - Bartnicza"
        assert stations[0].latitude == pytest.approx(51.115933)
        assert stations[0].to_json() == payload[0]

    def test_non_numeric_coordinates_parse_to_none(self):
        station = Station.model_validate({"id": 1, "stationName": "A", "gegrLat": "", "gegrLon": "abc"})
        assert station.latitude is None
        assert station.longitude is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"id": 1},
            [{"stationName": "missing id"}],
            [{"id": "x", "stationName": "A"}],
            ["not an object"],
        ],
    )
    def test_shape_mismatch_raises(self, payload):
        with pytest.raises(ParseError):
            decode_stations(payload)


class TestDecodeSensors:

    def test_param_fields(self):
        sensors = decode_sensors([sensor_json(92, "PM2.5")])
        assert sensors[0].param_code == "PM2.5"
        assert sensors[0].display_name == "pył zawieszony PM2.5 (PM2.5)"
        assert sensors[0].station_id is None

    def test_for_station_tags_copy(self):
        sensor = decode_sensors([sensor_json(92)])[0]
        tagged = sensor.for_station(14)
        assert tagged.station_id == 14
        assert sensor.station_id is None
        assert tagged.to_json()["stationId"] == 14

    def test_missing_param_raises(self):
        with pytest.raises(ParseError):
            decode_sensors([{"id": 1}])


class TestDecodeMeasurements:

    def test_null_values_are_kept(self):
        values = decode_measurement_values({
            "key": "PM10",
            "values": [
                {"date": "2024-01-01 01:00:00", "value": 21.5},
                {"date": "2024-01-01 00:00:00", "value": None},
            ],
        })

        assert [v.value for v in values] == [21.5, None]
        assert values[1].timestamp == datetime(2024, 1, 1, 0, 0, 0)
        assert values[1].to_json() == {"date": "2024-01-01 00:00:00", "value": None}

    def test_missing_value_key_is_rejected(self):
        with pytest.raises(ParseError):
            decode_measurement_values({"values": [{"date": "2024-01-01 00:00:00"}]})

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"key": "PM10"},
            {"values": "nope"},
            {"values": [{"date": "yesterday", "value": 1.0}]},
        ],
    )
    def test_shape_mismatch_raises(self, payload):
        with pytest.raises(ParseError):
            decode_measurement_values(payload)

    def test_series_last_updated(self):
        series = MeasurementSeries.model_validate(
            {"id": 3, "values": [], "lastUpdated": "2024-01-01T12:00:00+01:00"}
        )
        assert series.last_updated_at.hour == 12
        assert series.to_json() == {"id": 3, "values": [], "lastUpdated": "2024-01-01T12:00:00+01:00"}


class TestDecodeGeocode:

    def test_first_match(self):
        payload = [{"lat": "52.4082663", "lon": "16.9335199"}, {"lat": "0", "lon": "0"}]
        assert decode_geocode(payload) == pytest.approx((52.4082663, 16.9335199))

    def test_no_match(self):
        assert decode_geocode([]) is None

    def test_bad_shape(self):
        with pytest.raises(ParseError):
            decode_geocode({"lat": "1", "lon": "2"})
        with pytest.raises(ParseError):
            decode_geocode([{"lat": "north"}])
