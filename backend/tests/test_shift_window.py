import pytest

from services.shift_window import ShiftWindow, parse_area_map, parse_hhmm, parse_window_map

from conftest import local


# =============================================================================
# ShiftWindow
# =============================================================================

def test_wrapping_window_membership():
    window = ShiftWindow.parse("22:00", "06:00")
    assert window.wraps
    assert window.contains(23 * 60)
    assert window.contains(5 * 60)
    assert not window.contains(12 * 60)
    assert window.duration_minutes == 8 * 60


def test_plain_window_is_inclusive():
    window = ShiftWindow.parse("06:00", "18:00")
    assert window.contains(6 * 60)
    assert window.contains(18 * 60)
    assert not window.contains(18 * 60 + 1)
    assert window.label == "06:00-18:00"


def test_wrapping_occurrence_after_midnight_started_yesterday():
    window = ShiftWindow.parse("22:00", "06:00")
    start, end = window.current_occurrence(local(2026, 10, 19, 2))
    assert start == local(2026, 10, 18, 22)
    assert end == local(2026, 10, 19, 6)


@pytest.mark.parametrize("bad", ["25:00", "12:61", "noon"])
def test_parse_hhmm_rejects_bad_input(bad):
    with pytest.raises(ValueError):
        parse_hhmm(bad)


def test_parse_maps():
    windows = parse_window_map("Mining=06:00-18:00;Hauling=18:00-06:00")
    assert windows["Hauling"].wraps
    assert parse_area_map("Hauling=HD, WT;Mining=DT") == {"Hauling": ["HD", "WT"], "Mining": ["DT"]}
    with pytest.raises(ValueError):
        parse_window_map("Mining=06:00")


# =============================================================================
# Area chain
# =============================================================================

@pytest.mark.parametrize(
    "payload, area, reason",
    [
        ({"area": "hauling", "deviceNo": "DT-1"}, "Hauling", "explicit"),
        ({"groupName": "PT Hauling Fleet", "deviceNo": "DT-1"}, "Hauling", "group_keyword"),
        ({"location": "KM 22", "deviceNo": "DT-1"}, "Hauling", "location_prefix"),
        ({"deviceNo": "HD-777"}, "Hauling", "device_prefix"),
        ({"deviceNo": "XX-1"}, "Mining", "default"),
    ],
)
def test_area_priority_chain(classifier, payload, area, reason):
    assert classifier.resolve_area(payload) == (area, reason)


# =============================================================================
# Classification
# =============================================================================

def test_classify_within_and_outside(classifier):
    day = classifier.classify({"deviceNo": "DT-1", "alarmTime": "2026-10-19 10:00:00"})
    assert day.area == "Mining" and day.within_shift and day.reason == "within_shift"

    evening = classifier.classify({"deviceNo": "DT-1", "alarmTime": "2026-10-19 20:00:00"})
    assert not evening.within_shift and evening.reason == "outside_shift"

    night = classifier.classify({"deviceNo": "HD-1", "alarmTime": "2026-10-19 23:00:00"})
    assert night.area == "Hauling" and night.within_shift


def test_area_without_window_counts_as_within(classifier):
    result = classifier.classify({"area": "Port", "alarmTime": "2026-10-19 03:00:00"})
    assert result.within_shift
    assert result.reason == "no_window"
    assert result.window is None


def test_server_time_converted_to_local(classifier):
    result = classifier.classify({"deviceNo": "DT-1", "timestamp": "2026-10-19T02:00:00Z"})
    assert result.local_time.hour == 10


def test_missing_time_uses_clock(classifier, clock):
    local_time, source = classifier.local_time({"deviceNo": "DT-1"})
    assert source == "received"
    assert local_time == clock.now


def test_out_of_range_local_time_falls_back_to_server(classifier):
    local_time, source = classifier.local_time({
        "alarmTime": "9999-12-31 23:59:59",
        "timestamp": "2026-10-19T02:00:00Z",
    })
    assert source == "server"
    assert local_time.hour == 10


def test_debug_ring_buffer(classifier):
    classifier.classify({"deviceNo": "DT-1", "alarmTime": "2026-10-19 10:00:00"})
    classifier.classify({"deviceNo": "DT-1", "alarmTime": "2026-10-19 20:00:00"})
    snapshot = classifier.debug_snapshot()
    assert snapshot["size"] == 2
    assert snapshot["kept"] == 1
    assert snapshot["dropped"] == 1
    assert snapshot["entries"][1]["reason"] == "outside_shift"


def test_debug_buffer_is_bounded(classifier):
    for i in range(60):
        classifier.classify({"deviceNo": f"DT-{i}"})
    assert classifier.debug_snapshot()["size"] == 50


def test_query_range_is_union_of_current_windows(classifier):
    start, end = classifier.query_range(local(2026, 10, 19, 10))
    assert start == local(2026, 10, 19, 6)
    assert end == local(2026, 10, 20, 6)
