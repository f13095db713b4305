import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.reposition import HealthStatus, Urgency
from services.position_health import (
    analyze_position_health,
    classify_urgency,
    health_status_for,
    signed_distance_from_range,
)


def test_far_above_range_is_high_urgency():
    result = analyze_position_health(100, 120, 125, 2, medium_threshold=4, high_threshold=5)

    assert result.should_reposition is True
    assert result.distance_from_range == 5
    assert result.urgency == Urgency.HIGH
    assert result.status == HealthStatus.CRITICAL


def test_one_bin_outside_is_buffer_zone():
    result = analyze_position_health(100, 120, 121, 2)

    assert result.status == HealthStatus.BUFFER_ZONE
    assert result.should_reposition is False
    assert result.urgency == Urgency.NONE
    assert result.distance_from_range == 1


def test_inside_range_is_healthy():
    result = analyze_position_health(100, 120, 110, 2)

    assert result.status == HealthStatus.HEALTHY
    assert result.should_reposition is False
    assert result.distance_from_range == 0


def test_below_range_distance_is_negative():
    result = analyze_position_health(100, 120, 96, 2, medium_threshold=4, high_threshold=5)

    assert result.distance_from_range == -4
    assert result.bins_out_of_range == 4
    assert result.urgency == Urgency.MEDIUM
    assert result.status == HealthStatus.OUT_OF_RANGE
    assert "below" in result.reason


def test_just_outside_buffer_is_low_urgency():
    result = analyze_position_health(100, 120, 123, 2, medium_threshold=4, high_threshold=5)

    assert result.should_reposition is True
    assert result.urgency == Urgency.LOW
    assert result.status == HealthStatus.WARNING


def test_buffer_edges_are_inclusive():
    assert analyze_position_health(100, 120, 98, 2).status == HealthStatus.BUFFER_ZONE
    assert analyze_position_health(100, 120, 122, 2).status == HealthStatus.BUFFER_ZONE
    assert analyze_position_health(100, 120, 97, 2).should_reposition is True


@pytest.mark.parametrize("buffer", [0, 1, 2, 5])
def test_buffer_zone_never_repositions(buffer):
    for offset in range(1, buffer + 1):
        assert analyze_position_health(100, 120, 120 + offset, buffer).should_reposition is False
        assert analyze_position_health(100, 120, 100 - offset, buffer).should_reposition is False


def test_urgency_is_monotonic_in_distance():
    ranks = [
        analyze_position_health(100, 120, 120 + d, 0, medium_threshold=4, high_threshold=5).urgency.rank
        for d in range(1, 30)
    ]
    assert ranks == sorted(ranks)


def test_zero_buffer_acts_on_first_bin_out():
    result = analyze_position_health(100, 120, 121, 0)
    assert result.should_reposition is True


def test_swapped_bounds_are_normalized():
    result = analyze_position_health(120, 100, 125, 2, medium_threshold=4, high_threshold=5)
    assert (result.min_bin, result.max_bin) == (100, 120)
    assert result.distance_from_range == 5


def test_negative_buffer_is_rejected():
    with pytest.raises(ValueError):
        analyze_position_health(100, 120, 125, -1)


def test_estimated_fee_is_carried_through():
    result = analyze_position_health(100, 120, 140, 2, estimated_fee_sol=0.002)
    assert result.estimated_fee_sol == 0.002


def test_helpers():
    assert signed_distance_from_range(100, 120, 99) == -1
    assert signed_distance_from_range(100, 120, 100) == 0
    assert classify_urgency(0, 4, 5) == Urgency.NONE
    assert classify_urgency(3, 4, 5) == Urgency.LOW
    assert classify_urgency(4, 4, 5) == Urgency.MEDIUM
    assert classify_urgency(9, 4, 5) == Urgency.HIGH
    assert health_status_for(Urgency.NONE) == HealthStatus.HEALTHY
