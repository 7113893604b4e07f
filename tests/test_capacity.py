"""Tests for capacity planning."""

import pytest

from headless_usb.exceptions import InsufficientCapacityError
from headless_usb.storage import capacity

MIB = 1024 * 1024


class TestPlan:
    def test_fits(self):
        budget = capacity.plan(16 * 1024 * MIB, 2500 * MIB, 128 * MIB)

        assert budget.required_total_bytes == 2628 * MIB
        assert budget.spare_bytes == (16 * 1024 - 2500) * MIB

    def test_exact_fit_accepted(self):
        budget = capacity.plan(1128 * MIB, 1000 * MIB, 128 * MIB)

        assert budget.required_total_bytes == budget.device_size_bytes

    def test_one_byte_short(self):
        with pytest.raises(InsufficientCapacityError) as exc_info:
            capacity.plan(1128 * MIB - 1, 1000 * MIB, 128 * MIB)

        assert exc_info.value.required == 1128 * MIB
        assert exc_info.value.available == 1128 * MIB - 1
        assert exc_info.value.exit_code == 20

    def test_default_reserve(self):
        budget = capacity.plan(4096 * MIB, 1024 * MIB)

        assert budget.reserved_min_bytes == 128 * MIB

    def test_zero_reserve(self):
        budget = capacity.plan(1024, 1024, 0)

        assert budget.spare_bytes == 0

    @pytest.mark.parametrize(
        "sizes", [(-1, 10, 10), (100, -1, 10), (100, 10, -1)]
    )
    def test_negative_sizes(self, sizes):
        with pytest.raises(ValueError, match="must not be negative"):
            capacity.plan(*sizes)
