"""
Tests for resource quantity parsing and resource-list arithmetic
"""
from fractions import Fraction

import pytest

from normalize.quantity import (
    InvalidQuantityError,
    normalize_resource,
    parse_quantity,
    to_int,
    to_milli,
)
from normalize import resources as res

GIB = 2 ** 30


class TestParseQuantity:
    """Tests for parse_quantity"""

    @pytest.mark.parametrize("raw,expected", [
        ("1", Fraction(1)),
        ("250m", Fraction(1, 4)),
        ("1.5", Fraction(3, 2)),
        ("4Gi", Fraction(4 * 2 ** 30)),
        ("128Mi", Fraction(128 * 2 ** 20)),
        ("1k", Fraction(1000)),
        ("2M", Fraction(2_000_000)),
        ("1e3", Fraction(1000)),
        ("100n", Fraction(1, 10_000_000)),
        (3, Fraction(3)),
        (0.1, Fraction(1, 10)),
    ])
    def test_valid_quantities(self, raw, expected):
        """Known quantity spellings parse exactly"""
        assert parse_quantity(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "1Qi", "1.2.3", "-1", "-500m", True, None])
    def test_invalid_quantities_raise(self, raw):
        """Malformed or negative values are rejected"""
        with pytest.raises(InvalidQuantityError):
            parse_quantity(raw)

    def test_invalid_quantity_is_value_error(self):
        """Callers catching ValueError also catch quantity errors"""
        with pytest.raises(ValueError):
            parse_quantity("lots")

    def test_nan_rejected(self):
        """NaN is not a quantity"""
        with pytest.raises(InvalidQuantityError):
            parse_quantity(float("nan"))


class TestNormalization:
    """Tests for canonical integer units"""

    def test_cpu_in_millicores(self):
        assert to_milli("2") == 2000
        assert to_milli("250m") == 250
        assert normalize_resource("cpu", "0.5") == 500

    def test_fractional_millicores_round_up(self):
        """Sub-millicore requests never round down to zero"""
        assert to_milli("100u") == 1

    def test_memory_in_bytes(self):
        assert to_int("1Ki") == 1024
        assert normalize_resource("memory", "8Gi") == 8 * 2 ** 30

    def test_fractional_bytes_round_up(self):
        assert to_int("1.5") == 2


class TestResourceLists:
    """Tests for resource-list helpers"""

    def test_parse_drops_zero_entries(self):
        parsed = res.parse_resource_list({"cpu": "0", "memory": "1Gi"})
        assert parsed == {"memory": 2 ** 30}

    def test_first_insufficient_reports_sorted_name(self):
        """The first resource in name order that does not fit is reported"""
        request = {"memory": 10, "cpu": 10}
        free = {"memory": 5, "cpu": 5}
        assert res.first_insufficient(request, free) == "cpu"

    def test_missing_resource_is_insufficient(self):
        """An extended resource the node lacks cannot be satisfied"""
        assert res.first_insufficient({"nvidia.com/gpu": 1}, {"cpu": 4000}) == "nvidia.com/gpu"

    def test_exact_fit_is_a_fit(self):
        assert res.fits({"cpu": 1000}, {"cpu": 1000})

    def test_utilization_is_max_of_cpu_and_memory(self):
        util = res.utilization({"cpu": 1000, "memory": 3 * GIB}, {"cpu": 4000, "memory": 4 * GIB})
        assert util == Fraction(3, 4)

    def test_utilization_without_capacity_counts_as_full(self):
        assert res.utilization({}, {"pods": 110}) == Fraction(1)

    def test_pod_slot_only_when_declared(self):
        assert res.pod_slot({"pods": 110}) == {"pods": 1}
        assert res.pod_slot({"cpu": 1000}) == {}
