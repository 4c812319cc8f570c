from decimal import Decimal

import pytest

from paygate.errors import InvalidRate
from paygate.pricing import price_to_millisats


def test_price_includes_margin_and_rounds_to_whole_sats():
    assert price_to_millisats(0.05, 50000, 10) == 110000


def test_price_without_margin():
    assert price_to_millisats("0.01", "100000", 0) == 10000


def test_price_rounds_half_up():
    # 1500 msats sits exactly halfway between two whole sats.
    assert price_to_millisats(Decimal("0.000000015"), 1, 0) == 2000
    assert price_to_millisats(Decimal("0.0000000149"), 1, 0) == 1000


@pytest.mark.parametrize(
    "usd, rate, margin",
    [
        (0, 30000, 0),
        (0.003, 27123.45, 7.5),
        (1, 64000, 15),
        (12.34, 1000000, 0),
        (0.0001, 99999.99, 100),
    ],
)
def test_price_is_non_negative_multiple_of_1000(usd, rate, margin):
    value = price_to_millisats(usd, rate, margin)
    assert isinstance(value, int)
    assert value >= 0
    assert value % 1000 == 0


@pytest.mark.parametrize("rate", [0, -1, "0", Decimal("-0.5"), float("nan")])
def test_non_positive_rate_rejected(rate):
    with pytest.raises(InvalidRate):
        price_to_millisats(1, rate, 0)


def test_invalid_rate_maps_to_server_error():
    assert InvalidRate("x").status_code == 500
