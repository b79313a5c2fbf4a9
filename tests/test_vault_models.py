import pytest

from conftest import USER_A, position, strategy
from vault_models import (
    OUTCOME_FAILED,
    OUTCOME_IN_RANGE,
    OUTCOME_REBALANCED,
    PositionSnapshot,
    StrategyConfig,
    TickReport,
    UserEvaluation,
    format_units,
)


@pytest.mark.parametrize("value,decimals,expected", [
    (1_500_000, 6, "1.5"),
    (0, 6, "0"),
    (1_000_000_000, 9, "1"),
    (123, 9, "0.000000123"),
    (500_000 * 10**9, 18, "0.0005"),
    (-25, 1, "-2.5"),
])
def test_format_units(value, decimals, expected):
    assert format_units(value, decimals) == expected


class TestPositionSnapshot:
    def test_from_chain_tuple(self):
        snap = PositionSnapshot.from_chain(position(liquidity=77, deposited=2_000_000))
        assert (snap.tick_lower, snap.tick_upper) == (-600, 600)
        assert snap.liquidity == 77
        assert snap.deposited_usdc_human == "2"
        assert snap.salt == b"\x00" * 32
        assert not snap.is_closed

    def test_zero_liquidity_is_closed(self):
        assert PositionSnapshot.from_chain(position(liquidity=0)).is_closed


class TestStrategyConfig:
    def test_from_chain_tuple(self):
        cfg = StrategyConfig.from_chain(strategy(range_width=240, threshold=250, slippage=50))
        assert cfg.range_width == 240
        assert cfg.rebalance_threshold == 250
        assert cfg.rebalance_threshold_pct == "2.5"
        assert cfg.slippage == 50


class TestTickReport:
    def test_counts_outcomes(self):
        report = TickReport(tracked=3, evaluations=[
            UserEvaluation(USER_A, OUTCOME_REBALANCED, tx_hash="0xabc"),
            UserEvaluation(USER_A, OUTCOME_FAILED),
            UserEvaluation(USER_A, OUTCOME_IN_RANGE),
        ])
        assert report.rebalanced == 1
        assert report.failed == 1
        assert report.count(OUTCOME_IN_RANGE) == 1
