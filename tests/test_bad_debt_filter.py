import pytest

from bad_debt_filter import BadDebtFilter, bad_debt_key
from chain_registry import TransientRPCError
from models import Position, Protocol
from protocol_adapters import make_adapter

from conftest import (COMPTROLLER, FAILED, POOL, POOL_CONFIG, USDC, VENUS_CONFIG, WETH, address, ok,
                      uint)

BORROWER = address(0xDEAD)


def pool_position(liquidatable=True, debt_usd=10_000.0):
    return Position(chain="testnet", protocol=Protocol.RESERVE_POOL, market=POOL, borrower=BORROWER,
                    liquidatable=liquidatable, collateral_usd=0.0, debt_usd=debt_usd, health_factor=0.5)


def venus_position():
    return Position(chain="testnet", protocol=Protocol.COMPTROLLER, market=COMPTROLLER, borrower=BORROWER,
                    liquidatable=True, shortfall=10_000.0)


@pytest.fixture
def pool():
    return make_adapter("testnet", POOL_CONFIG)


@pytest.fixture
def venus():
    return make_adapter("testnet", VENUS_CONFIG)


class TestBadDebt:
    async def test_no_collateral_anywhere_is_bad_debt(self, ctx, stats, notifier, venus):
        bad_debt = BadDebtFilter(stats, notifier)
        ctx.responses.append([ok(uint(0)), ok(uint(10 ** 18)), ok(uint(10 ** 18))] * 2)

        candidate = await bad_debt.classify(ctx, venus, venus_position())

        assert candidate is None
        assert stats["bad_debt"] == 1
        assert bad_debt.is_bad_debt("testnet", Protocol.COMPTROLLER, BORROWER.lower())
        record = bad_debt.records[bad_debt_key("testnet", Protocol.COMPTROLLER, BORROWER)]
        assert record.debt_usd == 10_000.0
        assert len(notifier.sent) == 1

    async def test_recorded_once_and_never_queried_again(self, ctx, stats, notifier, pool):
        bad_debt = BadDebtFilter(stats, notifier)
        ctx.responses.append([ok(uint(0))] * 4)

        for _ in range(3):
            assert await bad_debt.classify(ctx, pool, pool_position()) is None

        assert len(ctx.calls) == 1
        assert stats["bad_debt"] == 1
        assert len(notifier.sent) == 1

    async def test_clear_allows_reevaluation(self, ctx, stats, pool):
        bad_debt = BadDebtFilter(stats)
        ctx.responses.append([ok(uint(0))] * 4)
        await bad_debt.classify(ctx, pool, pool_position())

        assert bad_debt.clear() == 1
        ctx.responses.append([ok(uint(10 ** 18)), ok(uint(0)), ok(uint(0)), ok(uint(2000 * 10 ** 6))])
        candidate = await bad_debt.classify(ctx, pool, pool_position())
        assert candidate is not None

    async def test_recorder_receives_the_record(self, ctx, stats, pool):
        recorded = []
        bad_debt = BadDebtFilter(stats, recorder=recorded.append)
        ctx.responses.append([ok(uint(0))] * 4)

        await bad_debt.classify(ctx, pool, pool_position())

        assert [r.borrower for r in recorded] == [BORROWER]


class TestCandidates:
    async def test_dominant_assets_are_chosen(self, ctx, stats, pool):
        bad_debt = BadDebtFilter(stats)
        ctx.responses.append([
            ok(uint(25 * 10 ** 17)),       # 2.5 aWETH
            ok(uint(0)),
            ok(uint(1000 * 10 ** 6)),      # 1000 aUSDC
            ok(uint(4000 * 10 ** 6)),      # USDC debt
        ])
        candidate = await bad_debt.classify(ctx, pool, pool_position(debt_usd=4000.0))

        assert candidate.collateral.asset == WETH
        assert candidate.collateral.value_usd == pytest.approx(5000)
        assert candidate.debt.asset == USDC
        assert candidate.lock_key == ("testnet", BORROWER.lower())
        assert stats["bad_debt"] == 0

    async def test_healthy_positions_are_not_queried(self, ctx, stats, pool):
        bad_debt = BadDebtFilter(stats)
        assert await bad_debt.classify(ctx, pool, pool_position(liquidatable=False)) is None
        assert ctx.calls == []

    async def test_failed_reads_are_not_bad_debt(self, ctx, stats, pool):
        bad_debt = BadDebtFilter(stats)
        ctx.responses.append([FAILED, ok(uint(0)), ok(uint(0)), ok(uint(10 ** 9))])

        assert await bad_debt.classify(ctx, pool, pool_position()) is None
        assert stats["bad_debt"] == 0
        assert bad_debt.records == {}

    async def test_transport_failure_skips_this_cycle(self, ctx, stats, pool):
        bad_debt = BadDebtFilter(stats)
        ctx.responses.append(TransientRPCError("timeout"))

        assert await bad_debt.classify(ctx, pool, pool_position()) is None
        assert bad_debt.records == {}

    async def test_collateral_without_debt_balance_is_skipped(self, ctx, stats, pool):
        bad_debt = BadDebtFilter(stats)
        ctx.responses.append([ok(uint(10 ** 18)), ok(uint(0)), ok(uint(0)), ok(uint(0))])
        assert await bad_debt.classify(ctx, pool, pool_position()) is None
        assert stats["bad_debt"] == 0

    async def test_filter_routes_by_market(self, ctx, stats, pool):
        bad_debt = BadDebtFilter(stats)
        ctx.responses.append([ok(uint(10 ** 18)), ok(uint(0)), ok(uint(0)), ok(uint(1000 * 10 ** 6))])
        unknown = Position(chain="testnet", protocol=Protocol.RESERVE_POOL, market=address(0x999),
                           borrower=BORROWER, liquidatable=True, debt_usd=5000.0)

        candidates = await bad_debt.filter(ctx, {(pool.protocol, pool.market): pool}, [pool_position(), unknown])

        assert len(candidates) == 1
        assert len(ctx.calls) == 1
