from dataclasses import replace

import pytest

from chain_registry import TransientRPCError
from models import Protocol
from protocol_adapters import (ComptrollerAdapter, MarketAdapter, ReservePoolAdapter, adapters_for,
                               make_adapter)

from conftest import (COMET, COMET_CONFIG, COMET_USDC, COMET_WETH, COMPTROLLER, FAILED, POOL, POOL_CONFIG,
                      USDC, VENUS_CONFIG, VUSDC, VWETH, WETH, account_data, account_liquidity, address,
                      boolean, make_candidate, ok, uint)

BORROWERS = [address(0x1000 + i) for i in range(5)]


@pytest.fixture
def pool():
    return make_adapter("testnet", POOL_CONFIG)


@pytest.fixture
def comet():
    return make_adapter("testnet", COMET_CONFIG)


@pytest.fixture
def venus():
    return make_adapter("testnet", VENUS_CONFIG)


class TestAdapterRegistry:
    def test_one_adapter_per_protocol(self, ctx):
        adapters = adapters_for(ctx)
        assert [type(a) for a in adapters] == [ReservePoolAdapter, MarketAdapter, ComptrollerAdapter]
        assert [a.bonus for a in adapters] == [0.05, 0.08, 0.10]

    def test_comet_needs_base_asset(self):
        with pytest.raises(ValueError):
            make_adapter("testnet", replace(COMET_CONFIG, base_asset=None))


class TestReservePool:
    def test_health_factor_decoding(self, ctx, pool):
        risky = pool.decode_position(ctx, BORROWERS[0], [account_data(5000, 4000, 0.95)])
        assert risky.liquidatable
        assert risky.health_factor == pytest.approx(0.95)
        assert risky.collateral_usd == pytest.approx(5000)
        assert risky.debt_usd == pytest.approx(4000)

        assert not pool.decode_position(ctx, BORROWERS[0], [account_data(5000, 1000, 1.8)]).liquidatable
        # No debt reports a zero factor on some deployments
        assert not pool.decode_position(ctx, BORROWERS[0], [account_data(5000, 0, 0)]).liquidatable

    async def test_one_failed_subcall_of_five(self, ctx, pool):
        results = [ok(account_data(5000, 4000, 0.95 + i / 10)) for i in range(5)]
        results[2] = FAILED
        ctx.responses.append(results)

        positions = await pool.evaluate(ctx, BORROWERS)

        assert len(ctx.calls) == 1
        assert len(ctx.calls[0]) == 5
        assert [p.borrower for p in positions] == [b for i, b in enumerate(BORROWERS) if i != 2]
        assert all(p.market == POOL for p in positions)

    async def test_undecodable_entry_is_skipped(self, ctx, pool):
        ctx.responses.append([ok(b"\x01\x02"), ok(account_data(100, 50, 2.0))])
        positions = await pool.evaluate(ctx, BORROWERS[:2])
        assert [p.borrower for p in positions] == [BORROWERS[1]]

    async def test_short_batch_is_transient(self, ctx, pool):
        ctx.responses.append([ok(account_data(100, 50, 2.0))])
        with pytest.raises(TransientRPCError):
            await pool.evaluate(ctx, BORROWERS[:2])

    async def test_verify_collateral_reads_atokens_and_debt_tokens(self, ctx, pool):
        ctx.responses.append([
            ok(uint(2 * 10 ** 18)),       # aWETH
            ok(uint(0)),                  # WETH debt
            ok(uint(100 * 10 ** 6)),      # aUSDC
            ok(uint(3000 * 10 ** 6)),     # USDC debt
        ])
        report = await pool.verify_collateral(ctx, BORROWERS[0])

        targets = [call[0] for call in ctx.calls[0]]
        assert targets == [WETH.collateral_token, WETH.debt_token, USDC.collateral_token, USDC.debt_token]
        assert report.verified
        assert report.dominant_collateral().asset == WETH
        assert report.dominant_collateral().value_usd == pytest.approx(4000)
        assert report.dominant_debt().asset == USDC

    def test_liquidation_call(self, ctx, pool):
        candidate = make_candidate()
        amount = pool.debt_to_cover(candidate)
        assert amount == candidate.debt.amount // 2

        fn = pool.build_liquidation_call(ctx, POOL_CONFIG.liquidator, candidate, amount)
        assert fn.fn_name == "executeLiquidation"
        assert tuple(fn.args) == (WETH.token, USDC.token, candidate.borrower, amount)


class TestMarket:
    async def test_positions_from_flag_and_borrow_balance(self, ctx, comet):
        ctx.responses.append([
            ok(boolean(True)), ok(uint(1500 * 10 ** 6)),
            ok(boolean(False)), ok(uint(10 ** 6)),
            ok(boolean(True)), ok(uint(0)),
        ])
        positions = await comet.evaluate(ctx, BORROWERS[:3])

        assert len(ctx.calls[0]) == 6
        assert [p.liquidatable for p in positions] == [True, False, False]
        assert positions[0].debt_usd == pytest.approx(1500)
        assert positions[0].health_factor is None

    async def test_half_failed_borrower_is_skipped(self, ctx, comet):
        ctx.responses.append([ok(boolean(True)), FAILED, ok(boolean(True)), ok(uint(10 ** 9))])
        positions = await comet.evaluate(ctx, BORROWERS[:2])
        assert [p.borrower for p in positions] == [BORROWERS[1]]

    async def test_failed_collateral_read_marks_report_unverified(self, ctx, comet):
        ctx.responses.append([FAILED, ok(uint(500 * 10 ** 6))])
        report = await comet.verify_collateral(ctx, BORROWERS[0])
        assert not report.verified
        assert not report.has_collateral
        assert report.dominant_debt().asset == COMET_USDC

    def test_liquidation_args(self, comet):
        candidate = make_candidate(Protocol.MARKET, COMET, collateral=COMET_WETH, debt=COMET_USDC)
        args = comet.liquidation_args(candidate, 123)
        assert args == (COMET, candidate.borrower, COMET_WETH.token, 123)


class TestComptroller:
    async def test_shortfall_and_error_codes(self, ctx, venus):
        ctx.responses.append([
            ok(account_liquidity(0, 0, 250 * 10 ** 18)),
            ok(account_liquidity(0, 10 ** 18, 0)),
            ok(account_liquidity(3, 0, 0)),
        ])
        positions = await venus.evaluate(ctx, BORROWERS[:3])

        assert [p.borrower for p in positions] == BORROWERS[:2]
        assert positions[0].liquidatable
        assert positions[0].shortfall == pytest.approx(250)
        assert positions[0].debt_usd is None
        assert not positions[1].liquidatable

    async def test_vtoken_balances_use_exchange_rate(self, ctx, venus):
        rate = 2 * 10 ** 17  # 0.2 underlying per vToken
        ctx.responses.append([
            ok(uint(10 * 10 ** 18)), ok(uint(0)), ok(uint(rate)),           # vWETH
            ok(uint(0)), ok(uint(1000 * 10 ** 18)), ok(uint(10 ** 18)),     # vUSDC
        ])
        report = await venus.verify_collateral(ctx, BORROWERS[0])

        assert len(ctx.calls[0]) == 6
        weth = report.dominant_collateral()
        assert weth.asset == VWETH
        assert weth.amount == 2 * 10 ** 18
        assert weth.value_usd == pytest.approx(4000)
        assert report.dominant_debt().asset == VUSDC

    def test_liquidation_args(self, venus):
        candidate = make_candidate(Protocol.COMPTROLLER, COMPTROLLER, collateral=VWETH, debt=VUSDC)
        args = venus.liquidation_args(candidate, 77)
        assert args == (VUSDC.token, 77, VUSDC.debt_token, VWETH.collateral_token, candidate.borrower)
