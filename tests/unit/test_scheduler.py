"""
tests/unit/test_scheduler.py - eligibility, scoring rules and refresh budgets.
"""

from decimal import Decimal

import pytest

from feyscan.chain import WETH_ADDR
from feyscan.gateway import RateLimitState
from feyscan.models import Deployment, HolderSnapshot
from feyscan.scheduler import (
    DEFAULT_RULES,
    EnrichmentScheduler,
    ScoringRule,
    chill_rule,
    data_state_rule,
    is_tier1,
    runner_score,
)

from fakes import addr, tx_hash

NOW = 1_700_000_000


def make_dep(n: int, age: int = 600, **kwargs) -> Deployment:
    base = dict(
        tx_hash=tx_hash(n),
        deployer_address=addr(0xD000 + n),
        block_number=10_000 + n,
        created_at=NOW - age,
        token_address=addr(0xA000 + n),
        token_name=f"T{n}",
    )
    base.update(kwargs)
    return Deployment(**base)


def with_history(dep: Deployment, *counts: int, checked_ago: int = 10) -> Deployment:
    for i, count in enumerate(counts):
        dep.holder_history.append(HolderSnapshot(count=count, observed_at=NOW - 1000 + i))
    dep.holder_count = counts[-1]
    dep.last_holder_check_at = NOW - checked_ago
    return dep


@pytest.fixture
def scheduler(cfg):
    return EnrichmentScheduler(cfg)


class TestEligibility:
    """Which tokens are considered at all."""

    def test_reasons(self, scheduler):
        assert scheduler.exclusion_reason(make_dep(1, token_address=None), NOW) == "no_address"
        assert scheduler.exclusion_reason(make_dep(2, token_address=WETH_ADDR), NOW) == "denylisted"
        assert scheduler.exclusion_reason(make_dep(3, token_name="weth"), NOW) == "denylisted"
        assert scheduler.exclusion_reason(make_dep(4, is_pruned=True), NOW) == "pruned"
        assert scheduler.exclusion_reason(make_dep(5), NOW) is None

    def test_very_new_never_pruned(self, scheduler, make_cfg):
        strict = EnrichmentScheduler(make_cfg(prune_age_sec=300))
        dep = make_dep(1, age=299)
        assert not strict.should_prune(dep, NOW)
        assert strict.should_prune(make_dep(2, age=301), NOW)

    def test_prune_old_few_holders(self, scheduler):
        old = make_dep(1, age=7200, holder_count=3, volume_by_window={"24h": Decimal(5)})
        assert scheduler.exclusion_reason(old, NOW) == "prune"
        busy = make_dep(2, age=7200, holder_count=30, volume_by_window={"24h": Decimal(5)})
        assert scheduler.exclusion_reason(busy, NOW) is None

    def test_old_low_volume_excluded(self, scheduler):
        dep = make_dep(1, age=7200, holder_count=30, volume_by_window={"24h": Decimal("0.2")})
        assert scheduler.exclusion_reason(dep, NOW) == "low_volume"

    def test_partition(self, scheduler):
        deps = [
            make_dep(1),
            make_dep(2, is_pruned=True),
            make_dep(3, age=7200, holder_count=1, volume_by_window={"24h": Decimal(5)}),
        ]
        eligible, pruned = scheduler.partition(deps, NOW)
        assert [d.tx_hash for d in eligible] == [tx_hash(1)]
        assert [d.tx_hash for d in pruned] == [tx_hash(3)]


class TestRules:
    """Individual scoring rules."""

    def test_runner_score(self):
        dep = with_history(make_dep(1, volume_by_window={"24h": Decimal(2)}), 10, 20)
        # 2 * 0.4 + min(100 / 10, 10) * 0.4 + min(10, 50) * 0.2
        assert runner_score(dep) == pytest.approx(0.8 + 4.0 + 2.0)
        assert is_tier1(dep)

    def test_tier1_by_holders(self):
        assert is_tier1(make_dep(1, holder_count=51))
        assert not is_tier1(make_dep(2, holder_count=50))

    def test_data_state_catch_up(self, scheduler):
        ctx = scheduler.context(NOW, catch_up=True)
        assert data_state_rule(make_dep(1), ctx) == 50000
        stale = with_history(make_dep(2), 1, 1, checked_ago=1000)
        assert data_state_rule(stale, ctx) == 20000

    def test_data_state_normal(self, scheduler):
        ctx = scheduler.context(NOW, catch_up=False)
        assert data_state_rule(make_dep(1), ctx) == 1500
        idle = with_history(make_dep(2), 4, 4, checked_ago=10)
        assert data_state_rule(idle, ctx) == 200

    def test_chill_penalizes_recently_checked_idle(self, scheduler):
        ctx = scheduler.context(NOW, catch_up=False)
        idle = with_history(make_dep(1, age=7200), 4, 4, checked_ago=60)
        assert chill_rule(idle, ctx) == -10000
        later = with_history(make_dep(2, age=7200), 4, 4, checked_ago=400)
        assert chill_rule(later, ctx) == -5000

    def test_breakdown_names(self, scheduler):
        scored = scheduler.score(make_dep(1), scheduler.context(NOW, catch_up=False))
        assert list(scored.breakdown) == [r.name for r in DEFAULT_RULES]
        assert scored.score == sum(scored.breakdown.values())

    def test_custom_rules(self, cfg):
        scheduler = EnrichmentScheduler(cfg, rules=[ScoringRule("flat", lambda dep, ctx: 7)])
        scored = scheduler.score(make_dep(1), scheduler.context(NOW, catch_up=False))
        assert scored.breakdown == {"flat": 7}


class TestSelection:
    """Ranking and budget enforcement."""

    def test_budget_cap(self, scheduler):
        deps = [make_dep(i) for i in range(10)]
        ctx = scheduler.context(NOW, catch_up=False)
        assert len(scheduler.select_for_refresh(deps, 3, ctx)) == 3
        assert scheduler.select_for_refresh(deps, 0, ctx) == []

    def test_pruned_never_selected(self, scheduler):
        deps = [make_dep(1, is_pruned=True), make_dep(2)]
        ctx = scheduler.context(NOW, catch_up=False)
        assert [d.tx_hash for d in scheduler.select_for_refresh(deps, 5, ctx)] == [tx_hash(2)]

    def test_catch_up_prefers_unenriched(self, scheduler):
        fresh = [make_dep(i, age=900) for i in range(50)]
        enriched = []
        for i in range(100, 105):
            dep = with_history(
                make_dep(i, age=900, market_cap=Decimal(200000)), 100, 200, checked_ago=10
            )
            enriched.append(dep)
        ctx = scheduler.context(NOW, catch_up=True)
        selected = scheduler.select_for_refresh(enriched + fresh, 10, ctx)

        assert len(selected) == 10
        assert all(not d.has_enrichment_data() for d in selected)

    def test_tie_broken_by_newest_block(self, scheduler):
        a = make_dep(1, block_number=500)
        b = make_dep(2, block_number=900)
        ranked = scheduler.rank([a, b], scheduler.context(NOW, catch_up=False))
        assert [s.deployment.tx_hash for s in ranked] == [tx_hash(2), tx_hash(1)]

    def test_recent_volume_raises_priority(self, scheduler):
        quiet = make_dep(1, block_number=900)
        busy = make_dep(2, block_number=100)
        ctx = scheduler.context(NOW, catch_up=False, recent_volume={busy.tx_hash: 30})
        ranked = scheduler.rank([quiet, busy], ctx)
        assert ranked[0].deployment is busy
        assert ranked[0].breakdown["recent_volume"] == 1000

    def test_idle_in_cooldown_skipped(self, scheduler):
        idle = with_history(make_dep(1, age=1800), 20, 20, checked_ago=30)
        assert scheduler.exclusion_reason(idle, NOW) is None
        assert not idle.has_activity()
        ctx = scheduler.context(NOW, catch_up=False)
        assert scheduler.select_for_refresh([idle], 5, ctx) == []

        idle.last_holder_check_at = NOW - 700
        assert scheduler.select_for_refresh([idle], 5, ctx) == [idle]


class TestBudgets:
    """Budgets depend on mode and rate-limit pressure."""

    def test_refresh_budget(self, scheduler, cfg):
        calm = RateLimitState()
        assert scheduler.refresh_budget(False, calm) == cfg.refresh_budget
        assert scheduler.refresh_budget(True, calm) == cfg.refresh_budget_catch_up

        pressured = RateLimitState(consecutive_throttles=cfg.throttle_pressure_threshold + 1)
        assert scheduler.refresh_budget(True, pressured) == 1
        assert scheduler.volume_budget(True, pressured) == cfg.volume_budget

    def test_plan_splits_work(self, scheduler):
        deps = [make_dep(i) for i in range(5)]
        ctx = scheduler.context(NOW, catch_up=True, recent_volume={deps[0].tx_hash: 3})
        plan = scheduler.plan(deps, ctx, RateLimitState())
        assert len(plan.holders) == 5
        assert [d.tx_hash for d in plan.volumes] == [deps[0].tx_hash]
        assert plan.total_work == 6
