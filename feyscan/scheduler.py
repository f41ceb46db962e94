"""
Per-cycle enrichment scheduling.

A token's priority is the sum of an ordered list of named scoring rules. Each
rule is a plain function of (Deployment, ScoringContext) so it can be tested
and audited on its own; the breakdown is kept on every Scored entry.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from .chain import KNOWN_TOKEN_NAMES, KNOWN_TOKENS
from .config import VERY_NEW_AGE_SEC, AppConfig
from .gateway import RateLimitState
from .logging_utils import get_logger
from .models import Deployment

logger = get_logger(__name__)

YOUNG_AGE_SEC = 3600
LOW_VOLUME_AGE_SEC = 3600

TIER1_MARKET_CAP = Decimal(10000)
TIER1_HOLDERS = 50
TIER1_RUNNER_SCORE = 1.0


@dataclass
class ScoringContext:
    now: int
    catch_up: bool
    stale_after_sec: float
    chill_cooldown_sec: int = 300
    recent_volume: Dict[str, int] = field(default_factory=dict)

    def probe_count(self, dep: Deployment) -> int:
        return self.recent_volume.get(dep.tx_hash, 0)


def runner_score(dep: Deployment) -> float:
    growth = dep.last_growth()
    if growth is None:
        return 0.0
    absolute, pct = growth
    normalized_pct = min(pct / 10, 10)
    normalized_abs = min(absolute, 50)
    return float(dep.volume_24h) * 0.4 + normalized_pct * 0.4 + normalized_abs * 0.2


def is_tier1(dep: Deployment) -> bool:
    return (
        dep.market_cap > TIER1_MARKET_CAP
        or dep.holder_count > TIER1_HOLDERS
        or runner_score(dep) > TIER1_RUNNER_SCORE
    )


def time_since_check(dep: Deployment, ctx: ScoringContext) -> float:
    if dep.last_holder_check_at is None:
        return math.inf
    return ctx.now - dep.last_holder_check_at


def is_stale(dep: Deployment, ctx: ScoringContext) -> bool:
    return dep.has_enrichment_data() and time_since_check(dep, ctx) >= ctx.stale_after_sec


def is_idle(dep: Deployment) -> bool:
    """Has been refreshed at least once and showed no activity."""
    return dep.has_enrichment_data() and not dep.has_activity()


def tier_rule(dep: Deployment, ctx: ScoringContext) -> int:
    if ctx.catch_up and not dep.has_enrichment_data():
        return 0
    if not is_tier1(dep):
        return 0
    if is_stale(dep, ctx):
        return 500
    score = 0
    if dep.market_cap > 100000:
        score += 10000
    elif dep.market_cap > 50000:
        score += 5000
    elif dep.market_cap > 10000:
        score += 2000

    if dep.holder_count > 100:
        score += 5000
    elif dep.holder_count > 50:
        score += 2000

    runner = runner_score(dep)
    if runner > 5.0:
        score += 5000
    elif runner > 2.0:
        score += 2000
    elif runner > 1.0:
        score += 1000
    return score


def active_rule(dep: Deployment, ctx: ScoringContext) -> int:
    if not is_tier1(dep) and dep.has_activity() and not is_stale(dep, ctx):
        return 1000
    return 0


def recent_volume_rule(dep: Deployment, ctx: ScoringContext) -> int:
    count = ctx.probe_count(dep)
    if count > 50:
        return 2000
    if count > 20:
        return 1000
    if count > 10:
        return 500
    if count > 5:
        return 200
    if count > 0:
        return 100
    return 0


def age_rule(dep: Deployment, ctx: ScoringContext) -> int:
    age = dep.age(ctx.now)
    if age < 3600:
        return 1000
    if age < 7200:
        return 500
    if age < 14400:
        return 200
    return 0


def growth_rule(dep: Deployment, ctx: ScoringContext) -> int:
    growth = dep.last_growth()
    if growth is None or growth[0] <= 0:
        return 0
    absolute, pct = growth
    score = min(absolute * 10, 500)
    if pct > 10:
        score += 300
    return score


def data_state_rule(dep: Deployment, ctx: ScoringContext) -> int:
    has_data = dep.has_enrichment_data()
    stale = is_stale(dep, ctx)
    if ctx.catch_up:
        if not has_data:
            return 50000
        if stale:
            return 20000
        if not dep.has_activity():
            return 200
        return 0
    if not has_data:
        return 1500
    if not dep.has_activity() and not stale:
        return 200
    if stale:
        return 100
    return 0


def chill_rule(dep: Deployment, ctx: ScoringContext) -> int:
    since = time_since_check(dep, ctx)
    cooldown = ctx.chill_cooldown_sec
    idle = is_idle(dep)
    active = dep.has_activity()
    young = dep.age(ctx.now) < YOUNG_AGE_SEC
    tier1 = is_tier1(dep)
    stale = is_stale(dep, ctx)

    if idle and since < cooldown:
        return -10000
    if idle and since < cooldown * 2:
        return -5000
    if since < 600 and not young and not tier1 and not active:
        return -5000
    if since < 1200 and not young and not tier1 and not active:
        return -2000
    if since < 1800 and not tier1 and not active:
        return -500
    if since > cooldown and not stale and idle:
        return 100
    if since > 1800 and not stale and active:
        return 400
    if since > 1200 and not stale and active:
        return 200
    if since > 600 and not stale and active:
        return 100
    return 0


def holders_rule(dep: Deployment, ctx: ScoringContext) -> int:
    count = dep.holder_count
    if count > 100:
        return 500
    if count > 50:
        return 300
    if count > 20:
        return 150
    if count > 10:
        return 75
    if count > 5:
        return 30
    return 0


def initial_buy_rule(dep: Deployment, ctx: ScoringContext) -> int:
    amount = dep.initial_buy_amount
    if amount > 1:
        return 400
    if amount > Decimal("0.5"):
        return 250
    if amount > Decimal("0.25"):
        return 150
    if amount > Decimal("0.1"):
        return 75
    if amount > 0:
        return 25
    return 0


class ScoringRule(NamedTuple):
    name: str
    fn: Callable[[Deployment, ScoringContext], int]


DEFAULT_RULES: List[ScoringRule] = [
    ScoringRule("tier", tier_rule),
    ScoringRule("active", active_rule),
    ScoringRule("recent_volume", recent_volume_rule),
    ScoringRule("age", age_rule),
    ScoringRule("growth", growth_rule),
    ScoringRule("data_state", data_state_rule),
    ScoringRule("chill", chill_rule),
    ScoringRule("holders", holders_rule),
    ScoringRule("initial_buy", initial_buy_rule),
]


@dataclass
class Scored:
    deployment: Deployment
    score: int
    breakdown: Dict[str, int]
    recent_volume: int = 0


@dataclass
class RefreshPlan:
    holders: List[Deployment] = field(default_factory=list)
    volumes: List[Deployment] = field(default_factory=list)
    newly_pruned: List[Deployment] = field(default_factory=list)
    scored: List[Scored] = field(default_factory=list)

    @property
    def total_work(self) -> int:
        return len(self.holders) + len(self.volumes)


class EnrichmentScheduler:
    def __init__(self, cfg: AppConfig, rules: Optional[List[ScoringRule]] = None):
        self.cfg = cfg
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    def context(
        self, now: int, catch_up: bool, recent_volume: Optional[Dict[str, int]] = None
    ) -> ScoringContext:
        return ScoringContext(
            now=now,
            catch_up=catch_up,
            stale_after_sec=2 * self.cfg.poll_interval_sec,
            chill_cooldown_sec=self.cfg.chill_cooldown_sec,
            recent_volume=dict(recent_volume or {}),
        )

    def should_prune(self, dep: Deployment, now: int) -> bool:
        age = dep.age(now)
        if age < VERY_NEW_AGE_SEC:
            return False
        return age > self.cfg.prune_age_sec and dep.holder_count <= self.cfg.prune_max_holders

    def exclusion_reason(self, dep: Deployment, now: int) -> Optional[str]:
        if not dep.token_address:
            return "no_address"
        if dep.token_address in KNOWN_TOKENS:
            return "denylisted"
        if (dep.token_name or "").strip().upper() in KNOWN_TOKEN_NAMES:
            return "denylisted"
        if dep.is_pruned:
            return "pruned"
        if self.should_prune(dep, now):
            return "prune"
        if dep.age(now) > LOW_VOLUME_AGE_SEC and dep.volume_24h < self.cfg.min_volume_threshold:
            return "low_volume"
        return None

    def partition(
        self, deployments: List[Deployment], now: int
    ) -> Tuple[List[Deployment], List[Deployment]]:
        eligible: List[Deployment] = []
        newly_pruned: List[Deployment] = []
        for dep in deployments:
            reason = self.exclusion_reason(dep, now)
            if reason is None:
                eligible.append(dep)
            elif reason == "prune":
                newly_pruned.append(dep)
        return eligible, newly_pruned

    def score(self, dep: Deployment, ctx: ScoringContext) -> Scored:
        breakdown = {rule.name: rule.fn(dep, ctx) for rule in self.rules}
        return Scored(
            deployment=dep,
            score=sum(breakdown.values()),
            breakdown=breakdown,
            recent_volume=ctx.probe_count(dep),
        )

    def passes_cooldown(self, scored: Scored, ctx: ScoringContext) -> bool:
        dep = scored.deployment
        since = time_since_check(dep, ctx)
        if is_idle(dep) and since < ctx.chill_cooldown_sec:
            return False
        young = dep.age(ctx.now) < YOUNG_AGE_SEC
        return scored.score > 0 or (young and since > ctx.chill_cooldown_sec) or dep.has_activity()

    @staticmethod
    def _order(scored: List[Scored]) -> List[Scored]:
        return sorted(
            scored,
            key=lambda s: (s.score, s.deployment.block_number, s.deployment.created_at),
            reverse=True,
        )

    def rank(self, eligible: List[Deployment], ctx: ScoringContext) -> List[Scored]:
        return self._order([self.score(dep, ctx) for dep in eligible])

    def select_for_refresh(
        self, deployments: List[Deployment], budget: int, ctx: ScoringContext
    ) -> List[Deployment]:
        if budget <= 0:
            return []
        eligible, _ = self.partition(deployments, ctx.now)
        ranked = self.rank(eligible, ctx)
        return [s.deployment for s in ranked if self.passes_cooldown(s, ctx)][:budget]

    def refresh_budget(self, catch_up: bool, rate_state: RateLimitState) -> int:
        if rate_state.under_pressure(self.cfg.throttle_pressure_threshold):
            return 1
        return self.cfg.refresh_budget_catch_up if catch_up else self.cfg.refresh_budget

    def volume_budget(self, catch_up: bool, rate_state: RateLimitState) -> int:
        if rate_state.under_pressure(self.cfg.throttle_pressure_threshold):
            return self.cfg.volume_budget
        return self.cfg.volume_budget_catch_up if catch_up else self.cfg.volume_budget

    def probe_limit(self, catch_up: bool) -> int:
        return self.cfg.probe_limit_catch_up if catch_up else self.cfg.probe_limit

    def wants_volume(self, scored: Scored, now: int) -> bool:
        if scored.recent_volume <= 0:
            return False
        dep = scored.deployment
        if dep.age(now) > LOW_VOLUME_AGE_SEC and dep.volume_24h < self.cfg.min_volume_threshold:
            return False
        return True

    def plan(
        self,
        deployments: List[Deployment],
        ctx: ScoringContext,
        rate_state: RateLimitState,
    ) -> RefreshPlan:
        eligible, newly_pruned = self.partition(deployments, ctx.now)
        ranked = self.rank(eligible, ctx)
        budget = self.refresh_budget(ctx.catch_up, rate_state)
        holders = [s.deployment for s in ranked if self.passes_cooldown(s, ctx)][:budget]
        volumes = [s.deployment for s in ranked if self.wants_volume(s, ctx.now)][
            : self.volume_budget(ctx.catch_up, rate_state)
        ]
        plan = RefreshPlan(holders=holders, volumes=volumes, newly_pruned=newly_pruned, scored=ranked)
        logger.debug(
            "refresh plan",
            extra={
                "context": {
                    "eligible": len(eligible),
                    "holders": len(holders),
                    "volumes": len(volumes),
                    "pruned": len(newly_pruned),
                    "catch_up": ctx.catch_up,
                }
            },
        )
        return plan
