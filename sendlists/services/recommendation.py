"""Recommendation service: suppression and rebalancing plans from bounce and list facts.

Two interchangeable backends share one interface:

* ``RuleBasedRecommender``: deterministic deliverability rules; the default.
* ``AnthropicRecommender``: asks a Claude model for the plan, then checks it.

Rebalancing always preserves FIFO across rounds: contacts are ranked in
registration order and cut into consecutive slices, one per round, so an
earlier contact can never land in a later round than a later one.
"""

import json
import logging
from typing import Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from sendlists.config import get_settings
from sendlists.models.suppression import SuppressionReason
from sendlists.schemas import (
    BounceFact,
    ContactMove,
    HealthRecommendation,
    HealthRiskFactor,
    ListHealthAssessment,
    ListHealthMetrics,
    RebalanceRequest,
    RebalancingPlan,
    RoundListState,
    SuppressionPlan,
    SuppressionPlanRequest,
    SuppressionRecommendation,
)
from sendlists.services.errors import ExternalServiceError, PlanValidationError

logger = logging.getLogger(__name__)

BALANCE_TOLERANCE = 0.05  # ±5% of target counts as balanced

# Worst bounce wins when a contact bounced more than once in the window
BOUNCE_SEVERITY = {"soft": 0, "hard": 1, "spam": 2}

RISK_SEVERITY = ["low", "medium", "high", "critical"]
HEALTH_GRADES = ["excellent", "good", "fair", "poor", "critical"]

# (rate, score) breakpoints, interpolated linearly between neighbours
BOUNCE_RATE_SCORES = [(0.0, 100), (0.01, 95), (0.02, 85), (0.05, 70), (0.10, 50), (0.20, 20), (1.0, 0)]
DELIVERY_RATE_SCORES = [(0.0, 0), (0.80, 20), (0.90, 50), (0.94, 70), (0.97, 85), (0.99, 95), (1.0, 100)]
SPAM_RATE_LIMIT = 0.001


class Recommender(Protocol):
    async def plan_suppressions(self, request: SuppressionPlanRequest) -> SuppressionPlan: ...

    async def plan_rebalance(self, request: RebalanceRequest) -> RebalancingPlan: ...

    async def analyze_list_health(self, metrics: ListHealthMetrics) -> ListHealthAssessment: ...


# ── Pure helpers ──────────────────────────────────────
def equal_targets(total: int, n_lists: int) -> list[int]:
    """
    Split ``total`` into ``n_lists`` sizes; the remainder goes to the earliest rounds.

    Rounds always end up within one contact of each other, so 998 survivors
    over two rounds become 499/499 even when round 1 held 500 before the
    cleanup. Keeping an earlier round at its old size is not a goal.
    """
    if n_lists <= 0:
        return []
    base, remainder = divmod(total, n_lists)
    return [base + (1 if i < remainder else 0) for i in range(n_lists)]


def balance_score(counts: list[int], targets: list[int]) -> float:
    """
    0-100 score of how close ``counts`` are to ``targets``.

    100 when every list is within one contact; 90-99 within 5%; 80-89
    within 10%; 60-79 within 20%; below 60 beyond that.
    """
    if not counts:
        return 100.0
    max_dev = max(abs(c - t) for c, t in zip(counts, targets))
    if max_dev <= 1:
        return 100.0
    mean = max(sum(targets) / len(targets), 1)
    dev = max_dev / mean
    if dev <= 0.05:
        score = 99 - (dev / 0.05) * 9
    elif dev <= 0.10:
        score = 89 - ((dev - 0.05) / 0.05) * 9
    elif dev <= 0.20:
        score = 79 - ((dev - 0.10) / 0.10) * 19
    else:
        score = max(0.0, 59 - (dev - 0.20) * 59 / 0.8)
    return round(score, 1)


def is_balanced(counts: list[int], targets: list[int], tolerance: float = BALANCE_TOLERANCE) -> bool:
    return all(abs(c - t) <= max(1, tolerance * t) for c, t in zip(counts, targets))


def _ordered(lists: list[RoundListState]) -> list[RoundListState]:
    return sorted(lists, key=lambda s: s.round_number)


def fifo_moves(lists: list[RoundListState], targets: list[int]) -> list[ContactMove]:
    """
    Moves that turn the current rounds into consecutive FIFO slices of ``targets``.

    ``lists`` must each carry their active member ids in registration order.
    A contact listed in more than one round is only considered where it
    first appears.
    """
    ordered = _ordered(lists)
    if len(targets) != len(ordered):
        raise PlanValidationError(f"Expected {len(ordered)} targets, got {len(targets)}")

    current: dict[str, str] = {}
    queue: list[str] = []
    for state in ordered:
        for contact_id in state.contact_ids:
            if contact_id in current:
                continue
            current[contact_id] = state.list_id
            queue.append(contact_id)

    if sum(targets) != len(queue):
        raise PlanValidationError(f"Targets sum to {sum(targets)} but there are {len(queue)} contacts")

    moves = []
    cursor = 0
    for state, target in zip(ordered, targets):
        for contact_id in queue[cursor:cursor + target]:
            if current[contact_id] != state.list_id:
                moves.append(
                    ContactMove(
                        contact_id=contact_id,
                        from_list_id=current[contact_id],
                        to_list_id=state.list_id,
                        reason=f"FIFO rebalance into round {state.round_number}",
                    )
                )
        cursor += target
    return moves


def fifo_violations(lists: list[RoundListState], moves: list[ContactMove]) -> int:
    """
    Count contacts that would end up in an earlier round than a contact
    registered before them once ``moves`` are applied.
    """
    ordered = _ordered(lists)
    round_of = {s.list_id: s.round_number for s in ordered}

    assignment: dict[str, int] = {}
    queue: list[str] = []
    for state in ordered:
        for contact_id in state.contact_ids:
            if contact_id not in assignment:
                assignment[contact_id] = state.round_number
                queue.append(contact_id)

    for move in moves:
        if move.contact_id in assignment and move.to_list_id in round_of:
            assignment[move.contact_id] = round_of[move.to_list_id]

    violations = 0
    highest = 0
    for contact_id in queue:
        if assignment[contact_id] < highest:
            violations += 1
        highest = max(highest, assignment[contact_id])
    return violations


def plan_from_targets(request: RebalanceRequest, targets: list[int], summary_prefix: str = "") -> RebalancingPlan:
    ordered = _ordered(request.lists)
    counts = [len(s.contact_ids) for s in ordered]
    score = balance_score(counts, targets)
    expected = {s.round_number: t for s, t in zip(ordered, targets)}
    distribution = ", ".join(f"R{s.round_number}={c}" for s, c in zip(ordered, counts))

    if is_balanced(counts, targets):
        return RebalancingPlan(
            is_balanced=True,
            balance_score=score,
            target_per_list=max(targets) if targets else 0,
            expected_counts={s.round_number: c for s, c in zip(ordered, counts)},
            summary=f"{summary_prefix}Lists already balanced ({distribution}); no moves needed.",
        )

    moves = fifo_moves(ordered, targets)
    target_text = ", ".join(f"R{r}={t}" for r, t in expected.items())
    return RebalancingPlan(
        is_balanced=False,
        moves=moves,
        balance_score=score,
        target_per_list=max(targets) if targets else 0,
        expected_counts=expected,
        summary=(
            f"{summary_prefix}Rebalancing {sum(counts)} contact(s) from {distribution} "
            f"to {target_text} with {len(moves)} FIFO-preserving move(s)."
        ),
    )


def _interpolate(rate: float, breakpoints: list[tuple[float, int]]) -> float:
    rate = min(max(rate, breakpoints[0][0]), breakpoints[-1][0])
    for (x0, y0), (x1, y1) in zip(breakpoints, breakpoints[1:]):
        if rate <= x1:
            return y0 + (rate - x0) / (x1 - x0) * (y1 - y0)
    return float(breakpoints[-1][1])


def health_score(metrics: ListHealthMetrics) -> float:
    """
    0-100 list health from bounce and delivery rates.

    Each rate is scored against deliverability benchmarks (bounce under 1%
    and delivery over 99% is excellent; bounce over 10% or delivery under
    90% is critical) and the worse of the two wins. Spam complaints above
    0.1% cost up to 40 more points.
    """
    score = min(
        _interpolate(metrics.bounce_rate, BOUNCE_RATE_SCORES),
        _interpolate(metrics.delivery_rate, DELIVERY_RATE_SCORES),
    )
    if metrics.spam_rate > SPAM_RATE_LIMIT:
        score -= min(40.0, 10 * metrics.spam_rate / SPAM_RATE_LIMIT)
    return round(max(score, 0.0), 1)


def health_grade(score: float) -> str:
    if score >= 95:
        return "excellent"
    if score >= 85:
        return "good"
    if score >= 70:
        return "fair"
    if score >= 50:
        return "poor"
    return "critical"


def _risk_factors(metrics: ListHealthMetrics) -> list[tuple[HealthRiskFactor, HealthRecommendation]]:
    risks = []
    if metrics.bounce_rate > 0.10:
        risks.append((
            HealthRiskFactor(
                factor="Bounce rate above 10%",
                severity="critical",
                description=f"{metrics.bounce_rate * 100:.2f}% of sends bounced; providers may start blocking the sender",
            ),
            HealthRecommendation(
                priority="critical",
                action="Run post-campaign cleanup before the next round goes out",
                expected_impact="Brings the bounce rate back under provider limits",
            ),
        ))
    if metrics.hard_bounce_rate > 0.02:
        risks.append((
            HealthRiskFactor(
                factor="Hard bounce rate above 2%",
                severity="high",
                description="The list carries invalid or outdated addresses",
            ),
            HealthRecommendation(
                priority="high",
                action="Suppress hard-bounced addresses and verify the remaining list",
                expected_impact="Removes addresses that damage sender reputation",
            ),
        ))
    if metrics.soft_bounce_rate > 0.05:
        risks.append((
            HealthRiskFactor(
                factor="Soft bounce rate above 5%",
                severity="medium",
                description="Many recipients hit temporary delivery failures",
            ),
            HealthRecommendation(
                priority="medium",
                action="Watch soft-bouncing contacts and suppress repeat offenders",
                expected_impact="Stops retrying mailboxes that are unlikely to recover",
            ),
        ))
    if metrics.spam_rate > SPAM_RATE_LIMIT:
        risks.append((
            HealthRiskFactor(
                factor="Spam complaint rate above 0.1%",
                severity="critical",
                description="Complaints at this level put the sending domain at risk",
            ),
            HealthRecommendation(
                priority="critical",
                action="Suppress complainants and review consent and content",
                expected_impact="Protects sender reputation",
            ),
        ))
    if metrics.delivery_rate < 0.95:
        risks.append((
            HealthRiskFactor(
                factor="Delivery rate below 95%",
                severity="high",
                description=f"Only {metrics.delivery_rate * 100:.2f}% of sends were delivered",
            ),
            HealthRecommendation(
                priority="high",
                action="Hold further rounds until bounced contacts are cleaned out",
                expected_impact="Raises delivery back above 95%",
            ),
        ))
    return risks


# ── Rule-based backend ─────────────────────────────────
class RuleBasedRecommender:
    """Deterministic deliverability rules."""

    def __init__(self, soft_bounce_threshold: Optional[int] = None):
        self.soft_bounce_threshold = soft_bounce_threshold or get_settings().soft_bounce_threshold

    def recommend(self, fact: BounceFact) -> Optional[SuppressionRecommendation]:
        threshold = self.soft_bounce_threshold
        if fact.bounce_type == "hard":
            return SuppressionRecommendation(
                contact_id=fact.contact_id,
                email=fact.email,
                reason=SuppressionReason.HARD_BOUNCE,
                rationale="Invalid email address - hard bounce",
                confidence=1.0,
                priority="critical",
            )
        if fact.bounce_type == "spam":
            return SuppressionRecommendation(
                contact_id=fact.contact_id,
                email=fact.email,
                reason=SuppressionReason.SPAM_COMPLAINT,
                rationale="Spam complaint - sender reputation risk",
                confidence=1.0,
                priority="critical",
            )
        if fact.bounce_count >= threshold:
            severe = fact.bounce_count >= threshold + 2
            return SuppressionRecommendation(
                contact_id=fact.contact_id,
                email=fact.email,
                reason=SuppressionReason.SOFT_BOUNCE_THRESHOLD,
                rationale=f"{fact.bounce_count} soft bounces - likely permanent delivery issue",
                confidence=0.95 if severe else 0.8,
                priority="critical" if severe else "high",
            )
        return None

    async def plan_suppressions(self, request: SuppressionPlanRequest) -> SuppressionPlan:
        def severity(fact: BounceFact) -> tuple[int, int]:
            return BOUNCE_SEVERITY.get(fact.bounce_type, 0), fact.bounce_count

        worst: dict[str, BounceFact] = {}
        for fact in request.bounces:
            seen = worst.get(fact.contact_id)
            if seen is None or severity(fact) > severity(seen):
                worst[fact.contact_id] = fact

        suppressions = [r for r in (self.recommend(f) for f in worst.values()) if r is not None]
        monitored = len(worst) - len(suppressions)
        confidence = (
            round(sum(s.confidence for s in suppressions) / len(suppressions), 3) if suppressions else 1.0
        )
        by_reason = {}
        for s in suppressions:
            by_reason[s.reason] = by_reason.get(s.reason, 0) + 1
        breakdown = ", ".join(f"{n} {reason}" for reason, n in sorted(by_reason.items())) or "none"

        return SuppressionPlan(
            total_bounces=len(request.bounces),
            suppressions=suppressions,
            confidence=confidence,
            summary=(
                f"{len(suppressions)} of {len(worst)} bounced contact(s) on {request.list_name} "
                f"recommended for suppression ({breakdown}); {monitored} soft bounce(s) kept under observation."
            ),
        )

    async def plan_rebalance(self, request: RebalanceRequest) -> RebalancingPlan:
        total = sum(len(s.contact_ids) for s in request.lists)
        return plan_from_targets(request, equal_targets(total, len(request.lists)))

    async def analyze_list_health(self, metrics: ListHealthMetrics) -> ListHealthAssessment:
        score = health_score(metrics)
        grade = health_grade(score)
        risks = _risk_factors(metrics)
        urgency = max((r.severity for r, _ in risks), key=RISK_SEVERITY.index, default="low")
        recommendations = [rec for _, rec in risks] or [
            HealthRecommendation(
                priority="low",
                action="Keep running post-campaign cleanup after every round",
                expected_impact="Holds the list at its current health",
            )
        ]
        return ListHealthAssessment(
            health_score=score,
            health_grade=grade,
            summary=(
                f"{metrics.list_name} scores {score}/100 ({grade}): bounce rate {metrics.bounce_rate * 100:.2f}%, "
                f"delivery rate {metrics.delivery_rate * 100:.2f}%, {len(risks)} risk factor(s)."
            ),
            risk_factors=[r for r, _ in risks],
            recommendations=recommendations,
            urgency=urgency,
        )


# ── Anthropic backend ──────────────────────────────────
class _LLMSuppressionPlan(BaseModel):
    suppressions: list[SuppressionRecommendation] = Field(default_factory=list)
    confidence: float = Field(ge=0, le=1)
    summary: str


class _LLMRebalanceTargets(BaseModel):
    targets: dict[int, int]
    summary: str = ""


SUPPRESSION_SYSTEM_PROMPT = """You are an email deliverability engineer deciding which bounced contacts to suppress.

Rules:
1. Hard bounces: suppress, reason "hard_bounce", confidence 1.0.
2. Spam complaints: suppress, reason "spam_complaint", confidence 1.0.
3. Soft bounces: suppress only at {threshold}+ bounces, reason "soft_bounce_threshold"
   (confidence 0.8, or 0.95 at {severe}+). Fewer soft bounces: do not suppress.
4. When in doubt, do not suppress.

Respond with ONLY a JSON object:
{{"suppressions": [{{"contact_id": str, "email": str, "reason": str, "rationale": str,
"confidence": 0-1, "priority": "low|medium|high|critical"}}], "confidence": 0-1, "summary": str}}"""

REBALANCE_SYSTEM_PROMPT = """You size sequential email campaign rounds.

Choose how many contacts each round should hold so rounds are as equal as possible.
The sizes must be whole numbers summing exactly to the total; give any remainder to the earliest rounds.
Contacts are assigned to rounds in registration order, so only the sizes matter.

Respond with ONLY a JSON object: {"targets": {"<round_number>": int, ...}, "summary": str}"""


HEALTH_SYSTEM_PROMPT = """You are an email deliverability analyst assessing the health of a contact list.

Industry benchmarks:
- Excellent: bounce rate <1%, delivery rate >99%
- Good: bounce rate 1-2%, delivery rate 97-99%
- Fair: bounce rate 2-5%, delivery rate 94-97%
- Poor: bounce rate 5-10%, delivery rate 90-94%
- Critical: bounce rate >10%, delivery rate <90%

Risk factors:
- Hard bounce rate >2%: invalid or outdated addresses
- Soft bounce rate >5%: temporary delivery issues
- Spam rate >0.1%: major sender reputation risk
- Delivery rate <95%: urgent attention needed

Respond with ONLY a JSON object:
{"health_score": 0-100, "health_grade": "excellent|good|fair|poor|critical", "summary": str,
"risk_factors": [{"factor": str, "severity": "low|medium|high|critical", "description": str}],
"recommendations": [{"priority": "low|medium|high|critical", "action": str, "expected_impact": str}],
"trend_assessment": str, "urgency": "low|medium|high|critical"}"""


def parse_json_response(text: str) -> dict:
    """Parse a model reply, tolerating a surrounding markdown code fence."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise PlanValidationError(f"Model reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PlanValidationError("Model reply must be a JSON object")
    return data


class AnthropicRecommender:
    """Claude-backed planner. Contact selection for moves stays deterministic."""

    def __init__(self, client=None, model: Optional[str] = None, max_tokens: Optional[int] = None):
        settings = get_settings()
        self.model = model or settings.llm_model
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.soft_bounce_threshold = settings.soft_bounce_threshold
        if client is None:
            import anthropic

            if not settings.anthropic_api_key:
                raise ExternalServiceError("anthropic", "ANTHROPIC_API_KEY is not configured", retryable=False)
            client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.client = client

    async def _complete(self, system: str, prompt: str) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")

    async def plan_suppressions(self, request: SuppressionPlanRequest) -> SuppressionPlan:
        system = SUPPRESSION_SYSTEM_PROMPT.format(
            threshold=self.soft_bounce_threshold,
            severe=self.soft_bounce_threshold + 2,
        )
        bounces = [
            {
                "contact_id": b.contact_id,
                "email": b.email,
                "type": b.bounce_type,
                "count": b.bounce_count,
                "last_bounce": b.last_bounce_date.date().isoformat(),
            }
            for b in request.bounces
        ]
        prompt = (
            f"Campaign: {request.campaign_name}\n"
            f"List: {request.list_name}\n"
            f"Current delivery rate: {request.current_delivery_rate * 100:.2f}%\n"
            f"Bounces ({len(bounces)}):\n{json.dumps(bounces, indent=2)}"
        )
        text = await self._complete(system, prompt)
        try:
            parsed = _LLMSuppressionPlan.model_validate(parse_json_response(text))
        except ValidationError as e:
            raise PlanValidationError(f"Invalid suppression plan: {e}") from e

        known = {b.contact_id for b in request.bounces}
        unknown = [s.contact_id for s in parsed.suppressions if s.contact_id not in known]
        if unknown:
            raise PlanValidationError(f"Plan names contacts that did not bounce: {unknown[:5]}")

        logger.info(f"Model suppression plan: {len(parsed.suppressions)} suppression(s), confidence {parsed.confidence}")
        return SuppressionPlan(
            total_bounces=len(request.bounces),
            suppressions=parsed.suppressions,
            confidence=parsed.confidence,
            summary=parsed.summary,
        )

    async def plan_rebalance(self, request: RebalanceRequest) -> RebalancingPlan:
        ordered = _ordered(request.lists)
        total = sum(len(s.contact_ids) for s in ordered)
        distribution = "\n".join(
            f"- Round {s.round_number} ({s.list_name}): {len(s.contact_ids)} contacts" for s in ordered
        )
        prompt = f"Total contacts: {total}\nPreserve FIFO: {request.preserve_fifo}\nCurrent distribution:\n{distribution}"
        text = await self._complete(REBALANCE_SYSTEM_PROMPT, prompt)
        try:
            parsed = _LLMRebalanceTargets.model_validate(parse_json_response(text))
        except ValidationError as e:
            raise PlanValidationError(f"Invalid rebalancing targets: {e}") from e

        rounds = [s.round_number for s in ordered]
        if sorted(parsed.targets) != rounds:
            raise PlanValidationError(f"Targets cover rounds {sorted(parsed.targets)}, expected {rounds}")
        targets = [parsed.targets[r] for r in rounds]
        if any(t < 0 for t in targets) or sum(targets) != total:
            raise PlanValidationError(f"Targets {targets} do not partition {total} contacts")

        prefix = f"{parsed.summary.strip()} " if parsed.summary.strip() else ""
        return plan_from_targets(request, targets, summary_prefix=prefix)

    async def analyze_list_health(self, metrics: ListHealthMetrics) -> ListHealthAssessment:
        prompt = (
            f"List: {metrics.list_name}\n"
            f"Total contacts: {metrics.contact_count}\n"
            f"Active contacts: {metrics.active_contact_count}\n"
            f"Bounce rate: {metrics.bounce_rate * 100:.2f}%\n"
            f"Hard bounce rate: {metrics.hard_bounce_rate * 100:.2f}%\n"
            f"Soft bounce rate: {metrics.soft_bounce_rate * 100:.2f}%\n"
            f"Spam rate: {metrics.spam_rate * 100:.2f}%\n"
            f"Delivery rate: {metrics.delivery_rate * 100:.2f}%"
        )
        text = await self._complete(HEALTH_SYSTEM_PROMPT, prompt)
        try:
            assessment = ListHealthAssessment.model_validate(parse_json_response(text))
        except ValidationError as e:
            raise PlanValidationError(f"Invalid health assessment: {e}") from e

        if assessment.health_grade not in HEALTH_GRADES:
            raise PlanValidationError(f"Unknown health grade: {assessment.health_grade}")
        levels = [assessment.urgency]
        levels += [r.severity for r in assessment.risk_factors]
        levels += [r.priority for r in assessment.recommendations]
        bad = sorted({lvl for lvl in levels if lvl not in RISK_SEVERITY})
        if bad:
            raise PlanValidationError(f"Unknown severity level(s): {bad}")

        logger.info(
            f"Model health assessment for {metrics.list_name}: "
            f"{assessment.health_score} ({assessment.health_grade})"
        )
        return assessment


def get_recommender(backend: Optional[str] = None) -> Recommender:
    backend = backend or get_settings().recommender_backend
    if backend == "anthropic":
        return AnthropicRecommender()
    if backend == "rules":
        return RuleBasedRecommender()
    raise ValueError(f"Unknown recommender backend: {backend}")
