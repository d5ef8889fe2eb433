"""
Post-campaign list maintenance.

One run per completed campaign round:

    CREATED → FETCHING_BOUNCES → PLANNING_SUPPRESSION → SUPPRESSING
            → PLANNING_REBALANCE → REBALANCING → COMPLETED

with FAILED reachable from any stage. The log row is written before any
side effect. External calls (provider, recommender) go through
``call_with_retry``; when one still fails, the stage is recorded in
``stage_errors`` and the run moves on. Storage failures outside per-item
work end the run as failed with the counts gathered so far.

Per-contact work runs on a bounded pool, one session per work item.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select

from sendlists.config import get_settings
from sendlists.database import async_session
from sendlists.models import Contact, ContactStatus
from sendlists.models.maintenance import (
    ListMaintenanceLog,
    MaintenanceAction,
    MaintenanceStage,
    MaintenanceStatus,
)
from sendlists.models.suppression import SuppressionHistoryEntry
from sendlists.schemas import (
    BounceEvent,
    BounceFact,
    ContactMove,
    MaintenanceLogOut,
    MaintenanceResult,
    RebalanceRequest,
    RebalancingPlan,
    RoundListState,
    SuppressionPlan,
    SuppressionPlanRequest,
    SuppressionRecommendation,
    SuppressRequest,
)
from sendlists.services.cache import CacheLayer, get_cache
from sendlists.services.contacts import BOUNCE_TYPES, ContactService
from sendlists.services.errors import (
    ExternalServiceError,
    MaintenanceInProgressError,
    PlanValidationError,
)
from sendlists.services.lists import ListService
from sendlists.services.recommendation import BOUNCE_SEVERITY, fifo_violations, get_recommender
from sendlists.services.resilience import call_with_retry
from sendlists.services.suppression import SuppressionService

logger = logging.getLogger(__name__)

AUTOMATED_ACTOR = "ai"

# In-process run registry: list_id -> log id (empty while the log is being created)
_running_lists: dict[str, str] = {}
_cancel_events: dict[str, asyncio.Event] = {}


class RunCancelled(Exception):
    pass


@dataclass
class RunState:
    campaign_schedule_id: str
    list_id: str
    campaign_name: str
    round_number: int
    started: float = field(default_factory=time.monotonic)
    log_id: Optional[str] = None
    stage: str = MaintenanceStage.CREATED.value
    list_name: str = ""
    bounces_found: int = 0
    contacts_suppressed: int = 0
    contacts_skipped: int = 0
    contacts_rebalanced: int = 0
    contacts_pruned: int = 0
    stage_errors: list = field(default_factory=list)
    summaries: list = field(default_factory=list)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def stage_error(self, error) -> None:
        logger.warning(f"Maintenance {self.log_id} stage {self.stage} failed: {error}")
        self.stage_errors.append({"stage": self.stage, "error": str(error)})

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCancelled(f"Run cancelled during {self.stage}")


class ListMaintenanceOrchestrator:
    def __init__(
        self,
        provider=None,
        recommender=None,
        notifier=None,
        session_factory=None,
        cache: Optional[CacheLayer] = None,
        rounds: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        settings = get_settings()
        if provider is None:
            from sendlists.services.provider import DeliveryProviderClient

            provider = DeliveryProviderClient()
        if notifier is None:
            from sendlists.services.notifications import NotificationChannel

            notifier = NotificationChannel()
        self.provider = provider
        self.recommender = recommender or get_recommender()
        self.notifier = notifier
        self.session_factory = session_factory or async_session
        self.cache = cache or get_cache()
        self.rounds = rounds or settings.campaign_rounds
        self.concurrency = max(concurrency or settings.maintenance_concurrency, 1)
        self.lookback = timedelta(hours=settings.bounce_lookback_hours)
        self.min_confidence = settings.suppression_min_confidence
        self.default_delivery_rate = settings.default_delivery_rate

    # ── Entry point ─────────────────────────────────────
    async def run_post_campaign_maintenance(
        self,
        campaign_schedule_id: str,
        list_id: str,
        campaign_name: str,
        round_number: int,
    ) -> MaintenanceResult:
        if list_id in _running_lists:
            raise MaintenanceInProgressError(list_id)
        _running_lists[list_id] = ""

        run = RunState(campaign_schedule_id, list_id, campaign_name, round_number)
        try:
            try:
                await self._create_log(run)
            except Exception as e:
                logger.error(f"Could not start maintenance for list {list_id}: {e}")
                return MaintenanceResult(success=False, error=f"Failed to create maintenance log: {e}")

            _running_lists[list_id] = run.log_id
            _cancel_events[run.log_id] = run.cancel_event
            logger.info(
                f"Maintenance {run.log_id} started for {campaign_name} round {round_number} (list {list_id})"
            )

            try:
                facts = await self._fetch_bounces(run)
                plan = await self._plan_suppression(run, facts)
                await self._execute_suppression(run, plan)
                rebalance, states = await self._plan_rebalance(run)
                await self._execute_rebalance(run, rebalance, states)
                result = await self._finalize(run)
            except Exception as e:
                result = await self._fail(run, e)

            await self._notify(run)
            return result
        finally:
            _running_lists.pop(list_id, None)
            if run.log_id:
                _cancel_events.pop(run.log_id, None)

    def cancel_run(self, maintenance_log_id: str) -> bool:
        """Stop dispatching work for a running maintenance. Work already started finishes."""
        event = _cancel_events.get(maintenance_log_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for maintenance {maintenance_log_id}")
        return True

    # ── Log bookkeeping ─────────────────────────────────
    async def _create_log(self, run: RunState) -> None:
        async with self.session_factory() as db:
            contact_list = await ListService(db, self.cache).require_list(run.list_id)
            run.list_name = contact_list.name
            log = ListMaintenanceLog(
                campaign_schedule_id=run.campaign_schedule_id,
                list_id=run.list_id,
                maintenance_type=MaintenanceAction.POST_CAMPAIGN_CLEANUP.value,
                status=MaintenanceStatus.IN_PROGRESS.value,
                stage=MaintenanceStage.CREATED.value,
            )
            db.add(log)
            await db.commit()
            run.log_id = log.id

    async def _update_log(self, run: RunState, **fields) -> None:
        async with self.session_factory() as db:
            log = await db.get(ListMaintenanceLog, run.log_id)
            log.stage = run.stage
            log.contacts_suppressed = run.contacts_suppressed
            log.contacts_skipped = run.contacts_skipped
            log.contacts_rebalanced = run.contacts_rebalanced
            log.stage_errors = json.dumps(run.stage_errors)
            for key, value in fields.items():
                setattr(log, key, value)
            await db.commit()

    async def _enter(self, run: RunState, stage: MaintenanceStage) -> None:
        run.check_cancelled()
        run.stage = stage.value
        await self._update_log(run)
        logger.info(f"Maintenance {run.log_id}: {stage.value}")

    # ── Worker pool ─────────────────────────────────────
    async def _run_pool(self, run: RunState, items: list, worker) -> list:
        """
        Run ``worker(item)`` with at most ``concurrency`` in flight.

        Returns one entry per item: the worker's result, the exception it
        raised, or ``None`` for items never dispatched because of cancellation.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(item):
            async with semaphore:
                if run.cancel_event.is_set():
                    return None
                return await worker(item)

        results = await asyncio.gather(*(guarded(item) for item in items), return_exceptions=True)
        for outcome in results:
            if isinstance(outcome, Exception):
                logger.error(f"Maintenance {run.log_id}: {run.stage} item failed: {outcome}")
        return list(results)

    # ── Stage 2: bounce facts ──────────────────────────
    async def _fetch_bounces(self, run: RunState) -> list[BounceFact]:
        await self._enter(run, MaintenanceStage.FETCHING_BOUNCES)

        async with self.session_factory() as db:
            contact_list = await ListService(db, self.cache).require_list(run.list_id)
            external_list_id = contact_list.external_list_id
        if not external_list_id:
            run.stage_error("List has no external list id; bounces cannot be fetched")
            return []

        since = datetime.now(timezone.utc) - self.lookback
        try:
            events = await call_with_retry(
                "delivery_provider",
                self.provider.get_list_bounces,
                external_list_id,
                since,
            )
        except ExternalServiceError as e:
            run.stage_error(e)
            return []

        by_email: dict[str, list[BounceEvent]] = {}
        for event in events:
            if event.bounce_type not in BOUNCE_TYPES:
                logger.warning(f"Ignoring bounce of unknown type {event.bounce_type!r} for {event.email}")
                continue
            by_email.setdefault(event.email.strip().lower(), []).append(event)
        run.bounces_found = len(events)
        logger.info(f"Maintenance {run.log_id}: {len(events)} bounce event(s) for {len(by_email)} address(es)")

        results = await self._run_pool(run, list(by_email.items()), self._enrich_contact)
        facts = [r for r in results if isinstance(r, BounceFact)]
        failed = sum(1 for r in results if isinstance(r, Exception))
        if failed:
            run.stage_error(f"{failed} bounce event group(s) could not be recorded")
        run.check_cancelled()
        return facts

    async def _enrich_contact(self, item: tuple[str, list[BounceEvent]]) -> BounceFact:
        """Create-or-get the contact and count every bounce. Never suppresses."""
        email, events = item
        events = sorted(events, key=lambda e: e.bounced_at)
        external_id = next((e.contact_external_id for e in events if e.contact_external_id), None)

        async with self.session_factory() as db:
            contacts = ContactService(db, self.cache)
            contact = await contacts.create_or_get_contact(email, external_id=external_id)
            for event in events:
                contact = await contacts.record_bounce(contact.id, event.bounce_type, event.bounced_at)
            worst = max(events, key=lambda e: BOUNCE_SEVERITY[e.bounce_type])
            return BounceFact(
                contact_id=contact.id,
                email=contact.email,
                bounce_type=worst.bounce_type,
                bounce_count=contact.bounce_count,
                last_bounce_date=events[-1].bounced_at,
                first_bounce_date=events[0].bounced_at,
            )

    # ── Stage 3: suppression plan ──────────────────────
    async def _plan_suppression(self, run: RunState, facts: list[BounceFact]) -> Optional[SuppressionPlan]:
        await self._enter(run, MaintenanceStage.PLANNING_SUPPRESSION)
        if not facts:
            run.summaries.append("No bounces to act on.")
            return SuppressionPlan(summary="No bounces in the lookback window.", confidence=1.0)

        async with self.session_factory() as db:
            contact_list = await ListService(db, self.cache).require_list(run.list_id)
            delivery_rate = contact_list.delivery_rate
        if delivery_rate is None:
            delivery_rate = self.default_delivery_rate

        request = SuppressionPlanRequest(
            campaign_name=run.campaign_name,
            list_name=run.list_name,
            bounces=facts,
            current_delivery_rate=delivery_rate,
        )
        try:
            plan = await call_with_retry("recommender", self.recommender.plan_suppressions, request)
        except (ExternalServiceError, PlanValidationError) as e:
            run.stage_error(e)
            return None

        # Logged in full even though low-confidence items are not executed
        await self._update_log(
            run,
            suppression_plan=plan.model_dump_json(),
            ai_recommendation=plan.summary,
            ai_confidence=plan.confidence,
        )
        run.summaries.append(plan.summary)
        logger.info(
            f"Maintenance {run.log_id}: suppression plan with {len(plan.suppressions)} item(s), "
            f"confidence {plan.confidence}"
        )
        return plan

    def accepted_suppressions(self, run: RunState, plan: SuppressionPlan) -> list[SuppressionRecommendation]:
        accepted = {}
        for item in plan.suppressions:
            if item.confidence < self.min_confidence:
                logger.info(
                    f"Skipping suppression of {item.contact_id}: confidence {item.confidence} "
                    f"below {self.min_confidence}"
                )
                run.contacts_skipped += 1
                continue
            if item.contact_id in accepted:
                continue
            accepted[item.contact_id] = item
        return list(accepted.values())

    # ── Stage 4: suppression ───────────────────────────
    async def _execute_suppression(self, run: RunState, plan: Optional[SuppressionPlan]) -> None:
        await self._enter(run, MaintenanceStage.SUPPRESSING)
        if plan is None or not plan.suppressions:
            return

        items = self.accepted_suppressions(run, plan)

        async def suppress(item: SuppressionRecommendation) -> bool:
            async with self.session_factory() as db:
                return await SuppressionService(db, self.cache).apply_suppression(
                    SuppressRequest(
                        contact_id=item.contact_id,
                        reason=item.reason,
                        suppressed_by=AUTOMATED_ACTOR,
                        ai_rationale=item.rationale,
                        confidence=item.confidence,
                        source_campaign_id=run.campaign_schedule_id,
                        metadata={"priority": item.priority, "maintenance_log_id": run.log_id},
                    )
                )

        results = await self._run_pool(run, items, suppress)
        run.contacts_suppressed += sum(1 for r in results if r is True)
        run.contacts_skipped += sum(1 for r in results if r is False)
        failed = sum(1 for r in results if isinstance(r, Exception))
        if failed:
            run.stage_error(f"{failed} of {len(items)} suppression(s) failed")
        await self._update_log(run)
        run.check_cancelled()

    # ── Stage 5: rebalance plan ────────────────────────
    async def _plan_rebalance(self, run: RunState) -> tuple[Optional[RebalancingPlan], list[RoundListState]]:
        await self._enter(run, MaintenanceStage.PLANNING_REBALANCE)

        async with self.session_factory() as db:
            round_lists = await ListService(db, self.cache).get_round_lists(self.rounds)
        missing = [n for n, cl in round_lists.items() if cl is None]
        if missing:
            logger.info(f"Maintenance {run.log_id}: rounds {missing} have no list; skipping rebalance")
            run.summaries.append(f"Rebalance skipped: rounds {missing} are not tracked.")
            return None, []

        states = []
        async with self.session_factory() as db:
            contacts = ContactService(db, self.cache)
            for round_number, contact_list in sorted(round_lists.items()):
                run.contacts_pruned += await self._prune_suppressed(contacts, contact_list.id)
                ids = await contacts.get_registration_ordered_ids(contact_list.id)
                states.append(
                    RoundListState(
                        list_id=contact_list.id,
                        list_name=contact_list.name,
                        round_number=round_number,
                        contact_count=len(ids),
                        contact_ids=ids,
                    )
                )
        if run.contacts_pruned:
            logger.info(f"Maintenance {run.log_id}: pruned {run.contacts_pruned} suppressed contact(s) from rounds")

        request = RebalanceRequest(
            lists=states,
            total_contacts=sum(s.contact_count for s in states),
            preserve_fifo=True,
        )
        try:
            plan = await call_with_retry("recommender", self.recommender.plan_rebalance, request)
            plan = await self.validate_rebalance_plan(plan, states)
        except (ExternalServiceError, PlanValidationError) as e:
            run.stage_error(e)
            return None, states

        await self._update_log(run, rebalancing_plan=plan.model_dump_json())
        run.summaries.append(plan.summary)
        return plan, states

    async def _prune_suppressed(self, contacts: ContactService, list_id: str) -> int:
        member_ids = await contacts.get_active_member_ids(list_id)
        suppressed = await self._suppressed_among(contacts.db, member_ids)
        for contact_id in member_ids:
            if contact_id in suppressed:
                await contacts.remove_contact_from_list(contact_id, list_id)
        return len(suppressed)

    @staticmethod
    async def _suppressed_among(db, contact_ids: list[str]) -> set[str]:
        if not contact_ids:
            return set()
        by_status = await db.execute(
            select(Contact.id).where(
                Contact.id.in_(contact_ids),
                Contact.status == ContactStatus.SUPPRESSED.value,
            )
        )
        by_entry = await db.execute(
            select(SuppressionHistoryEntry.contact_id).where(
                SuppressionHistoryEntry.contact_id.in_(contact_ids),
                SuppressionHistoryEntry.is_active.is_(True),
            )
        )
        return set(by_status.scalars().all()) | set(by_entry.scalars().all())

    async def validate_rebalance_plan(self, plan: RebalancingPlan, states: list[RoundListState]) -> RebalancingPlan:
        """
        Drop moves that cannot be applied and reject a plan that breaks FIFO
        across rounds. Returns the plan with only the moves that will run.
        """
        members = {s.list_id: set(s.contact_ids) for s in states}
        moved_ids = [m.contact_id for m in plan.moves]
        async with self.session_factory() as db:
            suppressed = await self._suppressed_among(db, moved_ids)

        kept: list[ContactMove] = []
        seen = set()
        for move in plan.moves:
            problem = None
            if move.from_list_id not in members or move.to_list_id not in members:
                problem = "is not between round lists"
            elif move.from_list_id == move.to_list_id:
                problem = "does not change lists"
            elif move.contact_id not in members[move.from_list_id]:
                problem = "moves a contact that is not in its source list"
            elif move.contact_id in suppressed:
                problem = "moves a suppressed contact"
            elif move.contact_id in seen:
                problem = "moves a contact twice"
            if problem:
                logger.warning(f"Dropping move of {move.contact_id}: {problem}")
                continue
            seen.add(move.contact_id)
            kept.append(move)

        violations = fifo_violations(states, kept)
        if violations:
            raise PlanValidationError(f"Rebalancing plan breaks FIFO order for {violations} contact(s)")

        return plan.model_copy(update={"moves": kept})

    # ── Stage 6: rebalance ─────────────────────────────
    async def _execute_rebalance(
        self,
        run: RunState,
        plan: Optional[RebalancingPlan],
        states: list[RoundListState],
    ) -> None:
        await self._enter(run, MaintenanceStage.REBALANCING)
        if plan is None or plan.is_balanced or not plan.moves:
            return

        # Moves into the same list run in registration order so appended positions follow it
        queue = [cid for s in sorted(states, key=lambda s: s.round_number) for cid in s.contact_ids]
        rank = {cid: i for i, cid in enumerate(queue)}
        by_target: dict[str, list[ContactMove]] = {}
        for move in sorted(plan.moves, key=lambda m: rank.get(m.contact_id, len(rank))):
            by_target.setdefault(move.to_list_id, []).append(move)

        async def apply_moves(moves: list[ContactMove]) -> tuple[int, int]:
            done = failed = 0
            async with self.session_factory() as db:
                contacts = ContactService(db, self.cache)
                for move in moves:
                    if run.cancel_event.is_set():
                        break
                    removed = False
                    try:
                        contact = await contacts.require_contact(move.contact_id)
                        if contact.status == ContactStatus.SUPPRESSED.value:
                            logger.warning(f"Skipping move of suppressed contact {move.contact_id}")
                            continue
                        await contacts.remove_contact_from_list(move.contact_id, move.from_list_id)
                        removed = True
                        await contacts.add_contact_to_list(move.contact_id, move.to_list_id)
                        done += 1
                    except Exception as e:
                        await db.rollback()
                        failed += 1
                        logger.error(f"Move of {move.contact_id} to {move.to_list_id} failed: {e}")
                        if removed:
                            await self._restore_membership(contacts, move)
            return done, failed

        results = await self._run_pool(run, list(by_target.values()), apply_moves)
        failed = 0
        for outcome in results:
            if isinstance(outcome, tuple):
                run.contacts_rebalanced += outcome[0]
                failed += outcome[1]
            elif isinstance(outcome, Exception):
                failed += 1
        if failed:
            run.stage_error(f"{failed} move(s) failed")
        await self._update_log(run)
        run.check_cancelled()

    @staticmethod
    async def _restore_membership(contacts: ContactService, move: ContactMove) -> None:
        """Put a half-moved contact back where it was (same row, same position)."""
        try:
            await contacts.add_contact_to_list(move.contact_id, move.from_list_id)
        except Exception as e:
            await contacts.db.rollback()
            logger.error(f"Could not restore {move.contact_id} to {move.from_list_id}: {e}")

    # ── Stage 7: finalize ──────────────────────────────
    def _summary(self, run: RunState) -> str:
        parts = [
            f"Suppressed {run.contacts_suppressed} contact(s) ({run.contacts_skipped} skipped) "
            f"from {run.bounces_found} bounce event(s); rebalanced {run.contacts_rebalanced} contact(s)."
        ]
        if run.contacts_pruned:
            parts.append(f"Pruned {run.contacts_pruned} suppressed contact(s) from round lists.")
        parts.extend(s for s in run.summaries if s)
        return " ".join(parts)

    async def _finalize(self, run: RunState) -> MaintenanceResult:
        run.check_cancelled()
        run.stage = MaintenanceStage.COMPLETED.value
        summary = self._summary(run)
        await self._update_log(
            run,
            status=MaintenanceStatus.COMPLETED.value,
            completed_at=datetime.now(timezone.utc),
            duration_ms=run.duration_ms,
            ai_recommendation=summary,
        )
        logger.info(f"Maintenance {run.log_id} completed in {run.duration_ms}ms: {summary}")
        return MaintenanceResult(
            success=True,
            maintenance_log_id=run.log_id,
            contacts_suppressed=run.contacts_suppressed,
            contacts_rebalanced=run.contacts_rebalanced,
            summary=summary,
            error="; ".join(f"{e['stage']}: {e['error']}" for e in run.stage_errors) or None,
        )

    async def _fail(self, run: RunState, error: Exception) -> MaintenanceResult:
        failed_stage = run.stage
        message = f"{failed_stage}: {error}"
        logger.error(f"Maintenance {run.log_id} failed at {failed_stage}: {error}")
        run.stage_errors.append({"stage": failed_stage, "error": str(error)})
        run.stage = MaintenanceStage.FAILED.value
        try:
            await self._update_log(
                run,
                status=MaintenanceStatus.FAILED.value,
                error_message=message,
                completed_at=datetime.now(timezone.utc),
                duration_ms=run.duration_ms,
            )
        except Exception as e:
            logger.error(f"Could not mark maintenance {run.log_id} as failed: {e}")
        return MaintenanceResult(
            success=False,
            maintenance_log_id=run.log_id,
            contacts_suppressed=run.contacts_suppressed,
            contacts_rebalanced=run.contacts_rebalanced,
            summary=self._summary(run),
            error=message,
        )

    async def _notify(self, run: RunState) -> None:
        try:
            log = await self.get_maintenance_log(run.log_id)
        except Exception as e:
            logger.warning(f"Could not load maintenance {run.log_id} for notification: {e}")
            return
        if log is not None:
            await self.notifier.send_summary(log, list_name=run.list_name, campaign_name=run.campaign_name)

    # ── Log queries ────────────────────────────────────
    async def get_maintenance_logs(
        self,
        campaign_schedule_id: Optional[str] = None,
        list_id: Optional[str] = None,
    ) -> list[MaintenanceLogOut]:
        stmt = select(ListMaintenanceLog)
        if campaign_schedule_id:
            stmt = stmt.where(ListMaintenanceLog.campaign_schedule_id == campaign_schedule_id)
        if list_id:
            stmt = stmt.where(ListMaintenanceLog.list_id == list_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt.order_by(ListMaintenanceLog.executed_at.desc()))
            return [MaintenanceLogOut.from_model(log) for log in result.scalars().all()]

    async def get_maintenance_log(self, maintenance_log_id: str) -> Optional[MaintenanceLogOut]:
        async with self.session_factory() as db:
            log = await db.get(ListMaintenanceLog, maintenance_log_id)
            return MaintenanceLogOut.from_model(log) if log else None

    @staticmethod
    def is_running(list_id: str) -> bool:
        return list_id in _running_lists

