"""
Reconciliation engine - audits the local store against ServiceM8 and heals drift.

Run types:
- incremental: entities modified upstream since the last completed run, plus
  companies flagged sync_pending by earlier partial syncs. Falls back to a
  full run when there is no completed run to measure from.
- full: full sync, consistency checks, repair of what the checks found.
- emergency: same work as full, triggered by an operator. Scheduled runs
  yield to a waiting emergency run.

Every run writes a ReconciliationLog row at start and sets a terminal status
at the end. Each run is bounded by a wall-clock budget; a run that exceeds it
is marked failed, and the watchdog sweep fails any row left running past the
budget (process crash, deploy).
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.database import async_session_factory
from fieldsync.integrations.errors import NotFoundError, RateLimitedError, ServiceM8Error
from fieldsync.integrations.servicem8 import ServiceM8Client
from fieldsync.models.company import Company
from fieldsync.models.job import Job
from fieldsync.models.quote import Quote
from fieldsync.models.reconciliation_log import (
    ReconciliationLog,
    ReconciliationStatus,
    ReconciliationType,
)
from fieldsync.schemas.servicem8 import RequestOptions, SM8Company, SM8Job
from fieldsync.schemas.sync import ConsistencyIssue, ConsistencyReport, IssueCategory
from fieldsync.services import entity_mapping
from fieldsync.services.audit import record_audit
from fieldsync.services.sync import SyncService
from fieldsync.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)

STATISTICS_WINDOW_DAYS = 30
MAX_DETAIL_ERRORS = 20
SM8_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class RunOutcome:
    def __init__(self):
        self.records_processed = 0
        self.errors = 0
        self.error_messages: list[str] = []
        self.details: dict[str, Any] = {}

    def add_status(self, status) -> None:
        self.records_processed += status.synced_records
        self.errors += status.failed_records
        self.error_messages.extend(status.errors)


class ReconciliationEngine:
    def __init__(
        self,
        client: ServiceM8Client,
        sync_service: SyncService,
        session_factory: Callable[[], AsyncSession] = async_session_factory,
        run_budget_seconds: float = 1800,
        sample_size: int = 10,
        watchdog_grace_seconds: float = 300,
    ):
        self.client = client
        self.sync = sync_service
        self._session_factory = session_factory
        self.run_budget_seconds = run_budget_seconds
        self.sample_size = sample_size
        self.watchdog_grace_seconds = watchdog_grace_seconds
        self._run_lock = asyncio.Lock()
        self._emergency_waiting = 0

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run(self, run_type: str = ReconciliationType.INCREMENTAL, actor: str = "system") -> ReconciliationLog:
        if run_type not in ReconciliationType.ALL:
            raise ValueError(f"Invalid reconciliation type: {run_type}")

        if run_type == ReconciliationType.EMERGENCY:
            self._emergency_waiting += 1
            try:
                async with self._run_lock:
                    return await self._execute(run_type, actor)
            finally:
                self._emergency_waiting -= 1

        while True:
            await self._run_lock.acquire()
            if not self._emergency_waiting:
                break
            # An emergency run is waiting; hand the lock over first
            self._run_lock.release()
            await asyncio.sleep(0.05)
        try:
            return await self._execute(run_type, actor)
        finally:
            self._run_lock.release()

    async def _execute(self, run_type: str, actor: str) -> ReconciliationLog:
        async with self._session_factory() as db:
            log = ReconciliationLog(type=run_type, status=ReconciliationStatus.RUNNING)
            db.add(log)
            await db.commit()
            log_id = log.id

        logger.info("Reconciliation %s started (run %s)", run_type, str(log_id)[:8], extra={"run_id": str(log_id)})
        started = time.monotonic()
        outcome: Optional[RunOutcome] = None
        error_message: Optional[str] = None
        try:
            outcome = await asyncio.wait_for(self._reconcile(run_type), timeout=self.run_budget_seconds)
        except asyncio.TimeoutError:
            error_message = f"Run exceeded budget of {self.run_budget_seconds}s"
        except Exception as e:
            logger.error("Reconciliation %s crashed: %s", run_type, str(e), exc_info=True)
            error_message = f"{type(e).__name__}: {e}"

        duration_ms = int((time.monotonic() - started) * 1000)
        async with self._session_factory() as db:
            log = await db.get(ReconciliationLog, log_id)
            log.completed_at = datetime.now(timezone.utc)
            log.duration_ms = duration_ms
            if outcome is not None:
                log.status = ReconciliationStatus.COMPLETED
                log.records_processed = outcome.records_processed
                log.errors = outcome.errors
                log.details = {**outcome.details, "errors": outcome.error_messages[:MAX_DETAIL_ERRORS]}
            else:
                log.status = ReconciliationStatus.FAILED
                log.errors = 1
                log.error_message = error_message
            await record_audit(
                db,
                "reconciliation_completed" if outcome is not None else "reconciliation_failed",
                status="success" if outcome is not None else "failure",
                actor=actor,
                target_type="reconciliation",
                target_id=str(log_id),
                duration_ms=duration_ms,
                error_message=error_message,
                data={"type": run_type, "records_processed": log.records_processed, "errors": log.errors},
            )
            await db.commit()

        if outcome is None:
            await send_alert(
                AlertType.RECONCILIATION_FAILED,
                f"{run_type} reconciliation failed: {error_message}",
                extra={"run_id": str(log_id)},
            )
        elif outcome.errors:
            await send_alert(
                AlertType.RECONCILIATION_ERRORS,
                f"{run_type} reconciliation completed with {outcome.errors} errors",
                severity="warning",
                extra={"run_id": str(log_id), "records_processed": outcome.records_processed},
            )

        logger.info(
            "Reconciliation %s %s in %dms: records=%d errors=%d",
            run_type, log.status, duration_ms, log.records_processed, log.errors,
            extra={"run_id": str(log_id)},
        )
        return log

    async def _reconcile(self, run_type: str) -> RunOutcome:
        if run_type == ReconciliationType.INCREMENTAL:
            last = await self.last_completed_run()
            if last is not None:
                return await self._incremental(entity_mapping.as_utc(last.started_at))
            logger.info("No completed reconciliation yet - running incremental as full")

        outcome = RunOutcome()
        if run_type == ReconciliationType.INCREMENTAL:
            outcome.details["fallback"] = "no_previous_run"

        result = await self.sync.perform_full_sync()
        outcome.add_status(result.companies)
        outcome.add_status(result.jobs)
        outcome.add_status(result.quotes)
        outcome.details["full_sync"] = {
            "companies": result.companies.synced_records,
            "jobs": result.jobs.synced_records,
            "quotes": result.quotes.synced_records,
            "skipped_companies": result.skipped_companies,
        }

        if result.skipped_companies:
            # Rate limit already exhausted; checks would only fail
            outcome.details["consistency"] = {"skipped": "rate_limited"}
            return outcome

        try:
            report = await self.perform_consistency_checks()
        except ServiceM8Error as e:
            outcome.errors += 1
            outcome.error_messages.append(f"Consistency checks failed: {e}")
            return outcome

        repair = await self.repair_issues(report.issues)
        outcome.records_processed += repair["repaired"]
        outcome.errors += repair["failed"]
        outcome.error_messages.extend(repair["errors"])
        outcome.details["consistency"] = {
            "issues": len(report.issues),
            "by_category": report.by_category(),
            "repaired": repair["repaired"],
            "deferred": repair["deferred"],
        }
        return outcome

    async def _incremental(self, since: datetime) -> RunOutcome:
        outcome = RunOutcome()
        modified_since = since.strftime(SM8_TIMESTAMP_FORMAT)
        options = RequestOptions(modified_since=modified_since)
        outcome.details["modified_since"] = modified_since

        companies = await self.client.get_companies(options, fresh=True)
        company_status, _ = await self.sync.sync_company_records(companies["data"])
        outcome.add_status(company_status)

        jobs = await self.client.get_jobs(None, options, fresh=True)
        outcome.add_status(await self.sync.sync_job_records(jobs["data"]))

        pending = await self.sync.pending_company_uuids()
        retried = []
        for company_uuid in pending:
            try:
                outcome.add_status(await self.sync.sync_jobs_for_company(company_uuid))
                outcome.add_status(await self.sync.sync_quotes_for_company(company_uuid))
                retried.append(company_uuid)
            except RateLimitedError:
                outcome.errors += 1
                outcome.error_messages.append(
                    f"Rate limit reached with {len(pending) - len(retried)} pending companies left"
                )
                break
            except ServiceM8Error as e:
                outcome.errors += 1
                outcome.error_messages.append(f"Failed to sync company {company_uuid}: {e.message}")

        outcome.details.update({
            "modified_companies": company_status.total_records,
            "modified_jobs": len(jobs["data"]),
            "pending_companies": len(pending),
            "pending_resynced": retried,
        })
        return outcome

    # ------------------------------------------------------------------
    # Consistency checks
    # ------------------------------------------------------------------

    async def perform_consistency_checks(self) -> ConsistencyReport:
        """
        Compare every company, then spot-check jobs and quote approval for a
        sample of companies (least recently synced first).
        """
        report = ConsistencyReport()
        upstream_companies = _index(
            (await self.client.get_companies(fresh=True))["data"], SM8Company
        )

        async with self._session_factory() as db:
            result = await db.execute(select(Company).where(Company.deleted_at.is_(None)))
            local_companies = {c.sm8_uuid: c for c in result.scalars().all()}

        _classify(
            report, "company", upstream_companies, local_companies, entity_mapping.map_company
        )
        report.details["companies"] = {
            "local": len(local_companies),
            "upstream": len(upstream_companies),
        }

        shared = [local_companies[u] for u in upstream_companies if u in local_companies]
        shared.sort(key=lambda c: (c.last_synced_at is not None, entity_mapping.as_utc(c.last_synced_at) or datetime.min.replace(tzinfo=timezone.utc)))
        sample = shared[: self.sample_size]

        job_counts = {}
        for company in sample:
            job_counts[company.sm8_uuid] = await self._check_company_jobs(report, company.sm8_uuid)

        report.details["sampled_companies"] = [c.sm8_uuid for c in sample]
        report.details["job_counts"] = job_counts
        report.details["integrity"] = await self._integrity_counts()
        report.details["by_category"] = report.by_category()
        report.details["checked_at"] = datetime.now(timezone.utc).isoformat()
        logger.info(
            "Consistency checks: %d issues across %d companies (%d sampled)",
            len(report.issues), len(upstream_companies), len(sample),
        )
        return report

    async def _check_company_jobs(self, report: ConsistencyReport, company_uuid: str) -> dict:
        upstream_jobs = _index(
            (await self.client.get_jobs(company_uuid, fresh=True))["data"], SM8Job
        )
        async with self._session_factory() as db:
            result = await db.execute(
                select(Job).where(Job.company_uuid == company_uuid, Job.deleted_at.is_(None))
            )
            local_jobs = {j.sm8_uuid: j for j in result.scalars().all()}
            quote_result = await db.execute(
                select(Quote).where(Quote.job_uuid.in_(list(local_jobs)))
            ) if local_jobs else None
            local_quotes = {q.job_uuid: q for q in quote_result.scalars().all()} if quote_result else {}

        _classify(
            report, "job", upstream_jobs, local_jobs, entity_mapping.map_job,
            company_uuid=company_uuid,
        )

        for job_uuid, job in upstream_jobs.items():
            if job_uuid not in local_jobs or not job.has_quote:
                continue
            expected = entity_mapping.quote_status(job)
            quote = local_quotes.get(job_uuid)
            if quote is None:
                report.issues.append(ConsistencyIssue(
                    category=IssueCategory.MISSING_LOCALLY,
                    entity_type="quote",
                    uuid=job_uuid,
                    company_uuid=company_uuid,
                    expected=expected,
                    message=f"Quote for job {job_uuid} missing locally",
                ))
            elif quote.status != expected:
                report.issues.append(ConsistencyIssue(
                    category=IssueCategory.STALE_LOCALLY,
                    entity_type="quote",
                    uuid=job_uuid,
                    company_uuid=company_uuid,
                    field="status",
                    expected=expected,
                    actual=quote.status,
                    message=f"Quote approval state for job {job_uuid} is {quote.status}, expected {expected}",
                ))

        return {"local": len(local_jobs), "upstream": len(upstream_jobs)}

    async def _integrity_counts(self) -> dict:
        async with self._session_factory() as db:
            jobs_without_company = await db.scalar(
                select(func.count(Job.id))
                .outerjoin(Company, Company.sm8_uuid == Job.company_uuid)
                .where(Job.deleted_at.is_(None), Company.id.is_(None))
            )
            quotes_on_deleted_jobs = await db.scalar(
                select(func.count(Quote.id))
                .join(Job, Quote.job_id == Job.id)
                .where(Job.deleted_at.is_not(None))
            )
        return {
            "jobs_without_company": jobs_without_company or 0,
            "quotes_on_deleted_jobs": quotes_on_deleted_jobs or 0,
        }

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    async def repair_issues(self, issues: list[ConsistencyIssue]) -> dict:
        """
        Re-fetch and upsert missing/stale entities; soft-delete orphans that
        ServiceM8 confirms are gone. Stops at the rate limit and flags the
        affected companies for the next incremental run.
        """
        repaired = 0
        failed = 0
        errors: list[str] = []
        deferred: list[ConsistencyIssue] = []

        for position, issue in enumerate(issues):
            try:
                await self._repair(issue)
                repaired += 1
            except RateLimitedError:
                deferred = issues[position:]
                break
            except Exception as e:
                failed += 1
                errors.append(f"Failed to repair {issue.entity_type} {issue.uuid}: {e}")

        if deferred:
            companies = sorted({
                i.company_uuid or (i.uuid if i.entity_type == "company" else None)
                for i in deferred
            } - {None})
            await self.sync.flag_sync_pending(companies)
            logger.warning("Repair stopped by rate limit - %d issues deferred", len(deferred))

        return {"repaired": repaired, "failed": failed, "deferred": len(deferred), "errors": errors}

    async def _repair(self, issue: ConsistencyIssue) -> None:
        if issue.entity_type == "company":
            try:
                raw = await self.client.get_company(issue.uuid)
            except NotFoundError:
                if issue.category != IssueCategory.ORPHANED_LOCALLY:
                    raise
                await self.sync.soft_delete(Company, issue.uuid)
                return
            await self.sync.upsert_company(raw)
            return

        # job and quote issues both repair from the job snapshot
        try:
            raw = await self.client.get_job(issue.uuid)
        except NotFoundError:
            if issue.category != IssueCategory.ORPHANED_LOCALLY:
                raise
            await self.sync.soft_delete(Job, issue.uuid)
            return
        job = SM8Job.model_validate(raw)
        await self.sync.upsert_job(job)
        if job.has_quote:
            await self.sync.upsert_quote(job)

    # ------------------------------------------------------------------
    # History, statistics, watchdog
    # ------------------------------------------------------------------

    async def last_completed_run(self, run_type: Optional[str] = None) -> Optional[ReconciliationLog]:
        async with self._session_factory() as db:
            query = select(ReconciliationLog).where(
                ReconciliationLog.status == ReconciliationStatus.COMPLETED
            )
            if run_type:
                query = query.where(ReconciliationLog.type == run_type)
            result = await db.execute(query.order_by(ReconciliationLog.started_at.desc()).limit(1))
            return result.scalar_one_or_none()

    async def history(self, limit: int = 50, run_type: Optional[str] = None) -> list[dict]:
        async with self._session_factory() as db:
            query = select(ReconciliationLog)
            if run_type:
                query = query.where(ReconciliationLog.type == run_type)
            result = await db.execute(query.order_by(ReconciliationLog.started_at.desc()).limit(limit))
            return [log.to_dict() for log in result.scalars().all()]

    async def statistics(self, days: int = STATISTICS_WINDOW_DAYS) -> dict:
        """Aggregated over the rolling window on every call."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self._session_factory() as db:
            row = (await db.execute(
                select(
                    func.count(ReconciliationLog.id),
                    func.count(ReconciliationLog.id).filter(
                        ReconciliationLog.status == ReconciliationStatus.COMPLETED
                    ),
                    func.count(ReconciliationLog.id).filter(
                        ReconciliationLog.status == ReconciliationStatus.FAILED
                    ),
                    func.avg(ReconciliationLog.duration_ms),
                    func.coalesce(func.sum(ReconciliationLog.records_processed), 0),
                    func.coalesce(func.sum(ReconciliationLog.errors), 0),
                ).where(ReconciliationLog.started_at >= cutoff)
            )).one()

        total, successful, failed, avg_duration, records, errors = row
        return {
            "window_days": days,
            "total_reconciliations": total or 0,
            "successful_reconciliations": successful or 0,
            "failed_reconciliations": failed or 0,
            "average_duration_ms": round(float(avg_duration), 1) if avg_duration is not None else 0.0,
            "total_records_processed": int(records or 0),
            "total_errors": int(errors or 0),
        }

    async def metrics(self) -> dict:
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        async with self._session_factory() as db:
            failed_24h = await db.scalar(
                select(func.count(ReconciliationLog.id)).where(
                    ReconciliationLog.status == ReconciliationStatus.FAILED,
                    ReconciliationLog.started_at >= since,
                )
            )
            running = await db.scalar(
                select(func.count(ReconciliationLog.id)).where(
                    ReconciliationLog.status == ReconciliationStatus.RUNNING
                )
            )
            jobs = await db.scalar(select(func.count(Job.id)).where(Job.deleted_at.is_(None)))
            companies = await db.scalar(
                select(func.count(Company.id)).where(Company.deleted_at.is_(None))
            )
            quotes = await db.scalar(select(func.count(Quote.id)))
            pending = await db.scalar(
                select(func.count(Company.id)).where(Company.sync_pending.is_(True))
            )

        return {
            "recent_runs": await self.history(limit=10),
            "failed_last_24h": failed_24h or 0,
            "running": running or 0,
            "totals": {
                "jobs": jobs or 0,
                "companies": companies or 0,
                "quotes": quotes or 0,
                "companies_sync_pending": pending or 0,
            },
        }

    async def watchdog_sweep(self) -> int:
        """Fail runs left in running past the budget plus grace period."""
        limit = timedelta(seconds=self.run_budget_seconds + self.watchdog_grace_seconds)
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReconciliationLog).where(
                    ReconciliationLog.status == ReconciliationStatus.RUNNING,
                    ReconciliationLog.started_at < now - limit,
                )
            )
            stuck = list(result.scalars().all())
            for log in stuck:
                log.status = ReconciliationStatus.FAILED
                log.completed_at = now
                log.duration_ms = int((now - entity_mapping.as_utc(log.started_at)).total_seconds() * 1000)
                log.errors = max(log.errors, 1)
                log.error_message = "Run did not finish within its budget; marked failed by watchdog"
            await db.commit()

        if stuck:
            logger.warning("Watchdog failed %d stuck reconciliation runs", len(stuck))
            await send_alert(
                AlertType.RECONCILIATION_STUCK,
                f"{len(stuck)} reconciliation runs were stuck in running",
                extra={"run_ids": ", ".join(str(log.id)[:8] for log in stuck)},
            )
        return len(stuck)


def _index(records: list, schema) -> dict:
    """uuid -> validated snapshot; records that fail validation are skipped."""
    indexed = {}
    for raw in records:
        try:
            item = schema.model_validate(raw)
        except ValueError:
            logger.debug("Skipping invalid %s record in consistency check", schema.__name__)
            continue
        indexed[item.uuid] = item
    return indexed


def _classify(
    report: ConsistencyReport,
    entity_type: str,
    upstream: dict,
    local: dict,
    mapper,
    company_uuid: Optional[str] = None,
) -> None:
    for entity_uuid, snapshot in upstream.items():
        row = local.get(entity_uuid)
        if row is None:
            report.issues.append(ConsistencyIssue(
                category=IssueCategory.MISSING_LOCALLY,
                entity_type=entity_type,
                uuid=entity_uuid,
                company_uuid=company_uuid,
                message=f"{entity_type} {entity_uuid} exists upstream but not locally",
            ))
            continue
        try:
            changed = entity_mapping.diff_fields(row, mapper(snapshot))
        except ValueError as e:
            logger.debug("Cannot compare %s %s: %s", entity_type, entity_uuid, str(e))
            continue
        if changed:
            fields = sorted(changed)
            report.issues.append(ConsistencyIssue(
                category=IssueCategory.STALE_LOCALLY,
                entity_type=entity_type,
                uuid=entity_uuid,
                company_uuid=company_uuid,
                field=",".join(fields),
                expected={f: _jsonable(changed[f]) for f in fields},
                actual={f: _jsonable(getattr(row, f)) for f in fields},
                message=f"{entity_type} {entity_uuid} differs in {', '.join(fields)}",
            ))

    for entity_uuid in local:
        if entity_uuid not in upstream:
            report.issues.append(ConsistencyIssue(
                category=IssueCategory.ORPHANED_LOCALLY,
                entity_type=entity_type,
                uuid=entity_uuid,
                company_uuid=company_uuid,
                message=f"{entity_type} {entity_uuid} exists locally but not upstream",
            ))


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return entity_mapping.as_utc(value).isoformat()
    return value
