"""
Agent Delinquency Aggregation Job

Runs the delinquency classifier over every active loan, totals the remaining
balances of overdue (30-59 days) and recovery (60+ days) loans per agent, and
replaces each agent's entry for the current month in both monthly series.
One agent's failure is recorded in the summary and never stops the run.

Loans are read as a snapshot without locking them; a loan paid or disbursed
while the job runs may be counted in its earlier or later state.
"""

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .agents import AgentManager
from .audit import AuditTrail, AuditEventType
from .business_calendar import normalize_date, today_utc
from .delinquency import DelinquencyBucket, DelinquencyClassifier
from .exceptions import ValidationError
from .money import ZERO, add
from .logging_config import get_logger, log_action


logger = get_logger("fieldbook.jobs.delinquency")


@dataclass
class AggregationSummary:
    processed: int
    updated: int
    year: int
    month: int
    as_of: date
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed': self.processed,
            'updated': self.updated,
            'errors': list(self.errors),
            'year': self.year,
            'month': self.month,
            'as_of': self.as_of.isoformat()
        }


class DelinquencyAggregationJob:

    def __init__(self, loan_manager, agent_manager: AgentManager,
                 classifier: DelinquencyClassifier, audit_trail: Optional[AuditTrail] = None):
        self.loan_manager = loan_manager
        self.agent_manager = agent_manager
        self.classifier = classifier
        self.audit = audit_trail

    def compute_buckets(self, as_of: date) -> Dict[str, Tuple[Decimal, Decimal]]:
        """Map of agent id to (overdue value, recovery value)"""
        buckets: Dict[str, Tuple[Decimal, Decimal]] = {}
        for loan in self.loan_manager.get_active_loans():
            if not loan.agent_id:
                continue
            assessment = self.classifier.classify(loan, as_of)
            if assessment.bucket == DelinquencyBucket.CURRENT:
                continue

            overdue, recovery = buckets.get(loan.agent_id, (ZERO, ZERO))
            if assessment.bucket == DelinquencyBucket.RECOVERY:
                recovery = add(recovery, assessment.remaining_balance)
            else:
                overdue = add(overdue, assessment.remaining_balance)
            buckets[loan.agent_id] = (overdue, recovery)
        return buckets

    def run(self, as_of: Optional[Any] = None, include_inactive: bool = False) -> AggregationSummary:
        """
        Recompute every agent's delinquency totals for the month of ``as_of``

        Args:
            as_of: Day of assessment (UTC); defaults to today
            include_inactive: Also write records for inactive agents

        Returns:
            AggregationSummary
        """
        if as_of is None:
            as_of_day = today_utc()
        else:
            as_of_day = normalize_date(as_of)
            if as_of_day is None:
                raise ValidationError(f"Invalid as-of date: {as_of!r}")

        buckets = self.compute_buckets(as_of_day)
        agents = self.agent_manager.list_agents(active_only=not include_inactive)

        summary = AggregationSummary(
            processed=0,
            updated=0,
            year=as_of_day.year,
            month=as_of_day.month,
            as_of=as_of_day
        )

        for agent in agents:
            overdue, recovery = buckets.get(agent.id, (ZERO, ZERO))
            try:
                self.agent_manager.replace_monthly_delinquency(
                    agent.id, summary.year, summary.month, overdue, recovery)
                summary.updated += 1
            except Exception as e:
                summary.errors.append({'agent_id': agent.id, 'message': str(e)})
                log_action(logger, "error", f"Failed to update agent {agent.id}: {e}",
                           action="delinquency_aggregation", resource=f"agent:{agent.id}")
            finally:
                summary.processed += 1

        log_action(logger, "info",
                   f"Completed for {summary.year}-{summary.month:02d} (as_of={as_of_day.isoformat()}). "
                   f"Updated {summary.updated} of {summary.processed} agents.",
                   action="delinquency_aggregation", extra=summary.to_dict())
        if self.audit:
            self.audit.log_event(
                AuditEventType.DELINQUENCY_JOB_RUN,
                entity_type="job",
                entity_id="delinquency_aggregation",
                metadata=summary.to_dict()
            )
        return summary


def parse_run_time(value: str) -> Tuple[int, int]:
    """Parse an HH:MM (UTC) time of day"""
    try:
        hours, minutes = (int(part) for part in value.split(":"))
    except (ValueError, AttributeError):
        raise ValidationError(f"Invalid job time: {value!r}")
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValidationError(f"Invalid job time: {value!r}")
    return hours, minutes


class DelinquencyJobScheduler:
    """Runs the aggregation job once a day at a fixed UTC time on a daemon thread"""

    def __init__(self, job: DelinquencyAggregationJob, run_time: str = "02:20",
                 include_inactive: bool = False):
        self.job = job
        self.hours, self.minutes = parse_run_time(run_time)
        self.include_inactive = include_inactive
        self.last_summary: Optional[AggregationSummary] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def next_run_after(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.hours, minute=self.minutes, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def run_now(self, as_of: Optional[Any] = None) -> AggregationSummary:
        self.last_summary = self.job.run(as_of=as_of, include_inactive=self.include_inactive)
        return self.last_summary

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            now = datetime.now(timezone.utc)
            delay = (self.next_run_after(now) - now).total_seconds()
            if self._stop_event.wait(delay):
                break
            try:
                self.run_now()
            except Exception as e:
                logger.error(f"Delinquency job failed: {e}")

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="delinquency-job")
        self._thread.daemon = True
        self._thread.start()
        logger.info(f"Delinquency job scheduled daily at {self.hours:02d}:{self.minutes:02d} UTC")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
