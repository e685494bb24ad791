from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ai import TextGenerator, build_ai_client
from budget_alerts import DEFAULT_THRESHOLD, BudgetAlertEvaluator
from config import Settings
from database import local_now, session_scope
from emails import render_email
from insights import InsightGenerator, format_amount
from ledger import LedgerWriteError
from models import User
from notifications import EmailSender, Mailer, Messenger, WhatsAppMessenger
from periods import Period, previous_month, trailing_week
from recurrence import RecurringEngine, RecurringJob
from stats import PeriodStats, aggregate_stats


logger = logging.getLogger(__name__)

Dispatch = Callable[[list[RecurringJob]], None]


@dataclass
class Clients:
    ai: Optional[TextGenerator]
    mailer: Mailer
    messenger: Optional[Messenger]
    insights: InsightGenerator


def build_clients(settings: Settings) -> Clients:
    ai_client = build_ai_client(settings)
    return Clients(
        ai=ai_client,
        mailer=EmailSender.from_settings(settings),
        messenger=WhatsAppMessenger.from_settings(settings),
        insights=InsightGenerator(ai_client, settings.currency_symbol),
    )


class JobRunner:
    """Entry points fired by the scheduler.

    Every user or item is handled in its own session so a failure only costs
    that one item. Each entry point returns a small summary dict.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker],
        mailer: Mailer,
        messenger: Optional[Messenger],
        insights: InsightGenerator,
        *,
        currency_symbol: str = "₹",
        alert_threshold: float = DEFAULT_THRESHOLD,
        dispatch: Optional[Dispatch] = None,
    ) -> None:
        self.session_factory = session_factory
        self.mailer = mailer
        self.messenger = messenger
        self.insights = insights
        self.currency_symbol = currency_symbol
        self.alert_threshold = alert_threshold
        self.dispatch = dispatch

    def money(self, cents: int) -> str:
        return format_amount(cents, self.currency_symbol)

    def trigger_recurring_transactions(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or local_now()
        with session_scope(self.session_factory) as session:
            jobs = RecurringEngine(session).find_due(now)
        if not jobs:
            return {"triggered": 0}

        if self.dispatch is None:
            for job in jobs:
                self.process_recurring_transaction(job, now)
        else:
            self.dispatch(jobs)
        logger.info(f"recurring_trigger: triggered={len(jobs)}")
        return {"triggered": len(jobs)}

    def process_recurring_transaction(
        self, job: RecurringJob, now: Optional[datetime] = None
    ) -> bool:
        now = now or local_now()
        try:
            with session_scope(self.session_factory) as session:
                spawned = RecurringEngine(session).process(job.transaction_id, job.user_id, now)
        except LedgerWriteError:
            logger.warning(f"recurring_write_failed: job={job.key}")
            return False
        except Exception:
            logger.exception(f"recurring_failed: job={job.key}")
            return False
        return spawned is not None

    def _user_ids(self) -> list[int]:
        with session_scope(self.session_factory) as session:
            return list(session.scalars(select(User.id).order_by(User.id)))

    def _run_per_user(self, name: str, step: Callable[[Session, User], None]) -> dict[str, int]:
        processed = 0
        failed = 0
        for user_id in self._user_ids():
            try:
                with session_scope(self.session_factory) as session:
                    user = session.get(User, user_id)
                    if user is None:
                        continue
                    step(session, user)
                processed += 1
            except Exception:
                failed += 1
                logger.exception(f"{name}_failed: user_id={user_id}")
        logger.info(f"{name}: processed={processed} failed={failed}")
        return {"processed": processed, "failed": failed}

    def generate_monthly_reports(self, today: Optional[date] = None) -> dict[str, int]:
        period = previous_month(today or local_now().date())
        label = period.start.strftime("%B %Y")

        def step(session: Session, user: User) -> None:
            stats = aggregate_stats(session, user.id, period)
            insights = self.insights.monthly(stats, label)
            html = render_email(
                "monthly-report",
                user_name=user.name,
                currency_symbol=self.currency_symbol,
                stats=stats,
                month=label,
                insights=insights,
            )
            result = self.mailer.send_email(
                user.email, f"Your Monthly Financial Report - {label}", html
            )
            if not result.success:
                raise RuntimeError(f"Monthly report email failed: {result.error}")
            if self.messenger is not None and user.has_real_phone:
                self.messenger.send_message(
                    user.phone_number, self._monthly_summary(stats, label, insights)
                )

        return self._run_per_user("monthly_reports", step)

    def generate_weekly_insights(self, today: Optional[date] = None) -> dict[str, int]:
        period = trailing_week(today or local_now().date())
        label = self.week_label(period)

        def step(session: Session, user: User) -> None:
            stats = aggregate_stats(session, user.id, period)
            insights = self.insights.weekly(stats, label)
            html = render_email(
                "weekly-insights",
                user_name=user.name,
                currency_symbol=self.currency_symbol,
                stats=stats,
                week=label,
                insights=insights,
            )
            result = self.mailer.send_email(user.email, "Your Weekly Financial Summary", html)
            if not result.success:
                raise RuntimeError(f"Weekly insights email failed: {result.error}")

        return self._run_per_user("weekly_insights", step)

    def check_budget_alerts(self, now: Optional[datetime] = None) -> dict[str, int]:
        with session_scope(self.session_factory) as session:
            evaluator = BudgetAlertEvaluator(
                session,
                self.mailer,
                self.messenger,
                threshold=self.alert_threshold,
                currency_symbol=self.currency_symbol,
            )
            summary = evaluator.evaluate_all(now or local_now())
        logger.info(
            f"budget_alerts: checked={summary['checked']} "
            f"alerts_sent={summary['alerts_sent']} failed={summary['failed']}"
        )
        return summary

    @staticmethod
    def week_label(period: Period) -> str:
        return f"Week of {period.start.strftime('%b %d, %Y')}"

    def _monthly_summary(self, stats: PeriodStats, label: str, insights: list[str]) -> str:
        lines = [
            f"📊 *Monthly Report - {label}*",
            "",
            f"Income: {self.money(stats.total_income)}",
            f"Expenses: {self.money(stats.total_expenses)}",
            f"Net: {self.money(stats.net)}",
        ]
        if insights:
            lines.extend(["", "*Insights:*"])
            lines.extend(f"• {insight}" for insight in insights)
        return "\n".join(lines)
