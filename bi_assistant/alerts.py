"""
Alert scheduler.

Driven by an external one-minute trigger. Each enabled alert passes through
the schedule gate, the dedup gate, query execution and the condition check
before it is claimed (compare-and-set on last_triggered_at) and dispatched.
A failure in one alert never stops the others.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bi_assistant.messaging import EvolutionGateway, resolve_instance
from bi_assistant.metrics import ALERT_EVALUATIONS_TOTAL, timer
from bi_assistant.models import Alert, AlertHistory
from bi_assistant.powerbi import PowerBIExecutor
from bi_assistant.schedule import ALERT_TIMEZONE, LocalMoment, Schedule, resolve_moment, schedule_matches
from bi_assistant.templates import (
    DEFAULT_TEMPLATE,
    MONTH_NAMES,
    TemplateVariables,
    condition_label,
    evaluate_condition,
    first_numeric_value,
    format_dax_result,
    format_number,
    missing_placeholders,
    render_template,
)
from bi_assistant.utils import as_utc, logger, truncate, utcnow

DEDUP_WINDOW = timedelta(seconds=60)
NO_VALUE = "N/A"
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"

# Query fragments that mean the alert reports on the previous day
YESTERDAY_MARKERS = (
    "today() - 1",
    "today()-1",
    "dateadd(today(), -1",
    "dateadd(today(),-1",
    "ontem",
    "yesterday",
    "dia anterior",
)


@dataclass
class Evaluation:
    """Outcome of running an alert's query and building its message"""
    success: bool
    variables: TemplateVariables
    value: Optional[float] = None
    error: Optional[str] = None

    @property
    def display_value(self) -> str:
        return self.variables.get("valor", NO_VALUE)


def schedule_for(alert: Alert) -> Schedule:
    return Schedule.build(alert.check_times, alert.check_days_of_week, alert.check_days_of_month)


def refers_to_yesterday(query: Optional[str]) -> bool:
    lowered = (query or "").lower()
    return any(marker in lowered for marker in YESTERDAY_MARKERS)


def period_label(moment: LocalMoment) -> str:
    """Yesterday as '15 de outubro de 2026'"""
    yesterday = moment.date - timedelta(days=1)
    return f"{yesterday.day:02d} de {MONTH_NAMES[yesterday.month - 1]} de {yesterday.year}"


def build_variables(alert: Alert, rows: Optional[List[Dict[str, Any]]], moment: LocalMoment) -> TemplateVariables:
    variables = TemplateVariables({
        "nome_alerta": alert.name,
        "data": moment.date.strftime("%d/%m/%Y"),
        "hora": moment.time_of_day,
        "condicao": condition_label(alert.condition),
        "threshold": format_number(alert.threshold) if alert.threshold is not None else "0",
    })
    if refers_to_yesterday(alert.dax_query):
        variables["periodo"] = period_label(moment)

    if rows:
        variables["valor"] = format_dax_result(rows)
        variables.update_from_row(rows[0])
    return variables


def render_alert_message(alert: Alert, variables: TemplateVariables) -> str:
    template = alert.message_template or DEFAULT_TEMPLATE
    unresolved = missing_placeholders(template, variables)
    if unresolved:
        logger.info("Template placeholders left unresolved", alert_id=alert.id, placeholders=sorted(unresolved))
    return render_template(template, variables)


async def evaluate_alert(
    session: AsyncSession,
    executor: PowerBIExecutor,
    alert: Alert,
    moment: LocalMoment,
) -> Evaluation:
    """Run the alert query (if any) and collect its template variables"""
    if not alert.dax_query:
        # Reminder alerts carry no query; they only render the static variables
        return Evaluation(success=True, variables=build_variables(alert, None, moment))

    result = await executor.execute(session, alert.connection_id, alert.dataset_id, alert.dax_query)
    if not result.success:
        return Evaluation(success=False, variables=build_variables(alert, None, moment), error=result.error)

    return Evaluation(
        success=True,
        variables=build_variables(alert, result.rows, moment),
        value=first_numeric_value(result.rows),
    )


async def dispatch(gateway: EvolutionGateway, instance, alert: Alert, message: str) -> int:
    """Send to every phone number and group id. Returns how many sends succeeded."""
    sent = 0
    recipients = list(alert.phone_numbers or []) + list(alert.group_ids or [])
    for recipient in recipients:
        recipient = str(recipient).strip()
        if not recipient:
            continue
        if await gateway.send_text(instance, recipient, message):
            sent += 1
    return sent


async def claim_alert(session: AsyncSession, alert_id: str, now: datetime) -> bool:
    """
    Compare-and-set on last_triggered_at. Only one of several overlapping
    invocations inside the dedup window gets a rowcount of 1.
    """
    result = await session.execute(
        update(Alert)
        .where(
            Alert.id == alert_id,
            or_(Alert.last_triggered_at.is_(None), Alert.last_triggered_at <= now - DEDUP_WINDOW),
        )
        .values(last_triggered_at=now, last_checked_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def mark_checked(session: AsyncSession, alert_id: str, now: datetime) -> None:
    await session.execute(
        update(Alert)
        .where(Alert.id == alert_id)
        .values(last_checked_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def record_history(
    session: AsyncSession,
    alert: Alert,
    now: datetime,
    trigger_type: str,
    value: str,
    message: str,
    sent: int,
) -> AlertHistory:
    history = AlertHistory(
        alert_id=alert.id,
        triggered_at=now,
        trigger_type=trigger_type,
        alert_value=truncate(value, 2000),
        alert_message=message,
        notification_sent=sent > 0,
        recipients_reached=sent,
    )
    session.add(history)
    await session.commit()
    return history


async def _check_one(
    session: AsyncSession,
    executor: PowerBIExecutor,
    gateway: EvolutionGateway,
    alert: Alert,
    moment: LocalMoment,
    now: datetime,
) -> Optional[Dict[str, Any]]:
    """Result entry for one alert, or None when a gate skips it silently"""
    if not schedule_matches(schedule_for(alert), moment):
        return None

    last_triggered = as_utc(alert.last_triggered_at)
    if last_triggered is not None and now - last_triggered < DEDUP_WINDOW:
        ALERT_EVALUATIONS_TOTAL.labels(outcome="deduplicated").inc()
        return None

    evaluation = await evaluate_alert(session, executor, alert, moment)
    if not evaluation.success:
        await mark_checked(session, alert.id, now)
        ALERT_EVALUATIONS_TOTAL.labels(outcome="execution_failed").inc()
        logger.warning("Alert query failed", alert_id=alert.id, error=evaluation.error)
        return {"alert": alert.name, "error": evaluation.error}

    if not evaluate_condition(evaluation.value, alert.condition, alert.threshold):
        await mark_checked(session, alert.id, now)
        ALERT_EVALUATIONS_TOTAL.labels(outcome="condition_not_met").inc()
        return None

    instance = await resolve_instance(session, alert.tenant_id)
    if instance is None:
        await mark_checked(session, alert.id, now)
        ALERT_EVALUATIONS_TOTAL.labels(outcome="error").inc()
        logger.error("No connected instance for alert", alert_id=alert.id)
        return {"alert": alert.name, "error": "Nenhuma instância WhatsApp conectada"}

    if not await claim_alert(session, alert.id, now):
        ALERT_EVALUATIONS_TOTAL.labels(outcome="deduplicated").inc()
        logger.info("Alert already fired by a concurrent check", alert_id=alert.id)
        return None

    message = render_alert_message(alert, evaluation.variables)
    sent = await dispatch(gateway, instance, alert, message)
    await record_history(session, alert, now, TRIGGER_SCHEDULED, evaluation.display_value, message, sent)

    ALERT_EVALUATIONS_TOTAL.labels(outcome="triggered").inc()
    logger.info("Alert triggered", alert_id=alert.id, sent=sent)
    return {"alert": alert.name, "sent": sent, "valor": evaluation.display_value}


async def check_alerts(
    session: AsyncSession,
    executor: PowerBIExecutor,
    gateway: EvolutionGateway,
    now: Optional[datetime] = None,
    tz_name: str = ALERT_TIMEZONE,
) -> Dict[str, Any]:
    now = as_utc(now) if now else utcnow()
    moment = resolve_moment(now, tz_name)

    result = await session.execute(
        select(Alert.id, Alert.name)
        .where(Alert.is_enabled.is_(True))
        .order_by(Alert.created_at.asc(), Alert.id.asc())
    )
    alerts = result.all()

    results: List[Dict[str, Any]] = []
    triggered = 0
    with timer("alert_check"):
        for alert_id, name in alerts:
            try:
                alert = await session.get(Alert, alert_id, populate_existing=True)
                entry = await _check_one(session, executor, gateway, alert, moment, now)
            except Exception as e:
                await session.rollback()
                ALERT_EVALUATIONS_TOTAL.labels(outcome="error").inc()
                logger.exception("Alert evaluation failed", alert_id=alert_id)
                results.append({"alert": name, "error": str(e) or type(e).__name__})
                continue

            if entry is None:
                continue
            if "error" not in entry:
                triggered += 1
            results.append(entry)

    logger.info("Alert check finished", time=moment.time_of_day, checked=len(alerts), triggered=triggered)
    return {"checked": len(alerts), "triggered": triggered, "time": moment.time_of_day, "results": results}


async def trigger_alert(
    session: AsyncSession,
    alert_id: str,
    executor: PowerBIExecutor,
    gateway: EvolutionGateway,
    now: Optional[datetime] = None,
    tz_name: str = ALERT_TIMEZONE,
) -> Optional[Dict[str, Any]]:
    """
    Fire an alert on demand. Skips the schedule, dedup and condition gates
    and leaves last_triggered_at alone. Returns None for an unknown alert.
    """
    now = as_utc(now) if now else utcnow()
    moment = resolve_moment(now, tz_name)

    alert = await session.get(Alert, alert_id)
    if alert is None:
        return None

    evaluation = await evaluate_alert(session, executor, alert, moment)
    if not evaluation.success:
        logger.warning("Manual alert query failed", alert_id=alert_id, error=evaluation.error)
        return {"alert": alert.name, "success": False, "sent": 0, "error": evaluation.error}

    instance = await resolve_instance(session, alert.tenant_id)
    if instance is None:
        return {"alert": alert.name, "success": False, "sent": 0, "error": "Nenhuma instância WhatsApp conectada"}

    message = render_alert_message(alert, evaluation.variables)
    sent = await dispatch(gateway, instance, alert, message)
    await record_history(session, alert, now, TRIGGER_MANUAL, evaluation.display_value, message, sent)

    logger.info("Alert triggered manually", alert_id=alert_id, sent=sent)
    return {
        "alert": alert.name,
        "success": sent > 0,
        "sent": sent,
        "valor": evaluation.display_value,
        "message": message,
    }
