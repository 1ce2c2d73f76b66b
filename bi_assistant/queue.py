"""
Durable retry queue for inbound conversational work.

Items are claimed with a single conditional UPDATE (pending -> processing),
so overlapping drains never process the same item twice. Failures back off
exponentially up to max_attempts; a terminal failure gets exactly one
apology send.
"""
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bi_assistant.errors import AssistantError, TransportError, ValidationError
from bi_assistant.messaging import EvolutionGateway, resolve_instance
from bi_assistant.metrics import (
    QUEUE_BACKLOG,
    QUEUE_CLAIM_CONFLICTS_TOTAL,
    QUEUE_ITEMS_TOTAL,
    QUEUE_RETRIES_TOTAL,
    timer,
)
from bi_assistant.models import (
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    AuthorizedNumber,
    Message,
    QueueItem,
)
from bi_assistant.orchestrator import AnswerRequest, Orchestrator, deliver_answer
from bi_assistant.speech import SpeechService
from bi_assistant.utils import backoff_delay, logger, truncate, utcnow

QUEUE_BATCH_SIZE = int(os.getenv("QUEUE_BATCH_SIZE", "10"))
QUEUE_MAX_ATTEMPTS = int(os.getenv("QUEUE_MAX_ATTEMPTS", "3"))
QUEUE_BACKOFF_BASE_SECONDS = float(os.getenv("QUEUE_BACKOFF_BASE_SECONDS", "5"))
QUEUE_BACKOFF_CAP_SECONDS = float(os.getenv("QUEUE_BACKOFF_CAP_SECONDS", "300"))
ERROR_MESSAGE_LIMIT = 500

ASSISTANT_SENDER = "Assistente IA"
EXHAUSTED_APOLOGY = (
    "{greeting} ainda estou com dificuldades técnicas. 🔧\n\n"
    "Por favor, tente novamente em alguns minutos. Se persistir, entre em contato com o suporte."
)


@dataclass
class DrainSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "succeeded": self.succeeded, "failed": self.failed}


async def enqueue(session: AsyncSession, item: QueueItem, now: Optional[datetime] = None) -> QueueItem:
    item.status = QUEUE_PENDING
    item.attempt_count = 0
    item.next_retry_at = now or utcnow()
    if item.max_attempts is None:
        item.max_attempts = QUEUE_MAX_ATTEMPTS
    session.add(item)
    await session.commit()
    logger.info("Queue item enqueued", queue_id=item.id, tenant_id=item.tenant_id)
    return item


async def claim(session: AsyncSession, item_id: int) -> bool:
    """Atomically move an item from pending to processing. False if another drain won."""
    result = await session.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status == QUEUE_PENDING)
        .values(status=QUEUE_PROCESSING, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


def greeting_for(name: Optional[str]) -> str:
    first = (name or "").split(" ")[0].strip()
    return f"Desculpe {first}," if first else "Desculpe,"


class QueueWorker:
    def __init__(
        self,
        orchestrator: Orchestrator,
        gateway: EvolutionGateway,
        speech: SpeechService,
        backoff_base: float = QUEUE_BACKOFF_BASE_SECONDS,
        backoff_cap: float = QUEUE_BACKOFF_CAP_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.gateway = gateway
        self.speech = speech
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

    async def drain(self, session: AsyncSession, batch_size: int = QUEUE_BATCH_SIZE, now: Optional[datetime] = None) -> DrainSummary:
        """One pass over due items, oldest first"""
        now = now or utcnow()
        summary = DrainSummary()

        result = await session.execute(
            select(QueueItem.id)
            .where(
                QueueItem.status == QUEUE_PENDING,
                QueueItem.next_retry_at <= now,
                QueueItem.attempt_count < QueueItem.max_attempts,
            )
            .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
            .limit(batch_size)
        )
        item_ids = list(result.scalars().all())
        QUEUE_BACKLOG.set(len(item_ids))

        for item_id in item_ids:
            if not await claim(session, item_id):
                QUEUE_CLAIM_CONFLICTS_TOTAL.inc()
                logger.info("Queue item claimed elsewhere", queue_id=item_id)
                continue

            summary.processed += 1
            item = await session.get(QueueItem, item_id, populate_existing=True)
            try:
                with timer("queue_item"):
                    await self.process_item(session, item)
            except Exception as e:
                if not isinstance(e, AssistantError):
                    logger.exception("Unexpected queue item failure", queue_id=item_id)
                terminal = await self._record_failure(session, item_id, e, now)
                if terminal:
                    summary.failed += 1
                continue

            summary.succeeded += 1
            QUEUE_ITEMS_TOTAL.labels(outcome=QUEUE_COMPLETED).inc()

        logger.info("Queue drain finished", **summary.as_dict())
        return summary

    async def process_item(self, session: AsyncSession, item: QueueItem) -> None:
        """Answer one item and deliver it. Raises on any failure."""
        number = await self._authorized_number(session, item)
        if number is None:
            raise ValidationError("Número autorizado não encontrado")

        instance = await resolve_instance(session, item.tenant_id, number.instance_id)
        if instance is None:
            raise ValidationError("Instância não encontrada")

        request = AnswerRequest(
            tenant_id=item.tenant_id,
            question=item.message_content,
            conversation=list(item.conversation or []),
            connection_id=item.connection_id,
            dataset_id=item.dataset_id,
            system_prompt=item.system_prompt or "",
        )
        text = await self.orchestrator.answer(session, request)

        sent, channel = await deliver_answer(
            self.gateway,
            self.speech,
            instance,
            item.phone_number,
            text,
            prefer_audio=bool(item.respond_with_audio),
        )
        if not sent:
            raise TransportError("Falha ao enviar mensagem WhatsApp")

        session.add(Message(
            tenant_id=item.tenant_id,
            phone_number=item.phone_number,
            direction="outgoing",
            message_content=f"🔊 {text}" if channel == "audio" else text,
            sender_name=ASSISTANT_SENDER,
            instance_id=instance.id,
        ))
        item.status = QUEUE_COMPLETED
        item.error_message = None
        await session.commit()
        logger.info("Queue item completed", queue_id=item.id, channel=channel)

    async def _authorized_number(self, session: AsyncSession, item: QueueItem) -> Optional[AuthorizedNumber]:
        result = await session.execute(
            select(AuthorizedNumber).where(
                AuthorizedNumber.phone_number == item.phone_number,
                AuthorizedNumber.tenant_id == item.tenant_id,
                AuthorizedNumber.is_active.is_(True),
            ).limit(1)
        )
        return result.scalars().first()

    async def _record_failure(self, session: AsyncSession, item_id: int, error: BaseException, now: datetime) -> bool:
        """Reschedule or fail the item. Returns True when the failure is terminal."""
        try:
            await session.rollback()
            item = await session.get(QueueItem, item_id, populate_existing=True)

            item.attempt_count += 1
            item.error_message = truncate(str(error) or type(error).__name__, ERROR_MESSAGE_LIMIT)
            terminal = isinstance(error, ValidationError) or item.attempt_count >= item.max_attempts

            if terminal:
                item.status = QUEUE_FAILED
            else:
                delay = backoff_delay(item.attempt_count, self.backoff_base, self.backoff_cap)
                item.status = QUEUE_PENDING
                item.next_retry_at = now + timedelta(seconds=delay)
            await session.commit()
        except Exception:
            logger.exception("Failed to record queue item failure", queue_id=item_id)
            await session.rollback()
            return False

        if not terminal:
            reason = getattr(error, "kind", type(error).__name__)
            QUEUE_RETRIES_TOTAL.labels(reason=reason).inc()
            logger.warning("Queue item rescheduled",
                           queue_id=item_id,
                           attempt=item.attempt_count,
                           next_retry_at=item.next_retry_at.isoformat(),
                           error=item.error_message)
            return False

        QUEUE_ITEMS_TOTAL.labels(outcome=QUEUE_FAILED).inc()
        logger.critical("queue_item_exhausted",
                        queue_id=item_id,
                        tenant_id=item.tenant_id,
                        phone_number=item.phone_number,
                        attempts=item.attempt_count,
                        error=item.error_message)
        await self.send_apology(session, item)
        return True

    async def send_apology(self, session: AsyncSession, item: QueueItem) -> bool:
        """Single best-effort text apology for a terminally failed item"""
        try:
            number = await self._authorized_number(session, item)
            instance = await resolve_instance(session, item.tenant_id, number.instance_id if number else None)
            if instance is None:
                logger.error("No instance for apology", queue_id=item.id)
                return False

            text = EXHAUSTED_APOLOGY.format(greeting=greeting_for(number.name if number else None))
            sent = await self.gateway.send_text(instance, item.phone_number, text)
            if sent:
                session.add(Message(
                    tenant_id=item.tenant_id,
                    phone_number=item.phone_number,
                    direction="outgoing",
                    message_content=text,
                    sender_name=ASSISTANT_SENDER,
                    instance_id=instance.id,
                ))
                await session.commit()
            return sent
        except Exception as e:
            logger.error("Apology send failed", queue_id=item.id, error=str(e))
            await session.rollback()
            return False

