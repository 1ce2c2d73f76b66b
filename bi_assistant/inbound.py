"""
Inbound receiver for Evolution API webhooks.

Normalizes the webhook payload, filters out what the assistant should not
answer, logs the incoming message and enqueues the conversational work.
The answer itself is produced later by the queue worker.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bi_assistant.messaging import EvolutionGateway, resolve_instance
from bi_assistant.models import AuthorizedNumber, Message, ModelContext, QueueItem
from bi_assistant.orchestrator import MODEL_CONTEXT_LIMIT, PERSONA, build_system_prompt
from bi_assistant.queue import ASSISTANT_SENDER, QUEUE_MAX_ATTEMPTS, enqueue
from bi_assistant.schedule import ALERT_TIMEZONE, resolve_moment
from bi_assistant.speech import SpeechService
from bi_assistant.utils import logger, truncate, utcnow

MESSAGE_EVENTS = {"messages.upsert", "message"}
HISTORY_TURNS = 10
TURN_CHARS = 2000

SUPPORT_MESSAGE = """Olá {name}! 👋

Sou o assistente IA da sua empresa, mas ainda não tenho acesso aos seus dados configurado.

📞 *Entre em contato com o suporte* para configurar:
- Conexão com seus dados
- Alertas personalizados
- Consultas via WhatsApp

Assim que estiver configurado, poderei te ajudar com análises e consultas em tempo real! 🚀"""

UNREADABLE_AUDIO = "Desculpe, não consegui entender o áudio. 🎤 Pode repetir ou enviar por texto?"


@dataclass
class InboundMessage:
    event: str
    instance_name: Optional[str]
    phone: str
    from_me: bool = False
    text: str = ""
    has_audio: bool = False
    push_name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_message_event(self) -> bool:
        return self.event in MESSAGE_EVENTS


@dataclass
class InboundResult:
    status: str
    reason: Optional[str] = None
    queue_id: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status}
        if self.reason:
            payload["reason"] = self.reason
        if self.queue_id is not None:
            payload["queue_id"] = self.queue_id
        return payload


def _normalize_event(value: Optional[str]) -> str:
    """'MESSAGES_UPSERT' -> 'messages.upsert'"""
    return (value or "").strip().lower().replace("_", ".")


def phone_from_jid(jid: str) -> str:
    return (jid or "").replace("@s.whatsapp.net", "").replace("@g.us", "")


def extract_text(content: Dict[str, Any]) -> str:
    if not isinstance(content, dict):
        return ""
    if content.get("conversation"):
        return str(content["conversation"])
    for key, attr in (
        ("extendedTextMessage", "text"),
        ("imageMessage", "caption"),
        ("videoMessage", "caption"),
        ("documentMessage", "caption"),
    ):
        value = (content.get(key) or {}).get(attr)
        if value:
            return str(value)
    return ""


def normalize_inbound(payload: Dict[str, Any]) -> InboundMessage:
    event = _normalize_event(payload.get("event") or payload.get("type"))
    data = payload.get("data") or {}
    if isinstance(data, list):
        data = data[0] if data else {}

    key = data.get("key") or {}
    content = data.get("message") or {}
    remote_jid = key.get("remoteJid") or data.get("remoteJid") or ""

    return InboundMessage(
        event=event,
        instance_name=payload.get("instance") or None,
        phone=phone_from_jid(remote_jid),
        from_me=bool(key.get("fromMe")),
        text=extract_text(content).strip(),
        has_audio=bool(content.get("audioMessage")) or data.get("messageType") == "audioMessage",
        push_name=data.get("pushName"),
        raw=data,
    )


async def load_history(session: AsyncSession, tenant_id: str, phone: str, limit: int = HISTORY_TURNS) -> List[Dict[str, str]]:
    """Last `limit` logged messages as chat turns, oldest first"""
    result = await session.execute(
        select(Message)
        .where(Message.tenant_id == tenant_id, Message.phone_number == phone)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
    )
    turns = []
    for message in reversed(result.scalars().all()):
        role = "assistant" if message.direction == "outgoing" else "user"
        turns.append({"role": role, "content": truncate(message.message_content, TURN_CHARS)})
    return turns


async def load_model_context(session: AsyncSession, tenant_id: str, connection_id: str, dataset_id: Optional[str]) -> Optional[str]:
    """Active schema documentation for the dataset, falling back to the connection"""
    query = select(ModelContext).where(
        ModelContext.tenant_id == tenant_id,
        ModelContext.connection_id == connection_id,
        ModelContext.is_active.is_(True),
    )
    result = await session.execute(query.where(ModelContext.dataset_id == dataset_id).limit(1))
    context = result.scalars().first()
    if context is None:
        result = await session.execute(query.limit(1))
        context = result.scalars().first()
    if context is None:
        return None
    return context.context_content[:MODEL_CONTEXT_LIMIT]


async def handle_inbound(
    session: AsyncSession,
    message: InboundMessage,
    gateway: EvolutionGateway,
    speech: SpeechService,
) -> InboundResult:
    if not message.is_message_event:
        return InboundResult("ignored", "not a message event")
    if message.from_me:
        return InboundResult("ignored", "own message")
    if not message.text and not message.has_audio:
        return InboundResult("ignored", "empty message")

    result = await session.execute(
        select(AuthorizedNumber)
        .where(AuthorizedNumber.phone_number == message.phone, AuthorizedNumber.is_active.is_(True))
        .limit(1)
    )
    number = result.scalars().first()
    if number is None:
        logger.info("Message from unauthorized number", phone=message.phone)
        return InboundResult("ignored", "unauthorized number")

    instance = await resolve_instance(session, number.tenant_id, number.instance_id, message.instance_name)
    if instance is None:
        logger.error("No connected instance for inbound message", tenant_id=number.tenant_id)
        return InboundResult("error", "no instance")

    await gateway.send_typing(instance, message.phone)

    text = message.text
    respond_with_audio = False
    if message.has_audio:
        audio = await gateway.download_audio(instance, message.raw)
        transcript = await speech.transcribe(audio)
        if not transcript:
            await gateway.send_text(instance, message.phone, UNREADABLE_AUDIO)
            return InboundResult("ignored", "transcription failed")
        text = transcript
        respond_with_audio = True

    session.add(Message(
        tenant_id=number.tenant_id,
        phone_number=message.phone,
        direction="incoming",
        message_content=f"🎤 {text}" if respond_with_audio else text,
        sender_name=number.name or message.push_name or message.phone,
        instance_id=instance.id,
    ))
    await session.commit()

    if not number.connection_id or not number.dataset_id:
        support = SUPPORT_MESSAGE.format(name=number.name or "")
        sent = await gateway.send_text(instance, message.phone, support)
        if sent:
            session.add(Message(
                tenant_id=number.tenant_id,
                phone_number=message.phone,
                direction="outgoing",
                message_content=support,
                sender_name=ASSISTANT_SENDER,
                instance_id=instance.id,
            ))
            await session.commit()
        return InboundResult("support_sent" if sent else "error", "no connection configured")

    context = await load_model_context(session, number.tenant_id, number.connection_id, number.dataset_id)
    today = resolve_moment(utcnow(), ALERT_TIMEZONE).date
    turns = await load_history(session, number.tenant_id, message.phone)

    item = await enqueue(session, QueueItem(
        tenant_id=number.tenant_id,
        phone_number=message.phone,
        message_content=text,
        conversation=turns or [{"role": "user", "content": text}],
        respond_with_audio=respond_with_audio,
        connection_id=number.connection_id,
        dataset_id=number.dataset_id,
        system_prompt=build_system_prompt(PERSONA, context, None, today),
        max_attempts=QUEUE_MAX_ATTEMPTS,
    ))
    return InboundResult("queued", queue_id=item.id)
