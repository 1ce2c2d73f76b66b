"""
Outbound messaging through an Evolution API instance.

Sends report success as a bool and never raise; the caller decides whether
a failed send is retried.
"""
import base64
import os
import re
import httpx
from typing import Any, Dict, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bi_assistant.metrics import NOTIFICATIONS_TOTAL, timer
from bi_assistant.models import MessagingInstance
from bi_assistant.utils import logger

GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))


def clean_phone(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


class EvolutionGateway:
    def __init__(self, timeout: float = GATEWAY_TIMEOUT_SECONDS, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    def _url(self, instance: MessagingInstance, path: str) -> str:
        return f"{instance.api_url.rstrip('/')}/{path}/{instance.instance_name}"

    async def _post(self, instance: MessagingInstance, path: str, payload: Dict[str, Any]) -> Optional[httpx.Response]:
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                return await client.post(
                    self._url(instance, path),
                    json=payload,
                    headers={"apikey": instance.api_key},
                )
        except httpx.HTTPError as e:
            logger.warning("Gateway request failed", path=path, instance=instance.instance_name, error=str(e))
            return None

    async def send_text(self, instance: MessagingInstance, phone: str, text: str) -> bool:
        with timer("send_text"):
            response = await self._post(instance, "message/sendText", {"number": phone, "text": text})

        if response is not None and response.is_success:
            NOTIFICATIONS_TOTAL.labels(channel="text", outcome="sent").inc()
            return True

        NOTIFICATIONS_TOTAL.labels(channel="text", outcome="failed").inc()
        if response is not None:
            logger.error("Text send rejected", status=response.status_code, body=response.text[:200])
        return False

    async def send_audio(self, instance: MessagingInstance, phone: str, audio_base64: str) -> bool:
        """Try the native voice-note endpoint first, then two media payload variants"""
        number = clean_phone(phone)
        attempts = [
            ("message/sendWhatsAppAudio", {
                "number": number,
                "audio": f"data:audio/mp3;base64,{audio_base64}",
            }),
            ("message/sendMedia", {
                "number": number,
                "mediatype": "audio",
                "mimetype": "audio/mpeg",
                "media": f"data:audio/mpeg;base64,{audio_base64}",
                "fileName": "audio.mp3",
            }),
            ("message/sendMedia", {
                "number": number,
                "mediatype": "audio",
                "mimetype": "audio/mpeg",
                "media": audio_base64,
                "fileName": "audio.mp3",
            }),
        ]

        with timer("send_audio"):
            for position, (path, payload) in enumerate(attempts, start=1):
                response = await self._post(instance, path, payload)
                if response is not None and response.is_success:
                    NOTIFICATIONS_TOTAL.labels(channel="audio", outcome="sent").inc()
                    logger.info("Audio sent", path=path, variant=position)
                    return True
                if response is not None:
                    logger.warning("Audio variant rejected",
                                   path=path,
                                   variant=position,
                                   status=response.status_code,
                                   body=response.text[:200])

        NOTIFICATIONS_TOTAL.labels(channel="audio", outcome="failed").inc()
        logger.error("All audio send variants failed", instance=instance.instance_name)
        return False

    async def send_typing(self, instance: MessagingInstance, phone: str) -> None:
        # best effort
        await self._post(instance, "chat/presence", {"number": clean_phone(phone), "presence": "composing"})

    async def download_audio(self, instance: MessagingInstance, message: Dict[str, Any]) -> Optional[bytes]:
        """Fetch the media of an inbound audio message as raw bytes"""
        response = await self._post(
            instance,
            "chat/getBase64FromMediaMessage",
            {"message": message, "convertToMp4": False},
        )
        if response is None or not response.is_success:
            logger.warning("Audio download failed",
                           status=getattr(response, "status_code", None))
            return None

        try:
            encoded = response.json().get("base64")
        except ValueError:
            encoded = None
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded)
        except ValueError:
            logger.warning("Audio download returned invalid base64")
            return None


async def resolve_instance(
    session: AsyncSession,
    tenant_id: Optional[str],
    preferred_instance_id: Optional[str] = None,
    instance_name: Optional[str] = None,
) -> Optional[MessagingInstance]:
    """
    Pick the messaging instance for a reply: the named instance that
    received the message, then the number's preferred instance, then any
    connected instance of the tenant, then any connected instance.
    """
    connected = select(MessagingInstance).where(MessagingInstance.is_connected.is_(True))

    if instance_name:
        result = await session.execute(connected.where(MessagingInstance.instance_name == instance_name).limit(1))
        instance = result.scalars().first()
        if instance is not None:
            return instance

    if preferred_instance_id:
        result = await session.execute(connected.where(MessagingInstance.id == preferred_instance_id).limit(1))
        instance = result.scalars().first()
        if instance is not None:
            return instance

    if tenant_id:
        result = await session.execute(connected.where(MessagingInstance.tenant_id == tenant_id).limit(1))
        instance = result.scalars().first()
        if instance is not None:
            return instance

    result = await session.execute(connected.limit(1))
    return result.scalars().first()
