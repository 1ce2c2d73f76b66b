"""
Speech services. Both directions degrade to None instead of raising so the
caller can fall back to text.
"""
import base64
import os
import re
from typing import Any, Optional

from bi_assistant.utils import logger, race_with_timeout

TTS_MODEL = os.getenv("TTS_MODEL", "tts-1-hd")
TTS_VOICE = os.getenv("TTS_VOICE", "nova")
STT_MODEL = os.getenv("STT_MODEL", "whisper-1")
STT_LANGUAGE = os.getenv("STT_LANGUAGE", "pt")
SPEECH_TIMEOUT_SECONDS = float(os.getenv("SPEECH_TIMEOUT_SECONDS", "30"))
MAX_SPEECH_CHARS = 4000
MIN_SPEECH_CHARS = 5

EMOJI_RE = re.compile(
    "["
    "\U0001F300-\U0001F5FF"
    "\U0001F600-\U0001F64F"
    "\U0001F680-\U0001F6FF"
    "\U0001F900-\U0001F9FF"
    "\U0001F1E0-\U0001F1FF"
    "☀-⛿"
    "✀-➿"
    "️⃣"
    "]"
)
DECORATIVE_RE = re.compile(r"[━─═]+")
CURRENCY_RE = re.compile(r"R\$\s*([\d.,]+)")


def _decimal_words(value: float, digits: int) -> str:
    return f"{value:.{digits}f}".replace(".", ",")


def _spoken_currency(match: "re.Match") -> str:
    raw = match.group(1).rstrip(".,")
    try:
        amount = float(raw.replace(".", "").replace(",", "."))
    except ValueError:
        return match.group(0)

    if amount >= 1_000_000_000:
        return f"{_decimal_words(amount / 1_000_000_000, 1)} bilhões de reais"
    if amount >= 1_000_000:
        return f"{_decimal_words(amount / 1_000_000, 1)} milhões de reais"
    if amount >= 1_000:
        return f"{_decimal_words(amount / 1_000, 1)} mil reais"
    return f"{_decimal_words(amount, 2)} reais"


def format_text_for_speech(text: str) -> str:
    formatted = EMOJI_RE.sub("", text or "")
    formatted = DECORATIVE_RE.sub("", formatted)
    formatted = CURRENCY_RE.sub(_spoken_currency, formatted)
    # markdown emphasis
    formatted = formatted.replace("*", "").replace("_", " ")
    formatted = re.sub(r"\n{3,}", "\n\n", formatted)
    formatted = re.sub(r"[ \t]{2,}", " ", formatted)
    return formatted.strip()[:MAX_SPEECH_CHARS]


class SpeechService:
    def __init__(self, client: Any = None, timeout: float = SPEECH_TIMEOUT_SECONDS):
        self._client = client
        self.timeout = timeout

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI()
        return self._client

    async def synthesize(self, text: str) -> Optional[str]:
        """Base64 mp3 for `text`, or None"""
        speech_text = format_text_for_speech(text)
        if len(speech_text) < MIN_SPEECH_CHARS:
            logger.warning("Speech text too short after formatting", length=len(speech_text))
            return None

        try:
            response = await race_with_timeout(
                self.client.audio.speech.create(
                    model=TTS_MODEL,
                    voice=TTS_VOICE,
                    input=speech_text,
                    response_format="mp3",
                    speed=0.95,
                ),
                self.timeout,
                label="speech synthesis",
            )
            audio = response.content
        except Exception as e:
            logger.error("Speech synthesis failed", error=str(e))
            return None

        if not audio:
            return None
        return base64.b64encode(audio).decode("ascii")

    async def transcribe(self, audio: Optional[bytes]) -> Optional[str]:
        """Transcript of an audio message, or None"""
        if not audio or len(audio) < 100:
            logger.warning("Audio too small to transcribe", size=len(audio or b""))
            return None

        try:
            transcription = await race_with_timeout(
                self.client.audio.transcriptions.create(
                    file=("audio.ogg", audio, "audio/ogg"),
                    model=STT_MODEL,
                    language=STT_LANGUAGE,
                ),
                self.timeout,
                label="transcription",
            )
        except Exception as e:
            logger.error("Transcription failed", error=str(e))
            return None

        text = (getattr(transcription, "text", None) or "").strip()
        return text or None
