"""Dictation to report drafting with OpenAI.

A reporter dictates findings; Whisper turns the audio into text and a chat
model rewrites the dictation as a structured CBCT report.
"""

import io
import struct
import time
from collections.abc import Callable
from typing import Any

from openai import AsyncOpenAI

from ..cases.constants import format_field_of_view
from ..config import get_settings
from ..logging import get_context_logger

logger = get_context_logger(__name__)

DRAFT_TEMPERATURE = 0.3
DRAFT_MAX_TOKENS = 2000

STYLE_GUIDANCE = {
    "concise": "Brief, focused findings with essential information only",
    "detailed": "Comprehensive descriptions with thorough anatomical detail",
}

SYSTEM_PROMPT = """You are an expert radiologist AI assistant specializing in creating professional CBCT radiology reports.

Guidelines:
1. Convert conversational dictation into professional medical terminology
2. Follow standard radiology report structure: CLINICAL HISTORY, TECHNIQUE, FINDINGS, IMPRESSION
3. Use precise anatomical terminology and measurements when mentioned
4. Maintain clinical accuracy while improving language clarity
5. Report style: {style}
{patient}
Format the report professionally with clear section headers and maintain medical report standards."""

PCM_SAMPLE_RATE = 24000
PCM_CHANNELS = 1
PCM_BITS_PER_SAMPLE = 16
LIVE_FLUSH_SECONDS = 2.0


def _openai_client(api_key: str | None = None) -> AsyncOpenAI:
    key = api_key if api_key is not None else get_settings().openai_api_key
    if not key:
        raise ValueError("OpenAI API key not configured")
    return AsyncOpenAI(api_key=key)


def build_system_prompt(case: Any | None, report_style: str = "detailed") -> str:
    """System prompt for the drafting model, with the case details if known."""
    style = STYLE_GUIDANCE.get(report_style, STYLE_GUIDANCE["detailed"])
    patient = ""
    if case is not None:
        patient = (
            "\nPatient Information:\n"
            f"- Patient: {case.patient_name}\n"
            f"- Field of View: {format_field_of_view(case.field_of_view)}\n"
            f"- Urgency: {case.urgency}\n"
            f"- Clinical Question: {case.clinical_question}\n"
        )
    return SYSTEM_PROMPT.format(style=style, patient=patient)


class ReportDrafter:
    """Turns dictated text into a structured report."""

    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = _openai_client()
        return self._client

    async def generate_report(self, case: Any | None, dictation: str, report_style: str = "detailed") -> str:
        """Draft a report from dictation.

        Args:
            case: The case being reported, or None
            dictation: Transcribed dictation
            report_style: ``concise`` or ``detailed``

        Returns:
            The drafted report text

        Raises:
            ValueError: If there is no dictation or no API key
        """
        if not dictation or not dictation.strip():
            raise ValueError("No transcribed text provided")

        response = await self.client.chat.completions.create(
            model=get_settings().openai_report_model,
            messages=[
                {"role": "system", "content": build_system_prompt(case, report_style)},
                {
                    "role": "user",
                    "content": f"Please convert this dictation into a professional radiology report:\n\n{dictation}",
                },
            ],
            temperature=DRAFT_TEMPERATURE,
            max_tokens=DRAFT_MAX_TOKENS,
        )
        return response.choices[0].message.content or ""


class Transcriber:
    """Speech to text with Whisper."""

    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = _openai_client()
        return self._client

    async def transcribe(self, audio: bytes, filename: str = "audio.wav", language: str = "en") -> str:
        result = await self.client.audio.transcriptions.create(
            model=get_settings().openai_transcription_model,
            file=(filename, io.BytesIO(audio)),
            language=language,
        )
        return (result.text or "").strip()


def pcm16_to_wav(pcm: bytes, sample_rate: int = PCM_SAMPLE_RATE, channels: int = PCM_CHANNELS) -> bytes:
    """Wrap raw little-endian 16-bit PCM in a 44-byte RIFF/WAVE header."""
    block_align = channels * PCM_BITS_PER_SAMPLE // 8
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        PCM_BITS_PER_SAMPLE,
        b"data",
        len(pcm),
    )
    return header + pcm


class LiveTranscriptionBuffer:
    """Collects streamed PCM chunks and transcribes them every few seconds.

    Usage:
        buffer = LiveTranscriptionBuffer(transcriber)
        buffer.add(chunk)
        if buffer.should_flush():
            text = await buffer.flush()
    """

    def __init__(
        self,
        transcriber: Transcriber,
        interval: float = LIVE_FLUSH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transcriber = transcriber
        self.interval = interval
        self._clock = clock
        self._chunks: list[bytes] = []
        self._last_flush = clock()

    @property
    def buffered_bytes(self) -> int:
        return sum(len(chunk) for chunk in self._chunks)

    def should_flush(self) -> bool:
        return bool(self._chunks) and self._clock() - self._last_flush >= self.interval

    def add(self, chunk: bytes) -> None:
        if chunk:
            self._chunks.append(chunk)

    def clear(self) -> None:
        self._chunks = []

    async def flush(self) -> str | None:
        """Transcribe whatever is buffered.

        Returns:
            The transcript, or None if there was no audio or no speech
        """
        self._last_flush = self._clock()
        pcm = b"".join(self._chunks)
        self._chunks = []
        if not pcm:
            return None
        transcript = await self.transcriber.transcribe(pcm16_to_wav(pcm))
        return transcript or None
