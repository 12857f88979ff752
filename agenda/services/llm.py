import io
import logging
from functools import lru_cache

from openai import AsyncOpenAI, OpenAIError

from agenda.core.config import settings
from agenda.core.exceptions import ExternalServiceUnavailable, TranscriptionFailure

logger = logging.getLogger(__name__)


@lru_cache
def get_client() -> AsyncOpenAI:
    return AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.HTTP_TIMEOUT_SECONDS)


async def call_llm_with_history(
    system_prompt: str,
    messages: list[dict],
    temperature: float | None = None,
    model: str | None = None,
) -> str:
    """
    Call OpenAI API with full conversation history.

    Args:
        system_prompt: Instructions for the AI
        messages: List of {"role": "user"|"assistant", "content": "..."}
        temperature: Creativity level, defaults to OPENAI_TEMPERATURE
        model: Which OpenAI model to use, defaults to OPENAI_MODEL

    Returns:
        The AI's response as a string

    Raises:
        ExternalServiceUnavailable: the API call failed or returned no text
    """
    full_messages = [{"role": "system", "content": system_prompt}] + messages

    try:
        response = await get_client().chat.completions.create(
            model=model or settings.OPENAI_MODEL,
            messages=full_messages,
            temperature=settings.OPENAI_TEMPERATURE if temperature is None else temperature,
        )
    except OpenAIError as exc:
        logger.warning("Chat completion failed: %s", exc)
        raise ExternalServiceUnavailable("openai", str(exc)) from exc

    content = response.choices[0].message.content if response.choices else None
    if not content or not content.strip():
        raise ExternalServiceUnavailable("openai", "empty completion")

    return content.strip()


async def complete_chat(system_prompt: str, history: list[dict], user_turn: str | None = None) -> str:
    """Next assistant turn. ``history`` is oldest first; ``user_turn`` is appended when not already last."""
    messages = list(history)
    if user_turn and not (
        messages and messages[-1]["role"] == "user" and messages[-1]["content"] == user_turn
    ):
        messages.append({"role": "user", "content": user_turn})
    return await call_llm_with_history(system_prompt, messages)


async def transcribe_audio(audio: bytes, filename: str = "audio.ogg") -> str:
    """Speech to text for WhatsApp voice notes."""
    if not audio:
        raise TranscriptionFailure("empty audio payload")

    buffer = io.BytesIO(audio)
    buffer.name = filename

    try:
        result = await get_client().audio.transcriptions.create(
            model=settings.TRANSCRIPTION_MODEL,
            file=buffer,
            language="pt",
        )
    except OpenAIError as exc:
        logger.warning("Transcription failed: %s", exc)
        raise TranscriptionFailure(str(exc)) from exc

    text = (getattr(result, "text", None) or "").strip()
    if not text:
        raise TranscriptionFailure("empty transcription")
    return text
