"""Optional speech input/output.

Recognition goes through SpeechRecognition's Google Web Speech recognizer.
Synthesis is a pluggable callable; ``PlatformSynthesizer`` drives the
platform voice engine through pyttsx3. Without one, ``speak`` reports the
capability as absent.
Both directions take the same locale tag so recognition and synthesis stay
in one language regardless of the UI language.
"""

import asyncio
import logging
import re
import threading
from typing import Callable, Optional

import pyttsx3
import speech_recognition as sr

from ..core.exceptions import UnsupportedCapabilityError

logger = logging.getLogger(__name__)

MARKDOWN_CHARS = re.compile(r"[*#_`\[\]]")

Synthesizer = Callable[[str, str], None]


def clean_speech_text(text: str, max_chars: int = 250) -> str:
    """Strip markdown markers and cap the length of text sent to synthesis."""
    return MARKDOWN_CHARS.sub("", text).strip()[:max_chars]


def _language_tags(voice) -> list:
    """Normalized locale tags a pyttsx3 voice advertises (espeak reports bytes with a priority prefix)."""
    tags = []
    for raw in list(getattr(voice, "languages", None) or []) + [getattr(voice, "id", "") or ""]:
        if isinstance(raw, bytes):
            raw = raw.decode("ascii", errors="ignore")
        tag = re.sub(r"^[^A-Za-z]+", "", str(raw)).lower().replace("_", "-")
        if tag:
            tags.append(tag)
    return tags


class PlatformSynthesizer:
    """Synthesizer backed by the platform voice engine through pyttsx3.

    Calls are serialized on a lock; the engine is not safe to drive from two
    threads at once.
    """

    def __init__(self, rate: Optional[int] = None):
        try:
            self._engine = pyttsx3.init()
        except (RuntimeError, OSError) as e:
            raise UnsupportedCapabilityError(f"Speech synthesis unavailable: {e}") from e
        if rate:
            self._engine.setProperty("rate", rate)
        self._lock = threading.Lock()
        self._voice_by_language = {}

    def _voice_for(self, language: str) -> Optional[str]:
        if language in self._voice_by_language:
            return self._voice_by_language[language]
        wanted = language.lower().replace("_", "-")
        primary = wanted.split("-")[0]
        voices = self._engine.getProperty("voices") or []
        exact = next((v.id for v in voices if any(wanted in t for t in _language_tags(v))), None)
        partial = next((v.id for v in voices
                        if any(t == primary or t.startswith(primary + "-") for t in _language_tags(v))), None)
        voice_id = exact or partial
        if voice_id is None:
            logger.info(f"No platform voice for {language}, using the default voice")
        self._voice_by_language[language] = voice_id
        return voice_id

    def __call__(self, text: str, language: str) -> None:
        with self._lock:
            voice_id = self._voice_for(language)
            if voice_id is not None:
                self._engine.setProperty("voice", voice_id)
            self._engine.say(text)
            self._engine.runAndWait()


def create_platform_synthesizer(rate: Optional[int] = None) -> Optional[PlatformSynthesizer]:
    """Platform synthesizer, or None when no voice engine is installed."""
    try:
        return PlatformSynthesizer(rate)
    except UnsupportedCapabilityError as e:
        logger.warning(f"{e}; replies will not be spoken")
        return None


class SpeechIO:
    """Microphone recognition plus optional synthesis."""

    def __init__(self, language: str = "en-US", synthesizer: Optional[Synthesizer] = None,
                 max_chars: int = 250, listen_timeout: float = 5.0, phrase_time_limit: float = 10.0):
        self.language = language
        self.max_chars = max_chars
        self.listen_timeout = listen_timeout
        self.phrase_time_limit = phrase_time_limit
        self._synthesizer = synthesizer
        self._recognizer = sr.Recognizer()
        self._recognizer.energy_threshold = 300
        self._recognizer.dynamic_energy_threshold = True
        self._recognizer.pause_threshold = 0.8
        self._microphone: Optional[sr.Microphone] = None

    @property
    def can_speak(self) -> bool:
        return self._synthesizer is not None

    def _open_microphone(self) -> sr.Microphone:
        if self._microphone is None:
            try:
                self._microphone = sr.Microphone()
            except (AttributeError, OSError) as e:
                # AttributeError: PyAudio is not installed
                raise UnsupportedCapabilityError(f"Speech recognition unavailable: {e}") from e
        return self._microphone

    def _listen_blocking(self, language: str) -> Optional[str]:
        microphone = self._open_microphone()
        try:
            with microphone as source:
                self._recognizer.adjust_for_ambient_noise(source, duration=0.2)
                audio = self._recognizer.listen(source, timeout=self.listen_timeout,
                                                phrase_time_limit=self.phrase_time_limit)
        except sr.WaitTimeoutError:
            logger.info("No speech detected before timeout")
            return None
        except OSError as e:
            raise UnsupportedCapabilityError(f"Microphone unavailable: {e}") from e

        try:
            text = self._recognizer.recognize_google(audio, language=language)
        except sr.UnknownValueError:
            logger.info("Speech was not understood")
            return None
        except sr.RequestError as e:
            raise UnsupportedCapabilityError(f"Speech recognition service unavailable: {e}") from e
        return text.strip() or None

    async def listen(self, language: Optional[str] = None) -> Optional[str]:
        """Record one utterance and return its transcript, or None if nothing was understood.

        Raises:
            UnsupportedCapabilityError: no microphone backend or recognition service
        """
        language = language or self.language
        return await asyncio.to_thread(self._listen_blocking, language)

    async def speak(self, text: str, language: Optional[str] = None) -> None:
        """Synthesize cleaned text in the given locale.

        Raises:
            UnsupportedCapabilityError: no synthesizer configured
        """
        if self._synthesizer is None:
            raise UnsupportedCapabilityError("Speech synthesis is not available on this platform")
        cleaned = clean_speech_text(text, self.max_chars)
        if not cleaned:
            return
        await asyncio.to_thread(self._synthesizer, cleaned, language or self.language)
