"""Speech-to-text client.

Posts an audio URL to the provider's ``/listen`` endpoint and turns the
(possibly multi-document) JSON reply into a stream of word events.
"""

import json
import logging
import re
from typing import Any, AsyncIterator, Callable, Optional

import httpx
from pydantic import BaseModel, ValidationError

from podlearn.config import Settings
from podlearn.core.errors import UpstreamError

logger = logging.getLogger(__name__)

# Error bodies are kept in logs and messages only up to this length
MAX_ERROR_BODY = 1000


class StreamOptions(BaseModel):
    """Query options forwarded to the provider."""

    model: str
    language: str
    diarize: bool = True
    punctuate: bool = True
    utterances: bool = False

    def as_params(self) -> dict[str, str]:
        return {
            "model": self.model,
            "language": self.language,
            "diarize": str(self.diarize).lower(),
            "punctuate": str(self.punctuate).lower(),
            "utterances": str(self.utterances).lower(),
        }


class WordEvent(BaseModel):
    """One recognised word."""

    word: str
    punctuated_word: str
    start: float
    end: float
    speaker_index: int


# ============== Provider frame shapes ==============


class _Word(BaseModel):
    word: Optional[str] = None
    punctuated_word: Optional[str] = None
    start: Optional[float] = None
    end: Optional[float] = None
    confidence: Optional[float] = None
    speaker: Optional[int] = None
    speaker_confidence: Optional[float] = None


class _Alternative(BaseModel):
    transcript: str = ""
    words: list[_Word] = []


class _Channel(BaseModel):
    alternatives: list[_Alternative] = []


class _Results(BaseModel):
    channels: list[_Channel] = []


class TranscriptionFrame(BaseModel):
    """A reply document: pre-recorded (``results.channels``) or live (``channel``) shape."""

    results: Optional[_Results] = None
    channel: Optional[_Channel] = None

    def first_alternative(self) -> Optional[_Alternative]:
        channel = self.channel
        if channel is None and self.results is not None and self.results.channels:
            channel = self.results.channels[0]
        if channel is None or not channel.alternatives:
            return None
        return channel.alternatives[0]


def words_from_frame(document: dict) -> list[WordEvent]:
    """
    Convert one decoded reply document into word events.

    Only the first alternative is read. Frames with no alternatives yield
    nothing; missing word fields fall back to empty text, zero timings and
    speaker 0.
    """
    try:
        frame = TranscriptionFrame.model_validate(document)
    except ValidationError as e:
        raise UpstreamError(f"unexpected transcription frame: {e.error_count()} invalid field(s)") from e

    alternative = frame.first_alternative()
    if alternative is None:
        return []

    events = []
    for w in alternative.words:
        word = w.word or ""
        start = w.start or 0.0
        events.append(
            WordEvent(
                word=word,
                punctuated_word=w.punctuated_word or word,
                start=start,
                end=w.end if w.end is not None else start,
                speaker_index=w.speaker if w.speaker is not None and w.speaker >= 0 else 0,
            )
        )
    return events


# Characters that change nesting or string state; everything else is skipped over
_STRUCTURAL = re.compile(r'[{}\[\]"\\]')


class DocumentSplitter:
    """
    Split a stream of concatenated JSON objects or arrays into documents.

    Documents may be separated by any amount of whitespace, or none. Each
    piece of text is scanned once for brackets and string delimiters, and a
    document is decoded only after its closing bracket arrives, so the cost
    stays linear in the body size however the body is chunked.
    """

    def __init__(self, loads: Callable[[str], Any] = json.loads):
        self._loads = loads
        self._pending: list[str] = []
        self._depth = 0
        self._in_string = False
        self._escaped = False

    def feed(self, text: str) -> list:
        """Consume ``text`` and return every document it completes."""
        documents = []
        segment_start = 0
        pos = 0
        if self._escaped and text:
            self._escaped = False
            pos = 1

        while True:
            match = _STRUCTURAL.search(text, pos)
            if match is None:
                break
            idx = match.start()
            char = text[idx]
            pos = idx + 1

            if self._in_string:
                if char == "\\":
                    if pos >= len(text):
                        self._escaped = True
                    pos += 1
                elif char == '"':
                    self._in_string = False
                continue

            if self._depth == 0:
                if char not in "{[":
                    raise self._undecodable(text[segment_start:])
                gap = "".join(self._pending) + text[segment_start:idx]
                if gap.strip():
                    raise self._undecodable(gap)
                self._pending = []
                segment_start = idx

            if char == '"':
                self._in_string = True
            elif char in "{[":
                self._depth += 1
            elif char in "}]":
                self._depth -= 1
                if self._depth == 0:
                    raw = "".join(self._pending) + text[segment_start:pos]
                    self._pending = []
                    segment_start = pos
                    try:
                        documents.append(self._loads(raw))
                    except ValueError as e:
                        raise self._undecodable(raw) from e

        self._pending.append(text[segment_start:])
        return documents

    def remainder(self) -> str:
        """Text received after the last complete document."""
        return "".join(self._pending)

    def _undecodable(self, text: str) -> UpstreamError:
        return UpstreamError(f"undecodable transcription response: {_truncate(text.strip())}")


def _truncate(body: str) -> str:
    return body if len(body) <= MAX_ERROR_BODY else body[:MAX_ERROR_BODY] + "..."


class TranscriptionClient:
    """Client for the speech-to-text provider."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str = "nova-3",
        language: str = "en",
        connect_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.language = language
        # Only establishing the connection is bounded; the body streams for as long as the audio runs
        self.timeout = httpx.Timeout(connect_timeout, read=None)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "TranscriptionClient":
        return cls(
            api_key=settings.transcription_api_key,
            base_url=settings.transcription_api_base_url,
            model=settings.transcription_model,
            language=settings.transcription_language,
            **kwargs,
        )

    def default_options(self) -> StreamOptions:
        return StreamOptions(model=self.model, language=self.language)

    async def stream(
        self, audio_url: str, options: Optional[StreamOptions] = None
    ) -> AsyncIterator[WordEvent]:
        """
        Transcribe ``audio_url`` and yield one event per recognised word.

        Closing the iterator (for example when the consumer is cancelled)
        aborts the upstream read.

        Raises:
            UpstreamError: On transport failure, a non-2xx reply or an
                undecodable body
        """
        if not self.api_key:
            raise UpstreamError("transcription client is not configured")

        options = options or self.default_options()
        url = f"{self.base_url}/listen"
        headers = {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": "application/json",
        }

        logger.info(f"Streaming transcription for {audio_url} (model={options.model})")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                async with client.stream(
                    "POST",
                    url,
                    params=options.as_params(),
                    json={"url": audio_url},
                    headers=headers,
                ) as response:
                    if not response.is_success:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        logger.error(
                            f"Transcription API returned {response.status_code}: {_truncate(body)}"
                        )
                        raise UpstreamError(
                            f"transcription API error: status={response.status_code}, body={_truncate(body)}",
                            status_code=response.status_code,
                            body=body,
                        )

                    splitter = DocumentSplitter()
                    async for text in response.aiter_text():
                        documents = splitter.feed(text)
                        for document in documents:
                            if not isinstance(document, dict):
                                continue
                            for event in words_from_frame(document):
                                yield event

                    remainder = splitter.remainder()
                    if remainder.strip():
                        raise UpstreamError(
                            f"undecodable transcription response: {_truncate(remainder.strip())}"
                        )
            except httpx.HTTPError as e:
                logger.error(f"Transcription request failed: {e!r}")
                raise UpstreamError(f"transcription request failed: {e!r}") from e
