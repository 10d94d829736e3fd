"""
Transcript extraction service.

One capability with a cost tag, backed by several methods:

1. youtube_captions (free): YouTube captions with fallbacks
   - manual transcript in preferred languages
   - auto-generated transcript in preferred languages
   - manual transcript in any language
   - auto-generated transcript in any language
2. whisper (paid): speech-to-text of uploaded media read from the
   content-object store, billed per minute
3. inline (free): transcript supplied when the item was registered

Errors:
-------
- NoTranscriptAvailable / UnsupportedSourceError: permanent, the item fails
- TranscriptError: transient (rate limit, network), the stage is retried
"""

import asyncio
import re
from pathlib import PurePosixPath
from typing import List, Optional, Sequence

import openai
from openai import AsyncOpenAI
from youtube_transcript_api import YouTubeTranscriptApi
from youtube_transcript_api._errors import (
    CouldNotRetrieveTranscript,
    InvalidVideoId,
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
)

from chronos.core.config import Settings, settings as default_settings
from chronos.core.exceptions import NoTranscriptAvailable, TranscriptError, UnsupportedSourceError
from chronos.core.logging import get_logger
from chronos.models.content import ContentItem, ContentSourceType
from chronos.schemas.transcripts import TimedSegment, TranscriptResult
from chronos.services.object_store import ObjectStore

logger = get_logger(__name__)


YOUTUBE_ID_RE = re.compile(
    r"(?:v=|youtu\.be/|/embed/|/shorts/|/live/)([A-Za-z0-9_-]{11})"
)
BARE_YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")

# Whisper API upload limit
WHISPER_MAX_BYTES = 25 * 1024 * 1024


def clean_transcript(text: str) -> str:
    """
    Clean and normalize transcript text.

    Removes sound-effect tags ([Music], [Applause], ...), inline timestamps,
    HTML entities left by auto-captions, repeated punctuation and extra
    whitespace.
    """
    if not text:
        return ""

    text = re.sub(r'\[.*?\]', '', text)  # [Music], [Applause], [Laughter], ...
    text = re.sub(r'\b\d{1,2}:\d{2}(?::\d{2})?\b', '', text)
    text = text.replace('&nbsp;', ' ')
    text = text.replace('&amp;', '&')
    text = text.replace('&lt;', '<')
    text = text.replace('&gt;', '>')
    text = text.replace('&#39;', "'")
    text = re.sub(r'([.!?])\1+', r'\1', text)
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def extract_video_id(source_ref: str) -> str:
    """
    Get the 11-character video id from a URL or a bare id.

    Raises:
        UnsupportedSourceError: nothing that looks like a video id
    """
    ref = source_ref.strip()
    if BARE_YOUTUBE_ID_RE.match(ref):
        return ref
    match = YOUTUBE_ID_RE.search(ref)
    if not match:
        raise UnsupportedSourceError(f"Not a YouTube video reference: {source_ref}")
    return match.group(1)


# ========================================
# YouTube captions
# ========================================

class YouTubeCaptionSource:
    """Free caption extraction via youtube-transcript-api."""

    method = "youtube_captions"

    def __init__(self, preferred_languages: Optional[List[str]] = None, api: Optional[YouTubeTranscriptApi] = None):
        self.preferred_languages = preferred_languages or default_settings.transcript_languages_list
        self.api = api or YouTubeTranscriptApi()

    async def fetch(self, source_ref: str) -> TranscriptResult:
        video_id = extract_video_id(source_ref)

        try:
            # The library is synchronous (HTTP under the hood)
            return await asyncio.to_thread(self._fetch_sync, video_id)
        except (NoTranscriptAvailable, TranscriptError):
            raise
        except TranscriptsDisabled:
            raise NoTranscriptAvailable(f"Transcripts are disabled for video {video_id}")
        except (VideoUnavailable, InvalidVideoId):
            raise NoTranscriptAvailable(f"Video {video_id} is unavailable")
        except NoTranscriptFound:
            raise NoTranscriptAvailable(f"No transcript available for video {video_id}")
        except RequestBlocked as e:
            logger.warning("youtube_request_blocked", video_id=video_id)
            raise TranscriptError(f"YouTube blocked the request for {video_id}") from e
        except CouldNotRetrieveTranscript as e:
            raise TranscriptError(f"Failed to get transcript for {video_id}: {e.cause}") from e
        except OSError as e:
            raise TranscriptError(f"Network error fetching transcript for {video_id}: {e}") from e

    def _fetch_sync(self, video_id: str) -> TranscriptResult:
        transcript_list = self.api.list(video_id)
        available = [t.language_code for t in transcript_list]

        transcript, kind = self._select(transcript_list)
        if transcript is None:
            raise NoTranscriptAvailable(
                f"No transcript available for video {video_id} in any language"
            )

        fetched = transcript.fetch()
        segments = []
        for snippet in fetched:
            text = clean_transcript(snippet.text)
            if text:
                segments.append(TimedSegment(
                    text=text,
                    start=snippet.start,
                    end=snippet.start + snippet.duration,
                ))

        text = " ".join(s.text for s in segments)
        if not text:
            raise NoTranscriptAvailable(f"Transcript for video {video_id} is empty")

        return TranscriptResult(
            text=text,
            segments=segments,
            language=transcript.language_code,
            method=self.method,
            duration_seconds=segments[-1].end if segments else None,
            cost_usd=0.0,
            metadata={
                "video_id": video_id,
                "caption_type": kind,
                "available_languages": available,
            },
        )

    def _select(self, transcript_list):
        """Apply the fallback strategies in order."""
        try:
            return transcript_list.find_manually_created_transcript(self.preferred_languages), "manual"
        except NoTranscriptFound:
            pass

        try:
            return transcript_list.find_generated_transcript(self.preferred_languages), "auto"
        except NoTranscriptFound:
            pass

        manual = [t for t in transcript_list if not t.is_generated]
        if manual:
            logger.info("using_non_preferred_language", language=manual[0].language_code, caption_type="manual")
            return manual[0], "manual"

        generated = [t for t in transcript_list if t.is_generated]
        if generated:
            logger.info("using_non_preferred_language", language=generated[0].language_code, caption_type="auto")
            return generated[0], "auto"

        return None, None


# ========================================
# Whisper speech-to-text
# ========================================

class WhisperTranscriber:
    """Paid speech-to-text for uploaded media."""

    method = "whisper"

    def __init__(
        self,
        client: AsyncOpenAI,
        object_store: ObjectStore,
        model: str = "whisper-1",
        cost_per_minute: float = 0.006,
    ):
        self.client = client
        self.object_store = object_store
        self.model = model
        self.cost_per_minute = cost_per_minute

    async def transcribe(self, object_key: str, duration_hint: Optional[float] = None) -> TranscriptResult:
        try:
            data = await self.object_store.get(object_key)
        except FileNotFoundError:
            raise NoTranscriptAvailable(f"Media object {object_key} not found")

        if not data:
            raise UnsupportedSourceError(f"Media object {object_key} is empty")
        if len(data) > WHISPER_MAX_BYTES:
            raise UnsupportedSourceError(
                f"Media object {object_key} is {len(data)} bytes, limit is {WHISPER_MAX_BYTES}"
            )

        filename = PurePosixPath(object_key).name or "audio.mp3"
        try:
            response = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, data),
                response_format="verbose_json",
            )
        except (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise TranscriptError(f"Whisper request failed: {e}") from e
        except (openai.BadRequestError, openai.UnprocessableEntityError) as e:
            raise UnsupportedSourceError(f"Whisper rejected {object_key}: {e}") from e

        segments = [
            TimedSegment(text=seg.text.strip(), start=seg.start, end=seg.end)
            for seg in (getattr(response, "segments", None) or [])
            if seg.text and seg.text.strip()
        ]
        text = clean_transcript(response.text)
        if not text:
            raise NoTranscriptAvailable(f"No speech found in {object_key}")

        duration = getattr(response, "duration", None) or duration_hint or (segments[-1].end if segments else 0.0)
        cost = round(duration / 60.0 * self.cost_per_minute, 6)

        return TranscriptResult(
            text=text,
            segments=segments,
            language=getattr(response, "language", None),
            method=self.method,
            duration_seconds=duration,
            cost_usd=cost,
            metadata={"object_key": object_key, "model": self.model},
        )


# ========================================
# Adapter
# ========================================

class TranscriptSourceAdapter:
    """
    Single entry point the pipeline uses to get a transcript.

    Usage:
    ------
    adapter = TranscriptSourceAdapter(youtube=YouTubeCaptionSource(), whisper=transcriber)
    result = await adapter.extract(content_item)
    print(result.method, result.cost_usd)
    """

    def __init__(
        self,
        youtube: Optional[YouTubeCaptionSource] = None,
        whisper: Optional[WhisperTranscriber] = None,
    ):
        self.youtube = youtube or YouTubeCaptionSource()
        self.whisper = whisper

    async def extract(self, item: ContentItem) -> TranscriptResult:
        """
        Extract the transcript for a content item.

        Raises:
            NoTranscriptAvailable, UnsupportedSourceError: permanent
            TranscriptError: transient
        """
        source_type = ContentSourceType(item.source_type)

        if source_type == ContentSourceType.YOUTUBE:
            result = await self.youtube.fetch(item.source_ref)
        elif source_type == ContentSourceType.UPLOAD:
            if self.whisper is None:
                raise UnsupportedSourceError("Upload transcription is not configured (OPENAI_API_KEY)")
            result = await self.whisper.transcribe(item.source_ref, duration_hint=item.duration_seconds)
        elif source_type == ContentSourceType.TEXT:
            result = self._inline(item)
        else:
            raise UnsupportedSourceError(f"Unsupported source type: {item.source_type}")

        if item.duration_seconds and not result.duration_seconds:
            result.duration_seconds = item.duration_seconds

        logger.info(
            "transcript_extracted",
            content_id=item.id,
            method=result.method,
            words=result.word_count,
            segments=len(result.segments),
            cost_usd=result.cost_usd,
        )
        return result

    @staticmethod
    def _inline(item: ContentItem) -> TranscriptResult:
        text = clean_transcript(item.transcript or "")
        if not text:
            raise NoTranscriptAvailable(f"Content item {item.id} has no inline transcript")
        return TranscriptResult(
            text=text,
            segments=[],
            method="inline",
            duration_seconds=item.duration_seconds,
            cost_usd=0.0,
        )


def build_transcript_adapter(
    object_store: ObjectStore,
    cfg: Optional[Settings] = None,
    openai_client: Optional[AsyncOpenAI] = None,
) -> TranscriptSourceAdapter:
    cfg = cfg or default_settings

    whisper = None
    if openai_client is None and cfg.OPENAI_API_KEY:
        openai_client = AsyncOpenAI(api_key=cfg.OPENAI_API_KEY, base_url=cfg.OPENAI_BASE_URL)
    if openai_client is not None:
        whisper = WhisperTranscriber(
            client=openai_client,
            object_store=object_store,
            model=cfg.WHISPER_MODEL,
            cost_per_minute=cfg.WHISPER_COST_PER_MINUTE,
        )

    return TranscriptSourceAdapter(
        youtube=YouTubeCaptionSource(cfg.transcript_languages_list),
        whisper=whisper,
    )


def segments_from_json(raw: Optional[Sequence[dict]]) -> List[TimedSegment]:
    """Rehydrate segments stored in the content item's JSONB column."""
    return [TimedSegment.model_validate(s) for s in (raw or [])]
