import logging
from typing import List, Optional

from openai import AsyncOpenAI

from config import settings
from ingestion.types import FeedPost

logger = logging.getLogger(__name__)

IMAGE_PROMPT = (
    "Describe this image in detail. Focus on the main content, text, and any important "
    "visual elements. Keep it concise but informative."
)


class MediaLimitError(ValueError):
    """Raised when a media item exceeds the configured duration/size limits."""


class MediaTranscriptionUnavailable(RuntimeError):
    """Raised while no transcription backend is wired in."""


def _is_placeholder_key(api_key: str) -> bool:
    return not api_key or "your_" in api_key or api_key == "test-key"


class MediaEnrichmentClient:
    """Vision/transcription adapter over an OpenAI-compatible endpoint (OpenRouter)."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model or settings.ENRICHMENT_VISION_MODEL
        self.max_images = settings.MAX_IMAGES_PER_POST
        self.max_video_duration = settings.MAX_VIDEO_DURATION_SECONDS
        self.max_video_size = settings.MAX_VIDEO_SIZE_BYTES
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or settings.OPENROUTER_BASE_URL,
            timeout=settings.ENRICHMENT_TIMEOUT_SECONDS,
            default_headers={"X-Title": "AskYourFeed"},
        )

    async def describe_image(self, image_url: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": IMAGE_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
        )
        if not response.choices:
            raise RuntimeError("no choices in vision response")
        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise RuntimeError("empty vision description")
        return content

    async def describe_images(self, image_urls: List[str]) -> List[str]:
        """Describe up to ``max_images`` images, dropping any that fail."""
        if len(image_urls) > self.max_images:
            logger.warning("Too many images (%s), describing first %s", len(image_urls), self.max_images)
            image_urls = image_urls[: self.max_images]

        descriptions: List[str] = []
        for index, image_url in enumerate(image_urls):
            try:
                descriptions.append(await self.describe_image(image_url))
            except Exception as exc:
                logger.warning("Image description failed index=%s url=%s: %s", index, image_url, exc)
        return descriptions

    async def transcribe_video(self, video_url: str, duration_seconds: int, size_bytes: int) -> str:
        if duration_seconds > self.max_video_duration:
            raise MediaLimitError(
                f"video duration {duration_seconds}s exceeds limit of {self.max_video_duration}s"
            )
        if size_bytes > self.max_video_size:
            raise MediaLimitError(
                f"video size {size_bytes // (1024 * 1024)} MB exceeds limit of "
                f"{self.max_video_size // (1024 * 1024)} MB"
            )
        # TODO: route to a Whisper-style transcription backend once one is provisioned.
        raise MediaTranscriptionUnavailable("video transcription not yet implemented")


def build_enrichment_client() -> Optional[MediaEnrichmentClient]:
    """Return an enrichment client, or None when no usable credential is configured."""
    api_key = (settings.OPENROUTER_API_KEY or "").strip()
    if _is_placeholder_key(api_key):
        return None
    return MediaEnrichmentClient(api_key)


async def describe_post_media(client: MediaEnrichmentClient, post: FeedPost) -> List[str]:
    """
    Build bracketed media descriptions for a post.

    Best effort: every failure is logged and yields no description for that item.
    """
    if post.media is None:
        return []

    descriptions: List[str] = []
    photo_urls = list(post.media.photo_urls)
    if photo_urls:
        try:
            image_texts = await client.describe_images(photo_urls)
        except Exception as exc:
            logger.warning("Image descriptions failed for post=%s: %s", post.id, exc)
            image_texts = []
        descriptions.extend(f"[Image {index}: {text}]" for index, text in enumerate(image_texts, start=1))

    for index, video in enumerate(post.media.videos, start=1):
        try:
            transcript = await client.transcribe_video(video.url, video.duration_seconds, 0)
        except MediaLimitError as exc:
            logger.warning("Video skipped post=%s index=%s: %s", post.id, index, exc)
            continue
        except MediaTranscriptionUnavailable:
            logger.debug("Video transcription unavailable post=%s index=%s", post.id, index)
            continue
        except Exception as exc:
            logger.warning("Video transcription failed post=%s index=%s: %s", post.id, index, exc)
            continue
        if transcript:
            descriptions.append(f"[Video {index} transcription: {transcript}]")

    return descriptions


def append_media_descriptions(text: str, descriptions: List[str]) -> str:
    if not descriptions:
        return text
    return f"{text}\n\n{' '.join(descriptions)}"
