"""
Gemini integration — the generation backend for every pipeline stage.

- Trends:   Gemini 2.5 Flash + Google Search grounding (free-form JSON text)
- Design:   Gemini 3 Pro Image with aspect ratio / size config
- Listing:  Gemini 3 Pro structured JSON output (thinking budget)
- Title:    Gemini 2.5 Flash Lite quick rewrite
- Mockups:  Gemini 2.5 Flash Image, design passed as inline input
- Video:    Veo 3.1 long-running operation (start + status + keyed download)

All calls go through the REST API with httpx. Failures surface as typed
GenerationError subclasses; nothing here retries.
"""

import asyncio
import base64
import binascii
import json
import logging
import re
import time
from io import BytesIO
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from . import config, metrics
from .credentials import CredentialResolver, require_credential
from .errors import (
    AuthMissingError,
    GenerationError,
    GenerationTimeoutError,
    MalformedResponseError,
    NoArtifactProducedError,
    QuotaOrBillingError,
)
from .pipeline.models import (
    AspectRatio,
    DesignStyle,
    ImagePayload,
    ImageResolution,
    ListingData,
    Trend,
    VideoJob,
)

logger = logging.getLogger(__name__)

QUOTA_MARKERS = ("quota", "billing", "resource_exhausted", "rate limit")
INVALID_KEY_MARKERS = ("api_key_invalid", "api key not valid", "api key expired")

LISTING_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "title": {"type": "STRING"},
        "description": {"type": "STRING"},
        "tags": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
    "required": ["title", "description", "tags"],
}


# =========================================================================
# Prompts
# =========================================================================

TRENDS_PROMPT = """Find 5 current, specific, and visual trending themes for holiday print-on-demand gifts related to: {niche}. {style_block}
Focus on aesthetics, styles, and specific motifs that match the requested style.

Return the result as a raw JSON array (no markdown code blocks) with the following structure:
[
  {{
    "title": "Trend Title",
    "description": "Description of the trend and how it fits the style",
    "sourceUrl": "Optional source URL if available"
  }}
]"""

DESIGN_PROMPT = """A high-quality, professional vector-style t-shirt design featuring {title}.
Context: {description}.
{style_block}
Isolated on a transparent background. No background scenery."""

DEFAULT_DESIGN_STYLE = "Flat colors, clean lines, suitable for screen printing."

LISTING_PROMPT = """Create a highly SEO-optimized Etsy listing for a t-shirt.
Trend: {trend}
Design Context: {context}.

Requirements:
1. SEO-rich Title (max 140 chars).
2. Persuasive Description (2 paragraphs).
3. Exactly 13 tags, each under 20 characters.

Return strictly JSON."""

TITLE_PROMPT = 'Rewrite this product title to be more catchy and under 100 characters: "{title}"'

MOCKUP_PROMPT = (
    "A photorealistic studio shot of a model wearing a {color} cotton t-shirt. "
    "The t-shirt features the design shown in the input image on the chest. "
    "The design should be clearly visible and blend naturally with the fabric folds. "
    "{scene}. High resolution, 4k."
)


def _discovery_style_block(style: Optional[DesignStyle]) -> str:
    if not style:
        return ""
    return (
        f'\nFocus specifically on the "{style.name}" design style.\n'
        f"Style Description: {style.description}\n"
        f"Key Elements to look for: {style.elements}\n"
    )


def _design_style_block(style: Optional[DesignStyle]) -> str:
    if not style:
        return DEFAULT_DESIGN_STYLE
    return (
        f"Design Style: {style.name}\n"
        f"Visual Description: {style.description}\n"
        f"Key Elements to Include: {style.elements}"
    )


# =========================================================================
# Response helpers
# =========================================================================

def strip_code_fence(text: str) -> str:
    """Return the body of the first ``` fenced block, minus its language tag."""
    text = text.strip()
    if "```" not in text:
        return text
    block = text.split("```")[1]
    block = re.sub(r"^[A-Za-z]+(?=[\s\[{])", "", block, count=1)
    return block.strip()


def parse_trends(text: str, style: Optional[DesignStyle] = None) -> list[Trend]:
    """
    Parse the trends response. Unparseable output yields an empty list
    rather than an error, so discovery degrades to "no results".
    """
    cleaned = strip_code_fence(text or "")
    try:
        items = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse trends ({e}); raw: {cleaned[:200]}")
        return []

    if not isinstance(items, list):
        logger.warning(f"Trends response is not a JSON array: {type(items).__name__}")
        return []

    trends: list[Trend] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            trends.append(Trend(
                title=item["title"],
                description=item["description"],
                source_url=item.get("sourceUrl") or None,
                style=style,
            ))
        except (KeyError, ValidationError) as e:
            logger.warning(f"Skipping malformed trend entry {item!r}: {e}")
    return trends


def _response_parts(result: dict) -> list:
    candidates = result.get("candidates") or []
    if not candidates:
        return []
    return (candidates[0].get("content") or {}).get("parts") or []


def _response_text(result: dict) -> str:
    return "".join(
        part["text"]
        for part in _response_parts(result)
        if isinstance(part.get("text"), str) and not part.get("thought")
    )


def _first_image(result: dict) -> Optional[ImagePayload]:
    for part in _response_parts(result):
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return ImagePayload(data=inline["data"], mime_type=mime)
    return None


def split_data_url(value: str) -> tuple[Optional[str], str]:
    """Split a `data:<mime>;base64,<data>` URL. Plain base64 returns (None, value)."""
    if value.startswith("data:"):
        header, sep, b64data = value.partition(",")
        if not sep or not b64data:
            raise MalformedResponseError("Data URL has no base64 payload", {"header": header[:100]})
        mime = header[len("data:"):].split(";")[0]
        return mime or None, b64data
    return None, value


def detect_mime_type(image_b64: str, default: str = "image/png") -> str:
    """Sniff the image format of a base64 payload with Pillow."""
    try:
        raw = base64.b64decode(image_b64, validate=True)
        with Image.open(BytesIO(raw)) as img:
            return Image.MIME.get(img.format, default)
    except (binascii.Error, ValueError, UnidentifiedImageError, OSError):
        return default


def classify_http_error(operation: str, response: httpx.Response) -> GenerationError:
    """Map a non-2xx Gemini response onto the error taxonomy."""
    status = response.status_code
    body = response.text[:500]
    lowered = body.lower()
    details = {"operation": operation, "status": status, "body": body}

    if status in (408, 504):
        return GenerationTimeoutError(f"Gemini {operation} timed out ({status})", details)
    if status == 429 or (status in (400, 403) and any(m in lowered for m in QUOTA_MARKERS)):
        return QuotaOrBillingError(f"Gemini quota or billing error {status}: {body}", details)
    if status in (401, 403) or any(m in lowered for m in INVALID_KEY_MARKERS):
        return AuthMissingError(f"Gemini rejected the API key ({status}): {body}", details)
    return MalformedResponseError(f"Gemini API error {status}: {body}", details)


# =========================================================================
# Client
# =========================================================================

class GeminiClient:
    """
    Generation Service adapter.

    Usage:
        client = GeminiClient(default_resolver())
        trends = await client.discover_trends("cat lovers", style)
        design = await client.synthesize_design_image(trends[0], AspectRatio.SQUARE, ImageResolution.RES_1K)
    """

    def __init__(
        self,
        credentials: CredentialResolver,
        api_base: str = config.GEMINI_API_BASE,
        timeout: float = config.GENERATION_TIMEOUT,
        limiter=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.limiter = limiter
        self.transport = transport

    def has_credential(self) -> bool:
        return bool(self.credentials.resolve())

    # ── Transport ────────────────────────────────────────────────────────

    async def _acquire_slot(self, operation: str):
        """Wait for a free slot in the rate-limit window, if one is configured."""
        if self.limiter is None:
            return
        while True:
            allowed, _, retry_after = self.limiter.check()
            if allowed:
                return
            logger.info(f"Rate limit window full before {operation}; waiting {retry_after}s")
            await asyncio.sleep(retry_after)

    async def _send(self, operation: str, method: str, url: str, body: Optional[dict] = None) -> httpx.Response:
        """One keyed call. The key only ever travels as a request param."""
        api_key = require_credential(self.credentials)
        await self._acquire_slot(operation)

        metrics.inc_counter(f"generation.{operation}")
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport, follow_redirects=True
            ) as client:
                response = await client.request(method, url, params={"key": api_key}, json=body)
        except httpx.TimeoutException as e:
            raise GenerationTimeoutError(
                f"Gemini {operation} timed out after {self.timeout}s", {"operation": operation}
            ) from e
        except httpx.TransportError as e:
            raise GenerationTimeoutError(
                f"Gemini {operation} transport error: {e}", {"operation": operation}
            ) from e
        finally:
            metrics.record_latency(operation, (time.monotonic() - started) * 1000)

        if not response.is_success:
            raise classify_http_error(operation, response)
        return response

    async def _request(self, operation: str, method: str, path: str, body: Optional[dict] = None) -> dict:
        response = await self._send(operation, method, f"{self.api_base}/{path.lstrip('/')}", body)
        try:
            result = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Gemini {operation} returned a non-JSON body", {"body": response.text[:200]}
            ) from e
        if not isinstance(result, dict):
            raise MalformedResponseError(f"Gemini {operation} returned unexpected JSON: {result!r:.200}")
        return result

    async def _generate_content(self, operation: str, model: str, parts: list, **extra) -> dict:
        body: dict = {"contents": [{"parts": parts}]}
        body.update(extra)
        return await self._request(operation, "POST", f"models/{model}:generateContent", body)

    # ── 1. Trend discovery ───────────────────────────────────────────────

    async def discover_trends(self, query: str, style: Optional[DesignStyle] = None) -> list[Trend]:
        prompt = TRENDS_PROMPT.format(
            niche=query or "general holidays",
            style_block=_discovery_style_block(style),
        )
        result = await self._generate_content(
            "discover_trends",
            config.TRENDS_MODEL,
            [{"text": prompt}],
            tools=[{"google_search": {}}],
        )
        trends = parse_trends(_response_text(result) or "[]", style)
        logger.info(f"Discovered {len(trends)} trend(s) for query={query!r}")
        return trends

    # ── 2. Design generation ─────────────────────────────────────────────

    async def synthesize_design_image(
        self,
        trend: Trend,
        aspect_ratio: AspectRatio = AspectRatio.SQUARE,
        resolution: ImageResolution = ImageResolution.RES_1K,
        reference_image: Optional[str] = None,
    ) -> ImagePayload:
        prompt = DESIGN_PROMPT.format(
            title=trend.title,
            description=trend.description,
            style_block=_design_style_block(trend.style),
        )

        parts: list = []
        if reference_image:
            mime, data = split_data_url(reference_image)
            parts.append({"inlineData": {"mimeType": mime or detect_mime_type(data), "data": data}})
            parts.append({"text": f"Use the attached image as a style reference. {prompt}"})
        else:
            parts.append({"text": prompt})

        result = await self._generate_content(
            "synthesize_design_image",
            config.DESIGN_MODEL,
            parts,
            generationConfig={
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {
                    "aspectRatio": AspectRatio(aspect_ratio).value,
                    "imageSize": ImageResolution(resolution).value,
                },
            },
        )

        image = _first_image(result)
        if image is None:
            raise NoArtifactProducedError("No image generated", {"operation": "synthesize_design_image"})
        return image

    # ── 3. Listing generation ────────────────────────────────────────────

    async def synthesize_listing_text(self, trend_title: str, design_context: Optional[str] = None) -> ListingData:
        prompt = LISTING_PROMPT.format(trend=trend_title, context=design_context or "A cool graphic design")
        result = await self._generate_content(
            "synthesize_listing_text",
            config.LISTING_MODEL,
            [{"text": prompt}],
            generationConfig={
                "thinkingConfig": {"thinkingBudget": config.LISTING_THINKING_BUDGET},
                "responseMimeType": "application/json",
                "responseSchema": LISTING_SCHEMA,
            },
        )

        text = _response_text(result)
        try:
            return ListingData.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as e:
            raise MalformedResponseError(
                "Listing response is not valid listing JSON", {"error": str(e), "raw": text[:200]}
            ) from e

    async def refine_title(self, current_title: str) -> str:
        result = await self._generate_content(
            "refine_title",
            config.TITLE_MODEL,
            [{"text": TITLE_PROMPT.format(title=current_title)}],
        )
        title = _response_text(result).strip().strip('"').strip()
        return title or current_title

    # ── 4. Mockup generation ─────────────────────────────────────────────

    async def synthesize_mockup(
        self,
        design_payload: str,
        color: str,
        scene: str,
        mime_type: str = "image/png",
    ) -> ImagePayload:
        mime, data = split_data_url(design_payload)
        result = await self._generate_content(
            "synthesize_mockup",
            config.MOCKUP_MODEL,
            [
                {"inlineData": {"mimeType": mime or mime_type, "data": data}},
                {"text": MOCKUP_PROMPT.format(color=color, scene=scene)},
            ],
        )

        image = _first_image(result)
        if image is None:
            raise NoArtifactProducedError("No mockup generated", {"color": color, "scene": scene})
        return image

    # ── 5. Video generation (long-running) ───────────────────────────────

    async def synthesize_video(self, prompt: str) -> VideoJob:
        result = await self._request(
            "synthesize_video",
            "POST",
            f"models/{config.VIDEO_MODEL}:predictLongRunning",
            {
                "instances": [{"prompt": prompt}],
                "parameters": {"aspectRatio": "9:16", "resolution": "1080p"},
            },
        )
        job = self._parse_operation(result)
        logger.info(f"Veo job started: {job.name}")
        return job

    async def get_video_job(self, job: VideoJob) -> VideoJob:
        result = await self._request("get_video_job", "GET", job.name)
        return self._parse_operation(result)

    def _parse_operation(self, result: dict) -> VideoJob:
        name = result.get("name")
        if not name:
            raise MalformedResponseError("Video operation has no name", {"raw": str(result)[:200]})

        error = result.get("error")
        error_msg = error.get("message", str(error)) if isinstance(error, dict) else (str(error) if error else None)

        response = result.get("response") or {}
        video_response = response.get("generateVideoResponse") or {}
        samples = video_response.get("generatedSamples") or response.get("generatedVideos") or []

        uri = None
        if samples and isinstance(samples[0], dict):
            uri = (samples[0].get("video") or {}).get("uri")

        filtered = video_response.get("raiMediaFilteredReasons") or []
        if not uri and not error_msg and filtered:
            error_msg = "; ".join(str(reason) for reason in filtered)

        return VideoJob(name=name, done=bool(result.get("done")), video_uri=uri, error=error_msg)

    async def download_video(self, uri: str) -> tuple[bytes, str]:
        """
        Fetch a finished video. Stored locators are plain file uris; the key
        is attached here, per request, and never written back.
        """
        response = await self._send("download_video", "GET", uri)
        content_type = response.headers.get("content-type", "video/mp4").split(";")[0]
        if not response.content:
            raise NoArtifactProducedError("Video download returned no bytes", {"uri": uri})
        return response.content, content_type
