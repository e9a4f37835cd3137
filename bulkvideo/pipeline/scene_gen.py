"""
Scene Content Generator — still image per scene via Gemini image generation.

The prompt is built from the row text, the item's style/preset and the
category-vs-product heuristic. With product framing, the product image is
passed inline as a reference so the generated still shows the real product.

Two optional Gemini text steps sit around it:
- Prompt refinement rewrites the built scene prompt (AI_PROMPT_REFINEMENT).
- MotionPromptWriter looks at the finished still and writes its motion
  prompt (AI_MOTION_PROMPTS).
Both fall back to the rule-based prompts on any error.
"""

import os
import json
import base64
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

import httpx

from .. import metrics
from ..errors import ArtifactUnavailableError
from .models import BatchJob, ItemSettings, VideoItem
from .prompt_builder import (
    MAX_MOTION_PROMPT_CHARS,
    MAX_PROMPT_CHARS,
    MOTION_RULES,
    build_motion_prompt,
    build_override_prompt,
    build_scene_prompt,
    clean_model_prompt,
    image_aspect_ratio,
    is_category_image,
    is_super_minimalist,
    motion_style_guidelines,
    refinement_requirements,
    vision_says_minimal,
)
from .storage import AssetStoreGateway, scene_image_key

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
GEMINI_IMAGE_MODEL = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
GEMINI_TEXT_MODEL = os.getenv("GEMINI_TEXT_MODEL", "gemini-2.0-flash")
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

AI_MOTION_PROMPTS = os.getenv("AI_MOTION_PROMPTS", "true").lower() in ("1", "true", "yes")
AI_PROMPT_REFINEMENT = os.getenv("AI_PROMPT_REFINEMENT", "false").lower() in ("1", "true", "yes")


SCENE_SYSTEM_PROMPT = """You are a commercial product photographer creating one still frame
for a short vertical or square marketing video.

Rules:
- Photorealistic, advertising quality lighting and composition
- Keep the subject fully in frame with margin on every side so it can be cropped
- Never render color codes, watermarks, captions or UI elements
"""

REFINE_PROMPT = """Rewrite this advertising image prompt so an image model renders it well.
Keep it under 300 words and return only the prompt text.

CRITICAL REQUIREMENTS:
{requirements}

Scene prompt: {prompt}
Project description: {description}"""

MOTION_PROMPT = """You are an expert at animation prompts for advertising videos.
Look at this still frame. Describe what is visible, then write one animation
prompt (max 30 words) covering camera movement, subject motion and atmosphere
that fits this exact image.

Product/context: {text}
Style: {style}
{guidelines}

RULES:
{rules}

Return your answer as a JSON object with this EXACT structure (no markdown, just raw JSON):
{{"analysis": "one or two sentences on composition and background", "motion_prompt": "..."}}"""


@dataclass
class SceneContent:
    prompt: str
    image_ref: str


def _sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def _inline_image(data: bytes) -> dict:
    return {"inlineData": {"mimeType": _sniff_mime(data), "data": base64.b64encode(data).decode("utf-8")}}


def _parse_json_response(text: str) -> dict:
    """Parse JSON from a Gemini reply, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            return json.loads(json_block.strip())
        raise ValueError(f"Gemini returned invalid JSON: {text[:200]}")


class GeminiClient:
    """generateContent over REST."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 120,
    ):
        self._api_key = api_key if api_key is not None else GOOGLE_API_KEY
        self._transport = transport
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def generate_content(self, model: str, parts: list, config: Optional[dict] = None) -> dict:
        if not self._api_key:
            raise RuntimeError("GOOGLE_API_KEY is not configured")

        body: dict = {"contents": [{"parts": parts}]}
        if config:
            body["generationConfig"] = config

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                f"{GEMINI_API_BASE}/{model}:generateContent",
                params={"key": self._api_key},
                json=body,
            )
        if response.status_code != 200:
            raise RuntimeError(f"Gemini API error {response.status_code}: {response.text[:500]}")
        return response.json()

    async def generate_text(self, model: str, parts: list, config: Optional[dict] = None) -> str:
        result = await self.generate_content(model, parts, config)
        candidates = result.get("candidates", [])
        if not candidates:
            feedback = result.get("promptFeedback", {}).get("blockReason", "no candidates")
            raise RuntimeError(f"Gemini returned no text ({feedback})")
        texts = [p["text"] for p in candidates[0].get("content", {}).get("parts", []) if "text" in p]
        if not texts:
            raise RuntimeError("Gemini response contained no text.")
        return "".join(texts).strip()


class SceneContentGenerator:
    def __init__(
        self,
        gateway: AssetStoreGateway,
        api_key: Optional[str] = None,
        model: str = GEMINI_IMAGE_MODEL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        refine_prompts: bool = AI_PROMPT_REFINEMENT,
        text_model: str = GEMINI_TEXT_MODEL,
    ):
        self.gateway = gateway
        self._gemini = GeminiClient(api_key, transport)
        self._model = model
        self._text_model = text_model
        self._refine_prompts = refine_prompts

    def build_prompt(
        self,
        item: VideoItem,
        batch: BatchJob,
        settings: ItemSettings,
        order: int,
        override: Optional[str] = None,
    ) -> str:
        if override and override.strip():
            return build_override_prompt(override, settings.image_style, settings.style_preset)
        return build_scene_prompt(
            text_content=item.text_content,
            product_image_url=item.product_image_url,
            image_style=settings.image_style,
            order=order,
            preset_id=settings.style_preset,
            batch_name=batch.name,
            batch_description=batch.description,
        )

    async def refine_prompt(self, prompt: str, batch: BatchJob, is_category: bool) -> str:
        """Model rewrite of a built scene prompt; the original comes back on any failure."""
        request = REFINE_PROMPT.format(
            requirements="\n".join(f"- {r}" for r in refinement_requirements(is_category)),
            prompt=prompt,
            description=(batch.description or "").strip() or "none",
        )
        try:
            text = await self._gemini.generate_text(
                self._text_model, [{"text": request}], {"temperature": 0.8}
            )
        except (httpx.HTTPError, RuntimeError, KeyError) as e:
            logger.warning(f"Prompt refinement failed, keeping built prompt: {e}")
            metrics.inc_counter("prompts.refine_fallback")
            return prompt
        refined = clean_model_prompt(text, MAX_PROMPT_CHARS)
        return refined or prompt

    async def generate_image(
        self,
        prompt: str,
        aspect_ratio: str,
        reference_image: Optional[bytes] = None,
    ) -> tuple[bytes, str]:
        """Call Gemini and return (image bytes, mime type)."""
        parts = []
        if reference_image:
            parts.append(_inline_image(reference_image))
            parts.append({"text": "This is the reference product. Reproduce it faithfully."})
        parts.append({"text": f"{SCENE_SYSTEM_PROMPT}\n\nScene Direction: {prompt}"})

        result = await self._gemini.generate_content(self._model, parts, {
            "responseModalities": ["TEXT", "IMAGE"],
            "imageConfig": {"aspectRatio": aspect_ratio},
            "temperature": 0.7,
        })

        candidates = result.get("candidates", [])
        if not candidates:
            feedback = result.get("promptFeedback", {}).get("blockReason", "no candidates")
            raise RuntimeError(f"Gemini returned no image ({feedback})")

        for part in candidates[0].get("content", {}).get("parts", []):
            if "inlineData" in part:
                data = base64.b64decode(part["inlineData"]["data"])
                return data, part["inlineData"].get("mimeType", "image/png")

        raise RuntimeError("Gemini response contained no image data.")

    async def generate(
        self,
        item: VideoItem,
        batch: BatchJob,
        settings: ItemSettings,
        order: int,
        prompt: Optional[str] = None,
    ) -> SceneContent:
        """
        Build the prompt for one scene and persist a still image for it.

        Raises on any failure; the caller records it against this scene only.
        """
        scene_prompt = self.build_prompt(item, batch, settings, order, override=prompt)
        category = is_category_image(item.product_image_url)

        if (
            self._refine_prompts
            and not (prompt and prompt.strip())
            and not is_super_minimalist(settings.image_style, settings.style_preset)
        ):
            scene_prompt = await self.refine_prompt(scene_prompt, batch, category)

        reference = None
        if not category:
            reference = await self.gateway.fetch_bytes(item.product_image_url.strip())

        data, mime_type = await self.generate_image(
            scene_prompt, image_aspect_ratio(settings.formats), reference
        )
        ext = "png" if "png" in mime_type else "jpg"
        ref = await self.gateway.upload_bytes(
            scene_image_key(item.id, order, uuid4().hex[:8], ext), data, mime_type
        )
        logger.info(f"Scene {order} image generated for item {item.id}: {ref.uri}")
        return SceneContent(prompt=scene_prompt, image_ref=ref.uri)


class MotionPromptWriter:
    """
    Motion prompt from a vision read of the finished still.

    Explicit animation templates and super-minimal styles keep their fixed
    motions and never reach the model. A still the model describes as a bare
    product shot gets the super-minimal motions as well.
    """

    def __init__(
        self,
        gateway: AssetStoreGateway,
        api_key: Optional[str] = None,
        model: str = GEMINI_TEXT_MODEL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        enabled: bool = AI_MOTION_PROMPTS,
    ):
        self.gateway = gateway
        self._gemini = GeminiClient(api_key, transport, timeout=60)
        self._model = model
        self._enabled = enabled

    def _rule_based(self, settings: ItemSettings, is_product: bool, minimal: bool = False) -> str:
        return build_motion_prompt(
            "super minimal" if minimal else settings.image_style,
            is_product=is_product,
            preset_id=settings.style_preset,
            template_id=settings.animation_template,
        )

    async def write(self, image_ref: str, text_content: str, settings: ItemSettings, is_product: bool) -> str:
        if (
            not self._enabled
            or not self._gemini.configured
            or settings.animation_template
            or is_super_minimalist(settings.image_style, settings.style_preset)
        ):
            return self._rule_based(settings, is_product)

        try:
            image = await self.gateway.fetch_bytes(image_ref)
            request = MOTION_PROMPT.format(
                text=text_content,
                style=settings.image_style,
                guidelines=motion_style_guidelines(settings.image_style),
                rules="\n".join(f"- {rule}" for rule in MOTION_RULES),
            )
            text = await self._gemini.generate_text(
                self._model,
                [_inline_image(image), {"text": request}],
                {"temperature": 0.8, "responseMimeType": "application/json"},
            )
            reply = _parse_json_response(text)
            if not isinstance(reply, dict):
                raise ValueError(f"Gemini returned {type(reply).__name__}, expected an object")
        except (httpx.HTTPError, ArtifactUnavailableError, RuntimeError, ValueError, KeyError) as e:
            logger.warning(f"Vision motion prompt failed for {image_ref}, using preset motions: {e}")
            metrics.inc_counter("motion_prompts.fallback")
            return self._rule_based(settings, is_product)

        if vision_says_minimal(reply.get("analysis", "")):
            return self._rule_based(settings, is_product, minimal=True)

        motion = clean_model_prompt(str(reply.get("motion_prompt", "")), MAX_MOTION_PROMPT_CHARS)
        if not motion:
            logger.warning(f"Vision motion prompt for {image_ref} was empty, using preset motions")
            metrics.inc_counter("motion_prompts.fallback")
            return self._rule_based(settings, is_product)

        metrics.inc_counter("motion_prompts.vision")
        return motion
