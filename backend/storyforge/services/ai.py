"""AI collaborators used by the pipeline handlers.

Every call reports token usage and a USD cost; handlers persist both. The
``AIService`` protocol is what handlers depend on, ``OpenAIService`` is the
production implementation.
"""

from __future__ import annotations

import base64
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError

from storyforge.core.config import settings
from storyforge.core.errors import AIServiceError
from storyforge.services.storage import StorageService

logger = logging.getLogger(__name__)

# USD per 1K tokens (input, output)
TEXT_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
}
# USD per 1K characters
TTS_PRICING: dict[str, float] = {
    "tts-1": 0.015,
    "tts-1-hd": 0.03,
}
# USD per generated 1024x1024 image
IMAGE_PRICING: dict[str, float] = {
    "gpt-image-1": 0.042,
    "dall-e-3": 0.04,
}


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return int(self.prompt_tokens) + int(self.completion_tokens)


def calculate_text_cost(model: str, usage: TokenUsage) -> float:
    input_rate, output_rate = TEXT_PRICING.get(model, TEXT_PRICING["gpt-4o"])
    cost = (usage.prompt_tokens / 1000.0) * input_rate + (usage.completion_tokens / 1000.0) * output_rate
    return round(cost, 6)


def calculate_tts_cost(model: str, character_count: int) -> float:
    rate = TTS_PRICING.get(model, TTS_PRICING["tts-1"])
    return round((max(0, int(character_count)) / 1000.0) * rate, 6)


def calculate_image_cost(model: str) -> float:
    return IMAGE_PRICING.get(model, IMAGE_PRICING["gpt-image-1"])


@dataclass(frozen=True)
class ImageAnalysis:
    description: dict[str, Any]
    usage: TokenUsage
    cost_usd: float
    model: str


@dataclass(frozen=True)
class GeneratedImage:
    image_key: str
    cost_usd: float
    model: str
    prompt_used: str
    generation_seconds: float


@dataclass(frozen=True)
class GeneratedAudio:
    filename: str
    audio_key: str
    cost_usd: float
    size_bytes: int
    character_count: int
    voice: str
    model: str


@dataclass(frozen=True)
class GeneratedPost:
    content: str
    usage: TokenUsage
    cost_usd: float
    model: str

    @property
    def metadata(self) -> dict[str, Any]:
        return {"tokens": self.usage.total_tokens, "cost": self.cost_usd, "model": self.model}


@dataclass(frozen=True)
class StoryPage:
    text: list[str]
    image_prompt: str | None = None


@dataclass(frozen=True)
class GeneratedStory:
    title: str
    description: str | None
    pages: list[StoryPage]
    usage: TokenUsage
    cost_usd: float
    model: str


@dataclass(frozen=True)
class ImagePrompt:
    prompt: str
    usage: TokenUsage
    cost_usd: float


@dataclass(frozen=True)
class ExtractedTopic:
    topic: str
    context: str | None
    post_indices: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class TopicExtraction:
    topics: list[ExtractedTopic]
    usage: TokenUsage
    cost_usd: float
    model: str


class AIService(Protocol):
    async def analyze_image(self, image_url: str, context: dict[str, Any]) -> ImageAnalysis: ...

    async def generate_avatar(
        self, continuity: dict[str, Any], actor: dict[str, Any], *, account_id: str
    ) -> GeneratedImage: ...

    async def generate_page_image(
        self, prompt: str, characters: list[dict[str, Any]], *, account_id: str
    ) -> GeneratedImage: ...

    async def generate_image_prompt(self, text: str, style: str) -> ImagePrompt: ...

    async def generate_story(self, prompt: str, actors: list[dict[str, Any]]) -> GeneratedStory: ...

    async def generate_audio(self, text: str, voice: str, *, speed: float, account_id: str) -> GeneratedAudio: ...

    async def generate_post(self, prompt: str, options: dict[str, Any]) -> GeneratedPost: ...

    async def extract_trending_topics(self, topic_name: str, posts: list[str]) -> TopicExtraction: ...


def _usage_from(response: Any) -> TokenUsage:
    usage = getattr(response, "usage", None)
    return TokenUsage(
        prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
    )


def _message_text(response: Any) -> str:
    try:
        return str(response.choices[0].message.content or "").strip()
    except (AttributeError, IndexError) as exc:
        raise AIServiceError("AI response had no message content") from exc


def _parse_json(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AIServiceError(f"AI response was not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise AIServiceError("AI response JSON was not an object")
    return parsed


def _coerce_indices(raw: Any) -> list[int]:
    indices: list[int] = []
    for item in raw if isinstance(raw, list) else []:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            indices.append(item)
        elif isinstance(item, str) and item.strip().lstrip("-").isdigit():
            indices.append(int(item.strip()))
    return indices


def parse_topic_extraction(payload: dict[str, Any]) -> list[ExtractedTopic]:
    topics: list[ExtractedTopic] = []
    for item in payload.get("trending_topics") or []:
        if not isinstance(item, dict):
            continue
        name = str(item.get("topic") or "").strip()
        if not name:
            continue
        context = item.get("context")
        topics.append(
            ExtractedTopic(
                topic=name,
                context=str(context).strip() if context else None,
                post_indices=_coerce_indices(item.get("post_indices")),
            )
        )
    return topics


class OpenAIService:
    def __init__(self, storage: StorageService, *, client: AsyncOpenAI | None = None) -> None:
        self.storage = storage
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.text_model = settings.openai_text_model
        self.vision_model = settings.openai_vision_model
        self.image_model = settings.openai_image_model
        self.tts_model = settings.openai_tts_model

    async def _chat(self, *, model: str, system: str, user: Any, json_mode: bool = False, max_tokens: int = 1500):
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "max_tokens": max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            return await self.client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            raise AIServiceError(f"{model} chat completion failed: {exc}") from exc

    async def analyze_image(self, image_url: str, context: dict[str, Any]) -> ImageAnalysis:
        response = await self._chat(
            model=self.vision_model,
            system=(
                "Describe the character in the photo for an illustrator. Reply with a JSON object with keys "
                "appearance, clothing, distinguishing_features, art_direction."
            ),
            user=[
                {"type": "text", "text": json.dumps({"character": context}, ensure_ascii=False)},
                {"type": "image_url", "image_url": {"url": image_url, "detail": "low"}},
            ],
            json_mode=True,
            max_tokens=800,
        )
        usage = _usage_from(response)
        return ImageAnalysis(
            description=_parse_json(_message_text(response)),
            usage=usage,
            cost_usd=calculate_text_cost(self.vision_model, usage),
            model=self.vision_model,
        )

    async def _generate_image(self, prompt: str, *, key_prefix: str) -> GeneratedImage:
        started = time.monotonic()
        try:
            response = await self.client.images.generate(model=self.image_model, prompt=prompt, size="1024x1024", n=1)
        except OpenAIError as exc:
            raise AIServiceError(f"{self.image_model} image generation failed: {exc}") from exc
        try:
            encoded = response.data[0].b64_json
        except (AttributeError, IndexError, TypeError) as exc:
            raise AIServiceError("Image generation returned no image") from exc
        if not encoded:
            raise AIServiceError("Image generation returned no image")
        key = f"{key_prefix}/{uuid.uuid4().hex}.png"
        await self.storage.put_object(key, base64.b64decode(encoded), content_type="image/png")
        return GeneratedImage(
            image_key=key,
            cost_usd=calculate_image_cost(self.image_model),
            model=self.image_model,
            prompt_used=prompt,
            generation_seconds=round(time.monotonic() - started, 3),
        )

    async def generate_avatar(self, continuity: dict[str, Any], actor: dict[str, Any], *, account_id: str) -> GeneratedImage:
        prompt = (
            f"Storybook avatar portrait of {actor.get('name') or 'the character'}. "
            f"Character notes: {json.dumps(continuity, ensure_ascii=False)}"
        )
        return await self._generate_image(prompt, key_prefix=f"avatars/{account_id}")

    async def generate_page_image(self, prompt: str, characters: list[dict[str, Any]], *, account_id: str) -> GeneratedImage:
        full_prompt = prompt
        if characters:
            full_prompt = f"{prompt}\nKeep these characters consistent: {json.dumps(characters, ensure_ascii=False)}"
        return await self._generate_image(full_prompt, key_prefix=f"pages/{account_id}")

    async def generate_image_prompt(self, text: str, style: str) -> ImagePrompt:
        response = await self._chat(
            model=self.text_model,
            system=f"Write one concise illustration prompt in the style of a {style}.",
            user=text,
            max_tokens=300,
        )
        usage = _usage_from(response)
        return ImagePrompt(
            prompt=_message_text(response),
            usage=usage,
            cost_usd=calculate_text_cost(self.text_model, usage),
        )

    async def generate_story(self, prompt: str, actors: list[dict[str, Any]]) -> GeneratedStory:
        response = await self._chat(
            model=self.text_model,
            system=(
                "Write a short illustrated story. Reply with a JSON object with keys title, description and "
                "pages, where pages is a list of objects with text (list of sentences) and image_prompt."
            ),
            user=json.dumps({"prompt": prompt, "characters": actors}, ensure_ascii=False),
            json_mode=True,
            max_tokens=4000,
        )
        usage = _usage_from(response)
        body = _parse_json(_message_text(response))
        pages: list[StoryPage] = []
        for raw_page in body.get("pages") or []:
            if not isinstance(raw_page, dict):
                continue
            raw_text = raw_page.get("text")
            sentences = [str(s) for s in raw_text] if isinstance(raw_text, list) else [str(raw_text or "")]
            pages.append(StoryPage(text=sentences, image_prompt=raw_page.get("image_prompt") or None))
        if not pages:
            raise AIServiceError("Story generation returned no pages")
        return GeneratedStory(
            title=str(body.get("title") or "Untitled"),
            description=body.get("description"),
            pages=pages,
            usage=usage,
            cost_usd=calculate_text_cost(self.text_model, usage),
            model=self.text_model,
        )

    async def generate_audio(self, text: str, voice: str, *, speed: float, account_id: str) -> GeneratedAudio:
        try:
            response = await self.client.audio.speech.create(model=self.tts_model, voice=voice, input=text, speed=speed)
        except OpenAIError as exc:
            raise AIServiceError(f"{self.tts_model} speech synthesis failed: {exc}") from exc
        data = response.content
        filename = f"{uuid.uuid4().hex}.mp3"
        key = f"audio/{account_id}/{filename}"
        await self.storage.put_object(key, data, content_type="audio/mpeg")
        return GeneratedAudio(
            filename=filename,
            audio_key=key,
            cost_usd=calculate_tts_cost(self.tts_model, len(text)),
            size_bytes=len(data),
            character_count=len(text),
            voice=voice,
            model=self.tts_model,
        )

    async def generate_post(self, prompt: str, options: dict[str, Any]) -> GeneratedPost:
        model = str(options.get("model") or self.text_model)
        response = await self._chat(
            model=model,
            system=str(options.get("system") or "You write social media posts in the author's voice."),
            user=prompt,
            max_tokens=int(options.get("max_tokens") or 400),
        )
        usage = _usage_from(response)
        return GeneratedPost(
            content=_message_text(response),
            usage=usage,
            cost_usd=calculate_text_cost(model, usage),
            model=model,
        )

    async def extract_trending_topics(self, topic_name: str, posts: list[str]) -> TopicExtraction:
        numbered = "\n".join(f"[{idx}] {text}" for idx, text in enumerate(posts))
        response = await self._chat(
            model=self.text_model,
            system=(
                "Identify the trending discussion topics in these posts. Reply with a JSON object "
                '{"trending_topics": [{"topic": str, "context": str, "post_indices": [int]}]}.'
            ),
            user=f"Category: {topic_name}\n\n{numbered}",
            json_mode=True,
            max_tokens=2000,
        )
        usage = _usage_from(response)
        return TopicExtraction(
            topics=parse_topic_extraction(_parse_json(_message_text(response))),
            usage=usage,
            cost_usd=calculate_text_cost(self.text_model, usage),
            model=self.text_model,
        )
