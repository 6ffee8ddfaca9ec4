import base64
from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com",
        vision_model: Optional[str] = None,
        transcribe_model: str = "gpt-4o-mini-transcribe",
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.vision_model = vision_model or default_model
        self.transcribe_model = transcribe_model
        self.timeout_seconds = timeout_seconds
        root = (base_url or "https://api.openai.com").rstrip("/")
        self.base_url = f"{root}/v1/chat/completions"
        self.audio_url = f"{root}/v1/audio/transcriptions"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        max_tokens: int = 1000,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate response from OpenAI."""
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY is not configured")

        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "max_completion_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}, json_mode={json_mode}")

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(self.base_url, headers=self._headers(), json=payload)

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:2048]}")
            raise Exception(f"OpenAI API error: {response.status_code} - {response.text[:2048]}")

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise Exception("OpenAI API error: empty choices")

        content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    def describe_image(
        self,
        *,
        image_bytes: bytes,
        mime_type: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 300,
        json_mode: bool = False,
    ) -> str:
        """Send an image as a data URL and return the model text."""
        if not image_bytes:
            raise ValueError("image_bytes is empty")

        encoded = base64.b64encode(image_bytes).decode("ascii")
        data_url = f"data:{mime_type or 'image/jpeg'};base64,{encoded}"
        messages = [
            {"role": "system", "content": system_prompt},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": user_prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            },
        ]
        response = self.generate(messages, model=self.vision_model, max_tokens=max_tokens, json_mode=json_mode)
        return (response.content or "").strip()

    def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        """Transcribe audio using OpenAI speech-to-text."""
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename or "audio", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": self.transcribe_model, "response_format": "text"}
        if language:
            data["language"] = language

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(
                self.audio_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files=files,
                data=data,
            )

        logger.debug(f"OpenAI transcription status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI transcription error: {response.text[:2048]}")
            raise Exception(f"OpenAI transcription error: {response.status_code} - {response.text[:2048]}")

        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript


def strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` wrapper some models add in JSON mode."""
    text = (text or "").strip()
    if not text.startswith("```"):
        return text
    text = text[3:].strip()
    if text.lower().startswith("json"):
        text = text[4:].strip()
    end = text.rfind("```")
    if end >= 0:
        text = text[:end].strip()
    return text
