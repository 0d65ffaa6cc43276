from __future__ import annotations

import base64
import json
import logging
import uuid
from collections import deque
from typing import Any

from openai import AsyncOpenAI

_ANALYZE_PROMPT = (
    "You are a home monitoring assistant. Your job is to analyze transcribed speech from audio "
    "captured in a home environment and detect potential emergencies, security concerns, or "
    "requests for help. Always respond with a JSON object containing:\n"
    '1. "alerts": an array of alerts detected (empty if none), each with "phrase" and '
    '"severity" (one of "high", "medium", "low")\n'
    '2. "summary": a brief interpretation of what is happening\n'
    '3. "actionRequired": boolean, true if immediate action might be needed'
)

_QUERY_PROMPT = (
    "You are a helpful assistant for a home monitoring system. You can provide information about "
    "the system, explain alerts, and suggest actions based on events detected in the home."
)

_IMAGE_PROMPT = (
    "You are a home monitoring assistant. Describe what is visible in this camera image and point "
    "out anything that looks like an emergency, a security concern or a person needing help."
)


class AnalysisService:
    """OpenAI-backed text analysis, free-form queries and image descriptions.

    Each device and each observer client gets a conversation key, created on
    first use and kept for the life of the process. The key is passed as the
    request ``user`` and indexes a short history used as context.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str = "gpt-4o",
        client: Any | None = None,
        history_turns: int = 6,
    ) -> None:
        self._client = client if client is not None else AsyncOpenAI(api_key=api_key)
        self._model = model
        self._history_turns = max(0, int(history_turns))
        self._conversations: dict[str, str] = {}
        self._history: dict[str, deque[dict[str, str]]] = {}
        self._logger = logging.getLogger("homepost.analysis")

    @property
    def model(self) -> str:
        return self._model

    def conversation_key(self, owner: str) -> str:
        key = self._conversations.get(owner)
        if key is None:
            key = str(uuid.uuid4())
            self._conversations[owner] = key
            self._logger.debug("New conversation %s for %s", key, owner)
        return key

    def _remember(self, key: str, role: str, content: str) -> None:
        if self._history_turns <= 0:
            return
        hist = self._history.get(key)
        if hist is None:
            hist = deque(maxlen=self._history_turns * 2)
            self._history[key] = hist
        hist.append({"role": role, "content": content})

    def _messages(self, key: str, system: str, user: str) -> list[dict[str, Any]]:
        return [{"role": "system", "content": system}, *self._history.get(key, ()), {"role": "user", "content": user}]

    async def analyze_text(self, text: str, device_id: str) -> dict[str, Any]:
        """Return the raw JSON object produced by the model. Raises on transport or parse errors."""
        key = self.conversation_key(f"device:{device_id}")
        resp = await self._client.chat.completions.create(
            model=self._model,
            messages=self._messages(key, _ANALYZE_PROMPT, text),
            response_format={"type": "json_object"},
            temperature=0.1,
            user=key,
        )
        content = resp.choices[0].message.content or ""
        result = json.loads(content)
        if not isinstance(result, dict):
            raise ValueError("analysis response is not a JSON object")
        self._remember(key, "user", text)
        self._remember(key, "assistant", content)
        return result

    async def respond_to_query(self, query: str, client_id: str = "web-client") -> str:
        key = self.conversation_key(f"client:{client_id}")
        resp = await self._client.chat.completions.create(
            model=self._model,
            messages=self._messages(key, _QUERY_PROMPT, query),
            temperature=0.7,
            user=key,
        )
        answer = (resp.choices[0].message.content or "").strip()
        self._remember(key, "user", query)
        self._remember(key, "assistant", answer)
        return answer

    async def describe_image(self, image: bytes, device_id: str = "camera", *, mime: str = "image/jpeg") -> str:
        key = self.conversation_key(f"device:{device_id}")
        data_url = f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"
        resp = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": _IMAGE_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "What is happening in this image?"},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                },
            ],
            temperature=0.2,
            user=key,
        )
        return (resp.choices[0].message.content or "").strip()
