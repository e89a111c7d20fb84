"""
Model client - sends one prompt string to Gemini and returns the text.
"""

import logging

import httpx

from .errors import ModelServiceError

logger = logging.getLogger("ModelClient")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"
API_VERSION = "v1beta"

SAFETY_OFF = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
]


class GeminiClient:
    def __init__(
        self,
        api_key,
        model="gemini-2.5-flash-lite",
        timeout=60.0,
        temperature=0.1,
        max_output_tokens=8192,
        base_url=GEMINI_BASE_URL,
        http_client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.Client(timeout=timeout)

    def generate(self, prompt, images=None):
        if not self.api_key:
            raise ModelServiceError("No model API key configured")

        parts = [{"text": prompt}]
        for img in images or []:
            parts.append({"inlineData": {"mimeType": img["mimeType"], "data": img["data"]}})

        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
                "stopSequences": ["User:", "System:"],
            },
            "safetySettings": SAFETY_OFF,
        }
        url = f"{self.base_url}/{API_VERSION}/models/{self.model}:generateContent"

        try:
            resp = self._http.post(url, params={"key": self.api_key}, json=payload)
        except httpx.HTTPError as e:
            raise ModelServiceError(f"Model request failed: {e}")

        if resp.status_code != 200:
            raise ModelServiceError(f"Model returned {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise ModelServiceError("Model response had no text candidate")
