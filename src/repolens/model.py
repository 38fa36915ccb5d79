"""Ollama model client - the external inference collaborator.

Sends a prompt to a local or remote Ollama server and returns the parsed
JSON answer. Every failure surfaces as ModelError; callers decide how to
degrade.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from .config import DEFAULT_MODEL, ENRICHMENT_TIMEOUT, OLLAMA_BASE_URL


class ModelError(Exception):
    """Error communicating with the model."""


class OllamaClient:
    """Client for the Ollama REST API."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        base_url: str = OLLAMA_BASE_URL,
        timeout: float = ENRICHMENT_TIMEOUT,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout)

    def is_ollama_running(self) -> bool:
        """Check if Ollama server is reachable."""
        try:
            resp = self._client.get(f"{self.base_url}/api/tags", timeout=5)
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    def is_model_available(self) -> bool:
        """Check if the configured model is downloaded."""
        try:
            resp = self._client.get(f"{self.base_url}/api/tags", timeout=10)
            if resp.status_code != 200:
                return False
            models = [m.get("name", "") for m in resp.json().get("models", [])]
        except (httpx.HTTPError, ValueError):
            return False
        # Exact match, bare name, or implicit :latest
        return any(
            self.model == m
            or self.model == m.split(":")[0]
            or f"{self.model}:latest" == m
            for m in models
        )

    def generate_json(
        self,
        prompt: str,
        system: str = "",
        temperature: float = 0.2,
        max_tokens: int = 1024,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Generate and parse a JSON object response.

        ``timeout`` can only shorten the client timeout, never extend it.
        """
        effective = self.timeout if timeout is None else min(timeout, self.timeout)
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        }
        if system:
            payload["system"] = system

        try:
            resp = self._client.post(
                f"{self.base_url}/api/generate",
                json=payload,
                timeout=effective,
            )
        except httpx.TimeoutException:
            raise ModelError(f"Model generation timed out after {effective}s")
        except httpx.HTTPError as e:
            raise ModelError(f"Cannot reach Ollama at {self.base_url}: {e}")

        if resp.status_code != 200:
            raise ModelError(f"Ollama returned {resp.status_code}: {resp.text[:200]}")

        text = ""
        try:
            text = resp.json().get("response", "")
            data = json.loads(text)
        except (json.JSONDecodeError, ValueError, AttributeError):
            raise ModelError(f"Model returned invalid JSON: {text[:200]}")
        if not isinstance(data, dict):
            raise ModelError(f"Model returned {type(data).__name__}, expected an object")
        return data

    def close(self) -> None:
        self._client.close()
