from __future__ import annotations

import json
import socket
from urllib import error, request

from xiaoguang_lite.domain.errors import (
    PermanentServiceError,
    TransientServiceError,
    classify_http_status,
)


class OpenAIEmbeddingProvider:
    """OpenAI-compatible ``/embeddings`` client (SiliconFlow, OpenAI, vLLM...)."""

    name = "openai"

    def __init__(
        self, base_url: str, api_key: str, model: str, *, timeout: float = 45.0
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.model = model
        self.timeout = float(timeout)

    def embed(self, text: str) -> list[float]:
        base_url = self.base_url.strip()
        api_key = self.api_key.strip()
        model = self.model.strip()
        if not base_url:
            raise ValueError("embedding base_url is required")
        if not api_key:
            raise ValueError("embedding api_key is required")
        if not model:
            raise ValueError("embedding model is required")
        payload = {
            "model": model,
            "input": text,
            "encoding_format": "float",
        }
        req = request.Request(
            url=self._build_embeddings_url(base_url),
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            kind = classify_http_status(exc.code)
            raise kind(
                f"HTTP {exc.code}: {detail[:260]}", service="embedding", status=exc.code
            ) from exc
        except (error.URLError, socket.timeout, ConnectionError, TimeoutError) as exc:
            raise TransientServiceError(
                f"request failed: {exc}", service="embedding"
            ) from exc
        return self._parse(raw)

    @staticmethod
    def _parse(raw: str) -> list[float]:
        try:
            body = json.loads(raw)
            vec = body.get("data", [{}])[0].get("embedding")
        except (ValueError, AttributeError, IndexError, TypeError) as exc:
            raise PermanentServiceError(
                f"invalid response: {raw[:260]}", service="embedding"
            ) from exc
        if not isinstance(vec, list) or not vec:
            raise PermanentServiceError("missing embedding in response", service="embedding")
        try:
            return [float(item) for item in vec]
        except (TypeError, ValueError) as exc:
            raise PermanentServiceError(
                "non-numeric embedding values", service="embedding"
            ) from exc

    def _build_embeddings_url(self, base_url: str) -> str:
        base = base_url.strip().rstrip("/")
        if base.endswith("/embeddings"):
            return base
        return f"{base}/embeddings"
