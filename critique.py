from __future__ import annotations

import base64
import io
import json
import logging
import os
import urllib.error
import urllib.request

import numpy as np

from dither_core import to_image

logger = logging.getLogger(__name__)

API_KEY_ENVS = ("GEMINI_API_KEY", "API_KEY")
DISABLE_ENV = "RETROVISION_DISABLE_CRITIQUE"
MODEL_ENV = "RETROVISION_CRITIQUE_MODEL"
DEFAULT_MODEL = "gemini-2.5-flash"
ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
REQUEST_TIMEOUT_SEC = 30.0

EMPTY_TEXT = "No analysis available."
FALLBACK_TEXT = "Could not retrieve analysis from the mainframe. Communication link severed."

PROMPT = (
    "I have converted an image to the style of the {system}. "
    "Please analyze this image content and describe how a user from that era "
    "(e.g., 1980s or early 1990s) might describe this \"game graphic\" or \"digital art\". "
    "Be creative, roleplay a bit as a magazine reviewer from that time. Keep it under 100 words."
)


def critique_enabled() -> bool:
    value = os.environ.get(DISABLE_ENV, "").strip().lower()
    return value not in {"1", "true", "yes", "on"}


def _api_key() -> str | None:
    for name in API_KEY_ENVS:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return None


def _encode_png(pixels: np.ndarray) -> str:
    buffer = io.BytesIO()
    to_image(pixels).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def _extract_text(payload: dict) -> str:
    parts = []
    for candidate in payload.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            text = part.get("text")
            if text:
                parts.append(str(text))
    return "".join(parts).strip()


def describe_image(
    pixels: np.ndarray,
    system_name: str,
    api_key: str | None = None,
    timeout: float = REQUEST_TIMEOUT_SEC,
) -> str:
    """Ask the text service for a period-style review of a converted image.

    Never raises: any failure yields ``FALLBACK_TEXT``.
    """
    try:
        key = api_key or _api_key()
        if not key:
            raise RuntimeError("API key is missing")
        model = os.environ.get(MODEL_ENV, "").strip() or DEFAULT_MODEL
        body = {
            "contents": [
                {
                    "parts": [
                        {"inline_data": {"mime_type": "image/png", "data": _encode_png(pixels)}},
                        {"text": PROMPT.format(system=system_name)},
                    ]
                }
            ]
        }
        request = urllib.request.Request(
            ENDPOINT.format(model=model),
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json", "x-goog-api-key": key},
            method="POST",
        )
        with urllib.request.urlopen(request, timeout=timeout) as response:
            payload = json.loads(response.read().decode("utf-8", errors="ignore"))
        return _extract_text(payload) or EMPTY_TEXT
    except (urllib.error.URLError, OSError, ValueError, RuntimeError) as exc:
        logger.warning("Image analysis failed: %s", exc)
        return FALLBACK_TEXT
    except Exception:
        logger.exception("Image analysis failed unexpectedly")
        return FALLBACK_TEXT
