"""Response parsing, one parser per model family.

The family is decided from the model name before the call, so each parser
only understands its own shape. Parsers return a GenerationSuccess or raise
a PermanentError subclass describing why no image came back.
"""

import base64
import binascii
from typing import Any

from retouch.services.exceptions import ContentPolicyError, PermanentError
from retouch.services.generation.types import GenerationSuccess

# Safety ratings at these levels never explain a block
BENIGN_PROBABILITIES = {"NEGLIGIBLE", "LOW"}


def parse_imagen_response(payload: dict[str, Any]) -> GenerationSuccess:
    """Extract the first prediction from an Imagen ``:predict`` response."""
    predictions = payload.get("predictions") or []
    for prediction in predictions:
        encoded = (prediction or {}).get("bytesBase64Encoded")
        if encoded:
            return GenerationSuccess(
                image_bytes=_decode(encoded),
                mime_type=prediction.get("mimeType") or "image/png",
                raw=payload,
            )

    filtered = [p.get("raiFilteredReason") for p in predictions if p and p.get("raiFilteredReason")]
    if filtered:
        raise ContentPolicyError(f"Generation blocked: {filtered[0]}", raw=payload)
    raise PermanentError("No image data in response", raw=payload)


def parse_gemini_response(payload: dict[str, Any]) -> GenerationSuccess:
    """Extract the first inline image part from a ``:generateContent`` response."""
    candidates = payload.get("candidates") or []
    candidate = candidates[0] if candidates else {}

    for part in (candidate.get("content") or {}).get("parts") or []:
        inline = (part or {}).get("inlineData")
        if inline and inline.get("data"):
            return GenerationSuccess(
                image_bytes=_decode(inline["data"]),
                mime_type=inline.get("mimeType") or "image/png",
                raw=payload,
            )

    raise _blocked_error(payload, candidate)


def parse_replicate_output(output: Any) -> GenerationSuccess:
    """Extract the first result URL from Replicate output (a URL or a list of them)."""
    items = output if isinstance(output, (list, tuple)) else [output]
    for item in items:
        if item is None:
            continue
        url = str(getattr(item, "url", None) or item)
        if url.startswith("http"):
            return GenerationSuccess(image_url=url, mime_type=_mime_from_url(url), raw=_jsonable(output))
    raise PermanentError(f"Unexpected output format from Replicate: {type(output).__name__}", raw=_jsonable(output))


def _blocked_error(payload: dict[str, Any], candidate: dict[str, Any]) -> PermanentError:
    """Build a descriptive error for a finished generation without an image."""
    feedback = payload.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        message = f"Prompt blocked: {feedback['blockReason']}"
        if feedback.get("blockReasonMessage"):
            message += f" - {feedback['blockReasonMessage']}"
        return ContentPolicyError(message, raw=payload)

    finish_reason = candidate.get("finishReason")
    if finish_reason:
        message = f"Generation stop: {finish_reason}"
        for rating in candidate.get("safetyRatings") or []:
            if rating.get("blocked") or rating.get("probability") not in BENIGN_PROBABILITIES:
                message += f" ({rating.get('category')})"
                break
        if candidate.get("finishMessage"):
            message += f": {candidate['finishMessage']}"
        if finish_reason == "STOP":
            return PermanentError(message + " without image output", raw=payload)
        return ContentPolicyError(message, raw=payload)

    return PermanentError("No image data in response", raw=payload)


def _decode(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PermanentError(f"Invalid base64 image data: {e}") from e


def _mime_from_url(url: str) -> str:
    path = url.split("?", 1)[0].lower()
    if path.endswith((".jpg", ".jpeg")):
        return "image/jpeg"
    if path.endswith(".webp"):
        return "image/webp"
    return "image/png"


def _jsonable(output: Any) -> Any:
    if isinstance(output, (list, tuple)):
        return [str(item) for item in output]
    return str(output)
