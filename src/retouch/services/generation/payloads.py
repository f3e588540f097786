"""Provider payload construction, one builder per model family."""

import base64
from typing import Any, Optional

from retouch.services.generation.imaging import PreparedImage
from retouch.services.generation.types import GenerationRequest, ResolutionTier

# Above this strength the output may depart from the source geometry
HIGH_STRENGTH = 0.7
DEFAULT_STRENGTH = 0.45

NEGATIVE_PROMPT = "extra objects, moving objects, merged plates, different colors, new items, blurry"


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def to_data_uri(image: PreparedImage) -> str:
    return f"data:{image.mime_type};base64,{to_base64(image.data)}"


def build_imagen_payload(
    request: GenerationRequest,
    source: PreparedImage,
    aspect_ratio: str,
) -> dict[str, Any]:
    """Legacy structured-instances payload for Imagen ``:predict``.

    High strength switches the source from a control reference to a looser
    structure reference with a low weight, so geometry can be corrected.
    """
    strength = request.strength
    high = strength is not None and strength > HIGH_STRENGTH

    if high:
        reference_type = "REFERENCE_TYPE_STRUCTURE"
        weight = 0.08
        guidance_scale = 90.0
    else:
        reference_type = "REFERENCE_TYPE_CONTROL"
        weight = max(0.08, 1.0 - (strength if strength else DEFAULT_STRENGTH))
        guidance_scale = strength * 60 if strength else 30.0

    parameters: dict[str, Any] = {
        "sampleCount": 1,
        "negativePrompt": NEGATIVE_PROMPT,
        "referenceImages": [
            {
                "referenceId": 1,
                "referenceType": reference_type,
                "image": {"bytesBase64Encoded": to_base64(source.data)},
            }
        ],
        "referenceConfig": [{"referenceId": 1, "weight": weight}],
        "guidanceScale": guidance_scale,
        "aspectRatio": aspect_ratio,
    }
    if request.seed is not None:
        # Imagen only honours a seed when watermarking is off
        parameters["seed"] = request.seed
        parameters["addWatermark"] = False

    return {
        "instances": [{"prompt": request.prompt.strip()}],
        "parameters": parameters,
    }


def build_gemini_payload(
    request: GenerationRequest,
    source: PreparedImage,
    references: list[PreparedImage],
    aspect_ratio: str,
    tier: ResolutionTier,
) -> dict[str, Any]:
    """Conversational-parts payload for Gemini image models ``:generateContent``."""
    parts: list[dict[str, Any]] = [
        {
            "text": (
                'Based on the "MAIN SCENE" (Image 1) and any "REFERENCE" images, '
                f"fulfill this request: {request.prompt.strip()}"
            )
        },
        {"text": "IMAGE 1 (MAIN SCENE):"},
        {"inlineData": {"mimeType": source.mime_type, "data": to_base64(source.data)}},
    ]
    for index, reference in enumerate(references, start=2):
        parts.append({"text": f"IMAGE {index} (REFERENCE):"})
        parts.append({"inlineData": {"mimeType": reference.mime_type, "data": to_base64(reference.data)}})

    high = request.strength is not None and request.strength > HIGH_STRENGTH
    generation_config: dict[str, Any] = {
        "temperature": 1.0 if high else 0.7,
        "responseModalities": ["TEXT", "IMAGE"],
        "imageConfig": {"aspectRatio": aspect_ratio, "imageSize": tier.value},
    }
    if request.seed is not None:
        generation_config["seed"] = request.seed

    return {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": generation_config,
    }


def build_replicate_input(
    request: GenerationRequest,
    source: PreparedImage,
    references: list[PreparedImage],
    aspect_ratio: str,
    tier: ResolutionTier,
) -> dict[str, Any]:
    """Input document for a Replicate image-editing model."""
    payload: dict[str, Any] = {
        "prompt": request.prompt.strip(),
        "image_input": [to_data_uri(source)] + [to_data_uri(ref) for ref in references],
        "aspect_ratio": aspect_ratio,
        "resolution": tier.value,
        "output_format": "png",
    }
    if request.strength is not None:
        payload["strength"] = request.strength
    if request.seed is not None:
        payload["seed"] = request.seed
    return payload


def build_upscale_input(image_uri: str, scale: int, face_enhance: Optional[bool] = None) -> dict[str, Any]:
    """Input document for the Replicate upscaler."""
    payload: dict[str, Any] = {"image": image_uri, "scale": scale}
    if face_enhance is not None:
        payload["face_enhance"] = face_enhance
    return payload
