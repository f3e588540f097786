"""Model selection and endpoint routing.

Everything here is a pure function of configuration and the request, so the
request/response shape is known before any network call is made.
"""

from typing import Optional

from retouch.services.generation.types import ModelFamily, ResolutionTier

DEFAULT_MODEL = "gemini-3-pro-image-preview"

# Models that are only served from the global Vertex endpoint
GLOBAL_ONLY_MODELS = {"gemini-3-pro-image-preview"}

IMAGEN_ASPECT_RATIOS = ("1:1", "3:4", "4:3", "9:16", "16:9")

WIDE_ASPECT_RATIOS = (
    "21:9",
    "16:9",
    "3:2",
    "4:3",
    "5:4",
    "1:1",
    "4:5",
    "3:4",
    "2:3",
    "9:16",
)

NATIVE_TIER = {
    ModelFamily.IMAGEN: ResolutionTier.R1K,
    ModelFamily.GEMINI: ResolutionTier.R2K,
    ModelFamily.REPLICATE: ResolutionTier.R1K,
}


def select_model(override: Optional[str], configured: Optional[str]) -> str:
    """Pick the model: explicit override, then configured default, then fallback."""
    for candidate in (override, configured):
        if candidate and candidate.strip():
            return candidate.strip()
    return DEFAULT_MODEL


def model_family(model: str) -> ModelFamily:
    """Classify a model name into its request/response shape family."""
    if model.startswith("imagegeneration") or "imagen" in model:
        return ModelFamily.IMAGEN
    if "/" in model:
        return ModelFamily.REPLICATE
    return ModelFamily.GEMINI


def supported_aspect_ratios(family: ModelFamily) -> tuple[str, ...]:
    if family is ModelFamily.IMAGEN:
        return IMAGEN_ASPECT_RATIOS
    return WIDE_ASPECT_RATIOS


def needs_upscale(requested: ResolutionTier, family: ModelFamily) -> bool:
    """True when the requested tier is above what the model produces natively."""
    return requested.rank > NATIVE_TIER[family].rank


def upscale_factor(requested: ResolutionTier, family: ModelFamily) -> int:
    """Upscaler scale factor bridging the native tier to the requested one."""
    gap = requested.rank - NATIVE_TIER[family].rank
    return 4 if gap >= 2 else 2


def vertex_location(model: str, family: ModelFamily, configured: str) -> str:
    if model in GLOBAL_ONLY_MODELS:
        return "global"
    if family is ModelFamily.IMAGEN:
        return "us-central1"
    return (configured or "us-central1").strip()


def vertex_endpoint(model: str, project_id: str, configured_location: str) -> str:
    """Build the Vertex AI REST endpoint for a model.

    Examples:
        >>> vertex_endpoint("imagen-3.0-capability-001", "p", "europe-west4")
        'https://us-central1-aiplatform.googleapis.com/v1/projects/p/locations/us-central1/publishers/google/models/imagen-3.0-capability-001:predict'
    """
    family = model_family(model)
    if family is ModelFamily.REPLICATE:
        raise ValueError(f"{model} is not a Vertex AI model")

    location = vertex_location(model, family, configured_location)
    method = "predict" if family is ModelFamily.IMAGEN else "generateContent"
    api_version = "v1" if family is ModelFamily.IMAGEN else "v1beta1"
    hostname = (
        "aiplatform.googleapis.com" if location == "global" else f"{location}-aiplatform.googleapis.com"
    )
    return (
        f"https://{hostname}/{api_version}/projects/{project_id}/locations/{location}"
        f"/publishers/google/models/{model}:{method}"
    )
