"""Uniform generation interface over Vertex AI (Imagen, Gemini) and Replicate.

``GenerationProvider.generate`` never raises for provider errors, timeouts or
policy blocks; those come back as ``GenerationFailure``. Missing credentials
raise ``ConfigurationError`` before any network call.
"""

import asyncio
import base64
import time
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from retouch.services.exceptions import (
    ConfigurationError,
    InvalidRequestError,
    ServiceError,
    TransientError,
)
from retouch.services.generation.imaging import (
    PreparedImage,
    prepare_image,
    resolve_aspect_ratio,
    snap_aspect_ratio,
)
from retouch.services.generation.payloads import (
    build_gemini_payload,
    build_imagen_payload,
    build_replicate_input,
    build_upscale_input,
)
from retouch.services.generation.replicate_client import ReplicateClient
from retouch.services.generation.responses import (
    parse_gemini_response,
    parse_imagen_response,
    parse_replicate_output,
)
from retouch.services.generation.retry import (
    ResumeHook,
    RetryHook,
    RetryHooks,
    RetryPolicy,
    call_with_retry,
    classify_message,
)
from retouch.services.generation.routing import (
    NATIVE_TIER,
    model_family,
    needs_upscale,
    select_model,
    supported_aspect_ratios,
    upscale_factor,
    vertex_endpoint,
)
from retouch.services.generation.types import (
    GenerationFailure,
    GenerationRequest,
    GenerationResult,
    GenerationSuccess,
    ModelFamily,
    ResolutionTier,
)
from retouch.services.generation.vertex_client import VertexClient

logger = structlog.get_logger(__name__)


class GenerationProvider:
    """Model selection, preprocessing, retries, parsing and optional upscaling."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        vertex_client: Optional[VertexClient] = None,
        replicate_client: Optional[ReplicateClient] = None,
        project_id: str = "",
        location: str = "us-central1",
        configured_model: str = "",
        default_resolution: str = "2K",
        upscale_model: str = "nightmareai/real-esrgan",
        max_dimension: int = 768,
        max_reference_images: int = 3,
        fetch_timeout: float = 60.0,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.http_client = http_client
        self.vertex_client = vertex_client
        self.replicate_client = replicate_client
        self.project_id = project_id
        self.location = location
        self.configured_model = configured_model
        self.default_resolution = ResolutionTier.parse(default_resolution, ResolutionTier.R2K)
        self.upscale_model = upscale_model
        self.max_dimension = max_dimension
        self.max_reference_images = max_reference_images
        self.fetch_timeout = fetch_timeout
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.sleep = sleep

    def check_configuration(self, family: ModelFamily) -> None:
        """Raise ConfigurationError when the family's credentials are missing."""
        if family is ModelFamily.REPLICATE:
            if self.replicate_client is None or not self.replicate_client.configured:
                raise ConfigurationError("REPLICATE_API_TOKEN not configured")
            return
        if self.vertex_client is None:
            raise ConfigurationError("Vertex AI credentials not configured")
        if not self.project_id:
            raise ConfigurationError("VERTEX_PROJECT_ID not configured")

    async def generate(
        self,
        request: GenerationRequest,
        on_retry: Optional[RetryHook] = None,
        on_resume: Optional[ResumeHook] = None,
    ) -> GenerationResult:
        """Run one generation end to end.

        Args:
            request: Normalized generation arguments
            on_retry: Awaited before each backoff sleep with (retry_number, delay, error)
            on_resume: Awaited with the retry_number when the retried attempt starts

        Returns:
            GenerationSuccess (inline bytes or URL) or GenerationFailure

        Raises:
            ConfigurationError: Credentials or project id missing
        """
        model = select_model(request.model, self.configured_model)
        family = model_family(model)
        self.check_configuration(family)

        started_at = self.clock()
        hooks = RetryHooks(on_retry=on_retry, on_resume=on_resume)
        log = logger.bind(model=model, family=family.value)

        try:
            source_bytes = await self._with_retry(
                lambda timeout: self._fetch(request.image_url, timeout, "Failed to fetch input image"),
                started_at,
                "generation.fetch_input",
                hooks,
            )
            source = await asyncio.to_thread(prepare_image, source_bytes, self.max_dimension)

            references: list[PreparedImage] = []
            if family is ModelFamily.GEMINI and request.reference_image_urls:
                references = await self._load_references(request.reference_image_urls)

            aspect_ratio = snap_aspect_ratio(
                resolve_aspect_ratio(request.aspect_ratio, source.source_width, source.source_height),
                supported_aspect_ratios(family),
            )
            requested_tier = ResolutionTier.parse(request.resolution, self.default_resolution)
            native_tier = NATIVE_TIER[family]
            output_tier = native_tier if requested_tier.rank > native_tier.rank else requested_tier

            log.info(
                "generation.started",
                aspect_ratio=aspect_ratio,
                requested_tier=requested_tier.value,
                references=len(references),
                source_width=source.source_width,
                source_height=source.source_height,
            )

            result = await self._call_model(
                model, family, request, source, references, aspect_ratio, output_tier, started_at, hooks
            )
            result.model = model

            if needs_upscale(requested_tier, family):
                result = await self._upscale(result, requested_tier, family, started_at, hooks)

            log.info(
                "generation.succeeded",
                upscaled=result.upscaled,
                duration_seconds=round(self.clock() - started_at, 2),
            )
            return result

        except ConfigurationError:
            raise
        except ServiceError as e:
            log.warning(
                "generation.failed",
                error_type=type(e).__name__,
                error_message=str(e),
                duration_seconds=round(self.clock() - started_at, 2),
            )
            return GenerationFailure(error=str(e), raw=e.raw, retryable=isinstance(e, TransientError))
        except ValueError as e:
            # Unparseable aspect ratio from the caller
            log.warning("generation.invalid_request", error_message=str(e))
            return GenerationFailure(error=str(e))

    async def _with_retry(self, operation, started_at: float, label: str, hooks: RetryHooks):
        return await call_with_retry(
            operation,
            self.policy,
            started_at,
            label=label,
            clock=self.clock,
            sleep=self.sleep,
            on_retry=hooks.on_retry,
            on_resume=hooks.on_resume,
        )

    async def _fetch(self, url: str, timeout: float, error_prefix: str) -> bytes:
        if not url:
            raise InvalidRequestError(f"{error_prefix}: no URL given")
        response = await self.http_client.get(url, timeout=min(timeout, self.fetch_timeout), follow_redirects=True)
        if response.status_code >= 400:
            raise classify_message(
                f"{error_prefix}: {response.status_code} {response.reason_phrase}".rstrip(),
                status_code=response.status_code,
            )
        return response.content

    async def _load_references(self, urls: list[str]) -> list[PreparedImage]:
        references: list[PreparedImage] = []
        for url in urls[: self.max_reference_images]:
            try:
                raw = await self._fetch(url, self.fetch_timeout, "Failed to fetch reference image")
                references.append(await asyncio.to_thread(prepare_image, raw, self.max_dimension))
            except (ServiceError, httpx.HTTPError) as e:
                logger.warning("generation.reference_skipped", url=url, error_message=str(e))
        return references

    async def _call_model(
        self,
        model: str,
        family: ModelFamily,
        request: GenerationRequest,
        source: PreparedImage,
        references: list[PreparedImage],
        aspect_ratio: str,
        tier: ResolutionTier,
        started_at: float,
        hooks: RetryHooks,
    ) -> GenerationSuccess:
        if family is ModelFamily.REPLICATE:
            payload = build_replicate_input(request, source, references, aspect_ratio, tier)
            output = await self._with_retry(
                lambda timeout: self.replicate_client.run(model, payload, timeout=timeout),
                started_at,
                "generation.replicate",
                hooks,
            )
            return parse_replicate_output(output)

        endpoint = vertex_endpoint(model, self.project_id, self.location)
        if family is ModelFamily.IMAGEN:
            payload = build_imagen_payload(request, source, aspect_ratio)
            parse = parse_imagen_response
        else:
            payload = build_gemini_payload(request, source, references, aspect_ratio, tier)
            parse = parse_gemini_response

        body = await self._with_retry(
            lambda timeout: self.vertex_client.post(endpoint, payload, timeout=timeout),
            started_at,
            "generation.vertex",
            hooks,
        )
        return parse(body)

    async def _upscale(
        self,
        result: GenerationSuccess,
        requested_tier: ResolutionTier,
        family: ModelFamily,
        started_at: float,
        hooks: RetryHooks,
    ) -> GenerationSuccess:
        """Upscale to the requested tier; any failure returns the original result."""
        if self.replicate_client is None or not self.replicate_client.configured:
            logger.warning("generation.upscale_skipped", reason="replicate_not_configured")
            return result

        if result.image_bytes is not None:
            encoded = base64.b64encode(result.image_bytes).decode("ascii")
            image_uri = f"data:{result.mime_type};base64,{encoded}"
        else:
            image_uri = result.image_url

        scale = upscale_factor(requested_tier, family)
        payload = build_upscale_input(image_uri, scale)
        try:
            output = await self._with_retry(
                lambda timeout: self.replicate_client.run(self.upscale_model, payload, timeout=timeout),
                started_at,
                "generation.upscale",
                hooks,
            )
            upscaled = parse_replicate_output(output)
        except ServiceError as e:
            logger.warning(
                "generation.upscale_failed",
                scale=scale,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return result

        upscaled.model = result.model
        upscaled.upscaled = True
        return upscaled
