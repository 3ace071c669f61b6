from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError

from zkom_node.errors import ComputeBackendError, MissingParameter
from zkom_node.logger import get_logger
from zkom_node.models import ImageResponse, Txt2ImgRequest
from zkom_node.retry import RetryDecision, RetryExecutor


TXT2IMG_ENDPOINT = "/sdapi/v1/txt2img"
TRANSIENT_ERROR_MARKERS = (
    "'NoneType' object",
    "CUDA out of memory",
    "expected scalar type",
)


def _non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _integer(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def build_request(params: Any) -> Txt2ImgRequest:
    if not isinstance(params, dict) or "prompt" not in params:
        raise MissingParameter("prompt", "Missing required parameter: prompt")
    prompt = params["prompt"]
    if not isinstance(prompt, str):
        raise MissingParameter("prompt", "Prompt must be a string")

    request = Txt2ImgRequest(prompt=prompt)
    negative_prompt = params.get("negative_prompt")
    if isinstance(negative_prompt, str):
        request.negative_prompt = negative_prompt
    for name in ("width", "height", "steps"):
        value = _non_negative_int(params.get(name))
        if value is not None:
            setattr(request, name, value)
    cfg_scale = _number(params.get("cfg_scale"))
    if cfg_scale is not None:
        request.cfg_scale = cfg_scale
    seed = _integer(params.get("seed"))
    if seed is not None:
        request.seed = seed
    return request


def to_data_url(image_b64: str) -> str:
    return f"data:image/png;base64,{image_b64}"


def classify_backend_error(exc: BaseException) -> RetryDecision:
    if isinstance(exc, ComputeBackendError) and exc.retryable:
        return RetryDecision.RETRYABLE
    if isinstance(exc, httpx.RequestError):
        return RetryDecision.RETRYABLE
    return RetryDecision.FATAL


class StableDiffusionClient:
    def __init__(
        self,
        base_url: str,
        timeout_sec: float = 120,
        max_attempts: int = 5,
        initial_delay: float = 1.0,
        logger: logging.Logger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._logger = logger or get_logger("compute_backend")
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout_sec,
            transport=transport,
        )
        self.last_attempts = 0

    async def close(self) -> None:
        await self._client.aclose()

    async def _post_txt2img(self, body: dict[str, Any]) -> ImageResponse:
        response = await self._client.post(TXT2IMG_ENDPOINT, json=body)
        if not response.is_success:
            text = response.text
            retryable = response.is_server_error or any(marker in text for marker in TRANSIENT_ERROR_MARKERS)
            self._logger.error(
                "sd_api_error",
                extra={"status": response.status_code, "detail": text[:500], "retryable": retryable},
            )
            raise ComputeBackendError(
                f"Stable Diffusion API request failed: HTTP {response.status_code}: {text}",
                status_code=response.status_code,
                retryable=retryable,
            )

        try:
            result = ImageResponse.model_validate_json(response.content)
        except ValidationError as exc:
            preview = response.text[:200]
            self._logger.error("sd_api_response_invalid", extra={"error": str(exc), "preview": preview})
            raise ComputeBackendError(f"Failed to parse response: {exc}", retryable=True) from exc

        if not result.images:
            raise ComputeBackendError("Stable Diffusion API returned empty images array", retryable=True)
        return result

    async def text_to_image(self, request: Txt2ImgRequest) -> ImageResponse:
        body = request.model_dump(mode="json")
        self._logger.debug("sd_api_request", extra={"params": body})
        executor = RetryExecutor(
            max_attempts=self._max_attempts,
            initial_delay=self._initial_delay,
            classify=classify_backend_error,
            sleep=self._sleep,
            logger=self._logger,
            name="sd_txt2img",
        )
        try:
            result = await executor.run(lambda: self._post_txt2img(body))
        finally:
            self.last_attempts = executor.attempts
        self._logger.debug("sd_api_images_received", extra={"count": len(result.images)})
        return result

    async def generate(self, params: Any) -> list[str]:
        request = build_request(params)
        result = await self.text_to_image(request)
        return [to_data_url(image) for image in result.images]
