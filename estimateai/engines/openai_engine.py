"""
OpenAI model client.
Documents go through the Files API; prompts run as streamed Responses
and the final message text is parsed for structured JSON.
"""

import asyncio
from pathlib import Path
from typing import Callable, Optional

import structlog
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    UnprocessableEntityError,
)

from estimateai.config import settings
from estimateai.engines.base import (
    ArtifactRef,
    ErrorClass,
    ExtractionKind,
    ModelClient,
    ModelClientError,
    ModelOutput,
    classify_error,
    result_key,
)
from estimateai.pipeline.output_parser import parse_items

logger = structlog.get_logger(__name__)

_RETRYABLE_TYPES = (APITimeoutError, APIConnectionError, RateLimitError, InternalServerError)
_FATAL_TYPES = (
    AuthenticationError,
    BadRequestError,
    PermissionDeniedError,
    NotFoundError,
    UnprocessableEntityError,
)
_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504, 529}

SYSTEM_INSTRUCTIONS = (
    "You are a quantity surveying assistant. "
    "Reply with a single JSON document and nothing else."
)


def _default_client_factory() -> AsyncOpenAI:
    # Retries and timeouts are owned by the orchestrator's retry helper.
    return AsyncOpenAI(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        max_retries=0,
        timeout=settings.MODEL_CALL_TIMEOUT_SECONDS,
    )


class OpenAIEngine(ModelClient):
    """ModelClient backed by the OpenAI Files and Responses APIs."""

    def __init__(
        self,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        client_factory: Optional[Callable[[], AsyncOpenAI]] = None,
    ):
        self.model = model or settings.OPENAI_MODEL
        self.max_output_tokens = max_output_tokens or settings.MODEL_MAX_OUTPUT_TOKENS
        self._client_factory = client_factory or _default_client_factory
        self._client = self._client_factory()
        self._reset_lock = asyncio.Lock()

    @property
    def engine_name(self) -> str:
        return "openai"

    @property
    def client(self) -> AsyncOpenAI:
        return self._client

    async def reset(self, stale: AsyncOpenAI) -> None:
        """Swap in a fresh SDK client unless another task already did."""
        async with self._reset_lock:
            if self._client is not stale:
                return
            self._client = self._client_factory()
            logger.warning("model_client_reset", engine=self.engine_name)

    async def upload(self, path: str, file_name: str, mime_type: Optional[str] = None) -> ArtifactRef:
        client = self._client
        data = await asyncio.to_thread(Path(path).read_bytes)
        try:
            uploaded = await client.files.create(file=(file_name, data), purpose="user_data")
        except APIConnectionError:
            await self.reset(client)
            raise
        logger.info("model_file_uploaded", engine=self.engine_name, file_id=uploaded.id, file_name=file_name)
        return ArtifactRef(
            provider=self.engine_name,
            artifact_id=uploaded.id,
            file_name=file_name,
            mime_type=mime_type,
        )

    def _build_input(self, artifact: Optional[ArtifactRef], prompt: str) -> list[dict]:
        content: list[dict] = []
        if artifact is not None:
            if artifact.mime_type and artifact.mime_type.startswith("image/"):
                content.append({"type": "input_image", "file_id": artifact.artifact_id})
            else:
                content.append({"type": "input_file", "file_id": artifact.artifact_id})
        content.append({"type": "input_text", "text": prompt})
        return [{"role": "user", "content": content}]

    async def extract(
        self,
        artifact: Optional[ArtifactRef],
        prompt: str,
        kind: ExtractionKind,
    ) -> ModelOutput:
        client = self._client
        try:
            async with client.responses.stream(
                model=self.model,
                instructions=SYSTEM_INSTRUCTIONS,
                input=self._build_input(artifact, prompt),
                max_output_tokens=self.max_output_tokens,
            ) as stream:
                async for _event in stream:
                    pass
                final = await stream.get_final_response()
        except APIConnectionError:
            await self.reset(client)
            raise

        raw_text = final.output_text or ""
        if not raw_text.strip():
            raise ModelClientError(self.engine_name, "EMPTY_RESPONSE", "Model returned no text output", retryable=True)

        items = parse_items(raw_text, result_key(kind))
        logger.info(
            "model_extract_complete",
            engine=self.engine_name,
            kind=kind.value,
            items=len(items),
            chars=len(raw_text),
        )
        return ModelOutput(items=items, raw_text=raw_text)

    async def delete(self, artifact: ArtifactRef) -> None:
        try:
            await self._client.files.delete(artifact.artifact_id)
            logger.info("model_file_deleted", engine=self.engine_name, file_id=artifact.artifact_id)
        except Exception as e:
            logger.warning("model_file_delete_failed", file_id=artifact.artifact_id, error=str(e))

    def classify(self, error: BaseException) -> ErrorClass:
        if isinstance(error, _RETRYABLE_TYPES):
            return ErrorClass.RETRYABLE
        if isinstance(error, _FATAL_TYPES):
            return ErrorClass.FATAL
        if isinstance(error, APIStatusError):
            if error.status_code in _RETRYABLE_STATUS:
                return ErrorClass.RETRYABLE
            return ErrorClass.FATAL
        return classify_error(error)

    async def health_check(self) -> bool:
        try:
            await self._client.models.retrieve(self.model)
            return True
        except Exception as e:
            logger.warning("model_health_check_failed", engine=self.engine_name, error=str(e))
            return False
