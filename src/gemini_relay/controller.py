# src/gemini_relay/controller.py

import logging
from typing import AsyncGenerator, List, Optional, Sequence, Set

from .error_handler import (
    AllKeysRateLimited,
    FailureClass,
    RateLimitError,
    RelayError,
    ResolutionError,
    build_terminal_error,
    classify_error,
    mask_credential,
)
from .failure_logger import log_failure
from .key_pool import KeyTier
from .model_catalog import ModelCatalog
from .schemas import ChatMessage, DocumentData, Fragment, FragmentType, ImageData
from .state import ServiceState
from .stream_executor import StreamRequestExecutor

lib_logger = logging.getLogger("gemini_relay")

# Upper bound on distinct models tried for one request, fallbacks included
MAX_MODEL_ATTEMPTS = 3


class ResilientStreamController:
    """
    Streams a generation request through key rotation, tier demotion and
    model fallback, yielding Fragments as it goes.

    Only `content` fragments carry model text. Every key rotation, tier switch
    and fallback is announced with a `system` fragment, and a request that
    cannot be served ends with exactly one `error` fragment whose text joins
    every failure recorded along the way.
    """

    def __init__(
        self,
        state: ServiceState,
        catalog: ModelCatalog,
        executor: StreamRequestExecutor,
        max_model_attempts: int = MAX_MODEL_ATTEMPTS,
    ):
        self.state = state
        self.catalog = catalog
        self.executor = executor
        self.max_model_attempts = max_model_attempts

    @property
    def key_pool(self):
        return self.state.key_pool

    async def stream_generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        history: Optional[Sequence[ChatMessage]] = None,
        images: Optional[Sequence[ImageData]] = None,
        documents: Optional[Sequence[DocumentData]] = None,
    ) -> AsyncGenerator[Fragment, None]:
        requested = model
        tried_models: List[str] = []
        failures: List[str] = []
        failure_classes: List[FailureClass] = []

        while True:
            try:
                resolved = self.catalog.resolve(requested)
            except ResolutionError as e:
                lib_logger.error(f"Model resolution failed: {e}")
                yield Fragment.failure(str(e), e)
                return

            if resolved in tried_models or len(tried_models) >= self.max_model_attempts:
                message = "All available models failed. Errors:\n" + "\n".join(failures)
                lib_logger.error(
                    f"Giving up after models {tried_models}: {len(failures)} failure(s)."
                )
                yield Fragment.failure(
                    message, build_terminal_error(message, failures, failure_classes)
                )
                return

            tried_models.append(resolved)
            if len(tried_models) > 1:
                lib_logger.info(f"Falling back to model {resolved}.")
                yield Fragment.system(f"Retrying the request with fallback model {resolved}...")

            succeeded = False
            attempts = self._try_keys(
                resolved, prompt, history, images, documents, failures, failure_classes
            )
            try:
                async for fragment in attempts:
                    if fragment is None:
                        succeeded = True
                        break
                    yield fragment
            finally:
                await attempts.aclose()
            if succeeded:
                return

            fallback = self.catalog.fallback_of(requested)
            if not fallback:
                message = "\n".join(failures) + "\nNo fallback model is available."
                lib_logger.error(
                    f"All keys failed for model {resolved} and no fallback is configured."
                )
                yield Fragment.failure(
                    message, build_terminal_error(message, failures, failure_classes)
                )
                return
            requested = fallback

    async def _try_keys(
        self,
        model: str,
        prompt: str,
        history: Optional[Sequence[ChatMessage]],
        images: Optional[Sequence[ImageData]],
        documents: Optional[Sequence[DocumentData]],
        failures: List[str],
        failure_classes: List[FailureClass],
    ) -> AsyncGenerator[Optional[Fragment], None]:
        """
        Tries `model` against every key of the active tier, demoting once from
        premium to regular. Yields the fragments to forward, then a final
        None if a key completed the stream.
        """
        pool = self.key_pool
        tier = pool.tier
        tried: Set[str] = set()
        credential = pool.current()
        attempt = 0

        while True:
            attempt += 1
            tried.add(credential)
            error: Optional[Exception] = None

            if not self.state.circuit_breaker.admit():
                error = RateLimitError(
                    "Circuit breaker is open: too many requests, please try again later"
                )
                lib_logger.warning(
                    f"Circuit breaker refused attempt {attempt} for model {model}."
                )
            else:
                deltas = self.executor.stream(
                    model, credential, prompt, history, images, documents
                )
                try:
                    async for text in deltas:
                        yield Fragment.content_of(text)
                except RelayError as e:
                    error = e
                except Exception as e:
                    lib_logger.exception(
                        f"Unexpected error streaming model {model} with key "
                        f"{mask_credential(credential)}"
                    )
                    error = e
                finally:
                    await deltas.aclose()

                if error is None:
                    yield None
                    return
                log_failure(credential, model, attempt, error, tier=tier.value)

            failures.append(getattr(error, "message", None) or str(error))
            failure_classes.append(classify_error(error))

            if pool.tier is not tier:
                # Another request demoted the shared pool during this attempt
                tier = pool.tier
                tried.clear()
                credential = pool.current()
                yield Fragment.system(
                    "All premium API keys failed. Retrying the request with regular keys..."
                )
                continue

            next_credential = pool.next_untried(tried)
            if next_credential is not None:
                credential = next_credential
                yield Fragment.system(
                    f"Retrying the request with the next API key ({pool.describe_current()})..."
                )
                continue

            # A concurrent demotion between the tier check and here still
            # leaves every regular key untried by this request
            if tier is KeyTier.PREMIUM and (pool.demote() or pool.tier is KeyTier.REGULAR):
                tier = KeyTier.REGULAR
                tried.clear()
                credential = pool.current()
                yield Fragment.system(
                    "All premium API keys failed. Retrying the request with regular keys..."
                )
                continue

            failures.append(f"All API keys exhausted for model {model}")
            return

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        history: Optional[Sequence[ChatMessage]] = None,
        images: Optional[Sequence[ImageData]] = None,
        documents: Optional[Sequence[DocumentData]] = None,
    ) -> str:
        """
        Non-streaming convenience wrapper: returns the whole reply text.

        Raises:
            ResolutionError, AllKeysRateLimited, AllKeysModelError or
            ModelsExhaustedError when the request cannot be served.
        """
        parts: List[str] = []
        async for fragment in self.stream_generate(
            prompt, model, history, images, documents
        ):
            if fragment.type is FragmentType.CONTENT:
                parts.append(fragment.content)
            elif fragment.is_error:
                if fragment.error is not None:
                    raise fragment.error
                raise RelayError(fragment.content)
        return "".join(parts)

    async def upload_document(
        self,
        data: bytes,
        file_name: str,
        mime_type: str,
        display_name: Optional[str] = None,
    ) -> str:
        """
        Uploads a document for use as `DocumentData`, rotating keys on 429.

        Raises:
            AllKeysRateLimited: Every key of the active tier is rate limited
            DocumentUploadError: The upload failed for another reason
        """
        pool = self.key_pool
        tried: Set[str] = set()
        failures: List[str] = []
        credential: Optional[str] = pool.current()

        while credential is not None:
            tried.add(credential)
            if not self.state.circuit_breaker.admit():
                failures.append("Circuit breaker is open")
            else:
                try:
                    return await self.executor.upload_document(
                        credential, data, file_name, mime_type, display_name
                    )
                except RateLimitError as e:
                    log_failure(credential, "file-upload", len(tried), e, tier=pool.tier.value)
                    failures.append(e.message)
            credential = pool.next_untried(tried)

        raise AllKeysRateLimited(
            f"All API keys are rate limited; could not upload '{file_name}'", failures
        )
