"""Document generation through the provider fallback chain."""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING

from reqagent.models.document import GeneratedDocument
from reqagent.runtime.logging_config import ctx_request_id

if TYPE_CHECKING:
    from reqagent.runtime.context_manager import ContextBudgeter
    from reqagent.runtime.fallback import ProviderFallbackManager
    from reqagent.runtime.metrics import MetricsCollector
    from reqagent.runtime.providers.backends import LLMBackend

log = logging.getLogger(__name__)


class DocumentGenerator:
    def __init__(
        self,
        fallback: ProviderFallbackManager,
        budgeter: ContextBudgeter,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._fallback = fallback
        self._budgeter = budgeter
        self._metrics = metrics

    def build_messages(
        self,
        document_type: str,
        system_prompt: str,
        user_prompt: str,
        related_types: list[str] | None = None,
    ) -> list[dict[str, str]]:
        context = self._budgeter.build_context_for_document(document_type, related_types)
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": f"{user_prompt}\n\n## Project Context\n\n{context}"},
        ]

    async def generate(
        self,
        document_type: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        related_types: list[str] | None = None,
    ) -> GeneratedDocument | None:
        """Generate one document; None when the provider returns no text.

        NoProvidersAvailableError propagates when every provider failed.
        """
        token = ctx_request_id.set(uuid.uuid4().hex)
        try:
            messages = self.build_messages(
                document_type, system_prompt, user_prompt, related_types
            )
            served_by: list[LLMBackend] = []

            async def _call(backend: LLMBackend) -> str:
                text = await backend.complete(messages, max_tokens=max_tokens)
                served_by.append(backend)
                return text

            start = time.monotonic()
            content = await self._fallback.execute_with_fallback(
                _call, f"generate:{document_type}"
            )
            elapsed_ms = (time.monotonic() - start) * 1000

            if not content or not content.strip():
                log.warning(
                    "generator.empty_output document_type=%s provider=%s",
                    document_type,
                    served_by[-1].provider_id if served_by else "unknown",
                )
                return None

            self._budgeter.track_generated_document(document_type, content)
            if self._metrics is not None:
                self._metrics.counter("documents_generated_total").inc()

            provider = served_by[-1].provider_id.value
            doc = GeneratedDocument(
                document_type=document_type,
                content=content,
                provider=provider,
                response_time_ms=round(elapsed_ms, 1),
                estimated_tokens=self._budgeter.estimate_tokens(content),
            )
            log.info(
                "generator.done document_type=%s provider=%s tokens=%d duration_ms=%.1f",
                document_type,
                provider,
                doc.estimated_tokens,
                elapsed_ms,
            )
            return doc
        finally:
            ctx_request_id.reset(token)
