# storefront/runtime/pipeline.py
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from storefront.runtime.classifier import IntentClassifier
from storefront.runtime.errors import UpstreamUnavailable
from storefront.runtime.models import (
    Classification,
    ConversationContext,
    RankedCandidate,
    ResolvedAction,
    TurnRequest,
    TurnResult,
)
from storefront.runtime.permission_gate import GateDecision, PermissionGate
from storefront.runtime.prompts import build_answer_prompt, build_system_prompt
from storefront.runtime.retrieval import RetrievalEngine
from storefront.runtime.site_config import DictSiteConfigStore, SiteConfigStore
from storefront.runtime.trace import JsonlTraceWriter, TurnTrace
from storefront.runtime.url_resolver import AvailableContent
from storefront.runtime.validator import ResponseValidator

logger = logging.getLogger(__name__)

CompletionFn = Callable[[str, str], str]

EMPTY_UTTERANCE_ANSWER = "Please type a question and I'll be happy to help."
CLASSIFICATION_FALLBACK_ANSWER = (
    "I'm sorry, I didn't quite catch that. Could you rephrase your question?"
)


class AssistantPipeline:
    """
    One chat turn, end to end.

    Pipeline:
        keyword precheck (no completion call)
        -> classify
        -> gate intent and carried-over previous action
        -> retrieve (two lanes)
        -> answer completion
        -> validate
        -> return

    The pipeline never persists; callers append the returned turn.
    """

    def __init__(
        self,
        complete: CompletionFn,
        retrieval: RetrievalEngine,
        classifier: Optional[IntentClassifier] = None,
        site_store: Optional[SiteConfigStore] = None,
        gate: Optional[PermissionGate] = None,
        validator: Optional[ResponseValidator] = None,
        trace_writer: Optional[JsonlTraceWriter] = None,
    ):
        self.complete = complete
        self.retrieval = retrieval
        self.classifier = classifier or IntentClassifier(complete)
        self.site_store = site_store or DictSiteConfigStore()
        self.gate = gate or PermissionGate()
        self.validator = validator or ResponseValidator(gate=self.gate)
        self.trace_writer = trace_writer

    # -------------------------
    # Stages
    # -------------------------
    def _gate_intent(self, classification: Classification, context: ConversationContext, permissions) -> GateDecision:
        decision = self.gate.check(classification.action_intent, permissions, source="intent")
        if not decision.allowed:
            return decision
        previous = context.previous_action
        if previous and classification.context_dependency == "high":
            return self.gate.check(previous, permissions, source="previous_action")
        return decision

    def _finish(self, trace: TurnTrace, result: TurnResult) -> TurnResult:
        trace.add("response_ready", action=result.action.action, url=result.action.url)
        result.timings = trace.timings()
        return result

    # -------------------------
    # Public entrypoint
    # -------------------------
    def handle_turn(self, request: TurnRequest) -> TurnResult:
        utterance = (request.utterance or "").strip()
        context = request.conversation_context or ConversationContext()
        trace = TurnTrace.start(utterance, request.site_id, request.thread_id)
        trace.add("request_received", turns=len(context.turns), previous_action=context.previous_action)

        try:
            if not utterance:
                return self._finish(trace, TurnResult(action=ResolvedAction(answer=EMPTY_UTTERANCE_ANSWER)))

            site = self.site_store.get(request.site_id)
            permissions = site.permissions

            # 1. Keyword precheck: policy overrides and disabled actions, no completion call.
            pre = self.gate.precheck(utterance, permissions)
            if not pre.allowed:
                trace.add("gate_precheck_block", reason=pre.reason)
                return self._finish(trace, TurnResult(action=pre.response))

            # 2. Classify.
            outcome = self.classifier.classify(utterance, context, request.page_snapshot)
            if not outcome.ok:
                trace.add("classify_failed", error=str(outcome.error))
                return self._finish(
                    trace,
                    TurnResult(
                        action=ResolvedAction(answer=CLASSIFICATION_FALLBACK_ANSWER),
                        errors=[f"ClassificationError: {outcome.error}"],
                    ),
                )
            classification = outcome.classification
            trace.add("classify", **classification.to_dict())

            # 3. Gate the fresh intent and any continued action.
            decision = self._gate_intent(classification, context, permissions)
            if not decision.allowed:
                trace.add("gate_block", reason=decision.reason)
                return self._finish(trace, TurnResult(action=decision.response, classification=classification))

            # 4. Retrieve.
            retrieved = self.retrieval.retrieve(utterance, classification, context, request.site_id)
            trace.add(
                "retrieve",
                main=[c.record.id for c in retrieved.main_results],
                qa=[c.record.id for c in retrieved.qa_results],
                errors=retrieved.errors,
            )

            # 5. Answer completion. UpstreamUnavailable propagates.
            system_prompt = build_system_prompt(classification, site)
            user_prompt = build_answer_prompt(
                utterance,
                context,
                retrieved.main_results,
                retrieved.qa_results,
                request.page_snapshot,
            )
            raw = self.complete(system_prompt, user_prompt)
            trace.add("complete", chars=len(raw or ""))

            # 6. Validate.
            available = AvailableContent(
                main_content=retrieved.main_results,
                relevant_qas=retrieved.qa_results,
                page=request.page_snapshot,
            )
            resolved = self.validator.validate(raw, classification, available, permissions, utterance)
            trace.add("validate", action=resolved.action, url=resolved.url)

            return self._finish(
                trace,
                TurnResult(
                    action=resolved,
                    classification=classification,
                    main_results=retrieved.main_results,
                    qa_results=retrieved.qa_results,
                    errors=list(retrieved.errors),
                    page_reference=_page_reference(retrieved.main_results),
                ),
            )
        except UpstreamUnavailable as e:
            trace.add("upstream_unavailable", error=str(e))
            logger.error("[PIPELINE] upstream unavailable: %s", e)
            raise
        finally:
            if self.trace_writer is not None:
                try:
                    self.trace_writer.write(trace)
                except OSError as e:
                    logger.warning("[AUDIT] failed to write trace: %s", e)


def _page_reference(main_results: List[RankedCandidate]) -> Optional[str]:
    for c in main_results:
        if c.record.url:
            return c.record.url
        if c.record.handle and c.record.type == "product":
            return f"/products/{c.record.handle}"
        if c.record.handle and c.record.type == "collection":
            return f"/collections/{c.record.handle}"
    return None
