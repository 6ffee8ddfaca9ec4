"""Turn orchestration: one logical user input in, one answer (or quote PDF) out.

Stages run in a fixed order and several of them short-circuit the turn:
human mode, liveness ping, assortment listing and the quote branch. The
response is fully computed before anything is persisted, and persistence
failures are only logged.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from app.logging_config import LoggerAdapter, get_logger, log_stage
from app.services.answer_service import (
    PING_REPLY,
    QUOTE_AUDIT_MESSAGE,
    append_product_links,
    append_quote_offer,
    build_context,
    generate_answer,
    lookup_assortment,
    summarize_history,
)
from app.services.catalog_service import CatalogService, KnowledgeMatch, ProductMatch, SupabaseError
from app.services.conversation_meta import (
    ConversationMeta,
    HistoryMessage,
    has_quote_offer,
    latest_slots,
    latest_summary,
    merge_meta,
    merge_slots,
    should_update_summary,
)
from app.services.embedding_service import OllamaEmbeddingClient, vector_literal
from app.services.errors import MalformedInputError, UpstreamError
from app.services.escalation_service import ESCALATION_RULE_TYPE, EscalationRule, EscalationService
from app.services.intent_service import (
    decide_product_search,
    detect_assortment_query,
    detect_quote_intent,
    extract_slots,
    is_follow_up_message,
    is_likely_product_query,
    is_ping_message,
)
from app.services.llm import LLMProvider
from app.services.personalization_service import (
    BehaviorProfile,
    PersonalizationService,
    fallback_products,
    rank_products,
)
from app.services.quote_renderer import QuoteRenderer
from app.services.quote_service import QuoteError, assemble_quote
from app.services.retrieval_service import RetrievalError, RetrievalRequest, RetrievalService, clamp_match_count
from app.services.session_store import NewMessage, SessionStore

logger = get_logger("turn_service")

KNOWLEDGE_THRESHOLD = 0.75
KNOWLEDGE_COUNT = 1
ESCALATION_RULE_THRESHOLD = 0.2
QUOTE_FILENAME = "KP.pdf"


class TurnKind(str, Enum):
    JSON = "json"
    PDF = "pdf"
    EMPTY = "empty"


@dataclass
class TurnRequest:
    message: str
    session_id: str = ""
    user_id: Optional[str] = None
    user_meta: dict = field(default_factory=dict)
    match_count: Optional[int] = None
    topic_filter: Optional[str] = None


@dataclass
class TurnResult:
    kind: TurnKind
    answer: str = ""
    products: list[ProductMatch] = field(default_factory=list)
    knowledge: list[KnowledgeMatch] = field(default_factory=list)
    pdf: Optional[bytes] = None
    filename: Optional[str] = None

    @classmethod
    def empty(cls) -> "TurnResult":
        return cls(kind=TurnKind.EMPTY)

    @classmethod
    def text(cls, answer: str, products=None, knowledge=None) -> "TurnResult":
        return cls(kind=TurnKind.JSON, answer=answer, products=products or [], knowledge=knowledge or [])

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "products": [p.to_dict() for p in self.products],
            "knowledge": [k.to_dict() for k in self.knowledge],
        }


class TurnOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        catalog: CatalogService,
        embedder: OllamaEmbeddingClient,
        llm: LLMProvider,
        retrieval: RetrievalService,
        personalization: PersonalizationService,
        escalation: EscalationService,
        quote_renderer: QuoteRenderer,
        product_link_base_url: str,
        history_limit: int = 30,
        summary_every_turns: int = 6,
    ):
        self.store = store
        self.catalog = catalog
        self.embedder = embedder
        self.llm = llm
        self.retrieval = retrieval
        self.personalization = personalization
        self.escalation = escalation
        self.quote_renderer = quote_renderer
        self.product_link_base_url = product_link_base_url
        self.history_limit = history_limit
        self.summary_every_turns = summary_every_turns

    def handle(self, request: TurnRequest) -> TurnResult:
        """Run one turn. Raises MalformedInputError or UpstreamError; everything else degrades."""
        message = (request.message or "").strip()
        request_id = f"chat-{time.time_ns()}"
        session_id = (request.session_id or "").strip()
        user_id = (request.user_id or "").strip()
        log = LoggerAdapter(logger, {"request_id": request_id, "session_id": session_id})

        if not message:
            log.warning("Empty message rejected")
            raise MalformedInputError("message is required")

        match_count = clamp_match_count(request.match_count)
        inbound = ConversationMeta.from_meta(request.user_meta)
        relayed = inbound.from_db_relay
        log.info(
            "Turn started",
            context={"user_id": user_id, "message_len": len(message), "match_count": match_count},
        )

        history: list[HistoryMessage] = []
        if session_id:
            try:
                self.store.ensure_session(session_id, user_id)
            except Exception as e:
                log.error(f"Ensure session failed: {e}")
            else:
                if self._is_human_mode(session_id, log):
                    log.info("Human mode, skipping AI")
                    if not relayed:
                        self._persist(log, [NewMessage(session_id, "user", message, {})])
                    return TurnResult.empty()
                history = self._load_history(session_id, log)

        profile = self._load_profile(session_id, user_id, log)

        if is_ping_message(message):
            self._persist_turn(
                log, session_id, message, merge_meta(None, request.user_meta), PING_REPLY,
                {"slots": extract_slots(message)}, relayed,
            )
            return TurnResult.text(PING_REPLY)

        assortment = detect_assortment_query(message)
        if assortment is not None:
            try:
                with log_stage(log, "assortment"):
                    answer = lookup_assortment(self.catalog, assortment)
            except Exception as e:
                log.error(f"Assortment lookup failed: {e}")
                raise UpstreamError("assortment", "assortment lookup failed") from e
            self._persist_turn(
                log, session_id, message, merge_meta(None, request.user_meta), answer, {}, relayed,
            )
            return TurnResult.text(answer)

        wants_quote = detect_quote_intent(message, history) and not inbound.incoming_quote_pdf
        with log_stage(log, "product_decision"):
            need_products = decide_product_search(self.llm, message)
        if wants_quote or inbound.incoming_quote_pdf:
            need_products = True
        log.info("Intent resolved", context={"need_products": need_products, "quote_intent": wants_quote})

        try:
            with log_stage(log, "embedding"):
                vector = vector_literal(self.embedder.embed(message))
        except Exception as e:
            log.error(f"Embedding failed: {e}")
            raise UpstreamError("embedding", "embedding failed") from e

        products = self._find_products(log, message, vector, match_count, need_products, inbound, history)
        if products:
            products = rank_products(products, profile)
        elif need_products and profile is not None:
            products = fallback_products(profile, match_count)
            if products:
                log.info("Personalization fallback used", context={"count": len(products)})

        offered_before = has_quote_offer(history)
        if wants_quote and products:
            pdf = self._render_quote(log, products)
            if pdf is not None:
                user_meta = {"kp_accept": True} if offered_before else {}
                self._persist_turn(
                    log, session_id, message, user_meta, QUOTE_AUDIT_MESSAGE, {"kp_pdf": True}, relayed,
                )
                return TurnResult(kind=TurnKind.PDF, products=products, pdf=pdf, filename=QUOTE_FILENAME)

        try:
            with log_stage(log, "knowledge"):
                knowledge = self.catalog.match_knowledge(
                    vector, KNOWLEDGE_THRESHOLD, KNOWLEDGE_COUNT, (request.topic_filter or "").strip() or None
                )
        except Exception as e:
            log.error(f"Knowledge search failed: {e}")
            raise UpstreamError("knowledge", "supabase knowledge search failed") from e

        rule = self._load_escalation_rule(log, session_id, vector)

        summary = latest_summary(history)
        slots = merge_slots(latest_slots(history), extract_slots(message))
        context = build_context(history, products, knowledge, summary=summary, slots=slots)
        try:
            with log_stage(log, "generation"):
                answer = generate_answer(self.llm, message, context)
        except Exception as e:
            log.error(f"Answer generation failed: {e}")
            raise UpstreamError("generation", "openai generation failed") from e

        if need_products and products and is_likely_product_query(message):
            answer = append_product_links(answer, products, self.product_link_base_url)

        offer_quote = (
            need_products and bool(products) and not wants_quote and not inbound.incoming_quote_pdf and not offered_before
        )
        if offer_quote:
            answer = append_quote_offer(answer)

        if session_id:
            user_meta = {"kp_accept": True} if wants_quote and offered_before else {}
            user_meta = merge_meta(user_meta, request.user_meta)
            assistant_meta = ConversationMeta(
                kp_offer=offer_quote,
                product_ids=[p.id for p in products],
                slots=slots,
                summary=self._maybe_summarize(log, history, answer),
            )
            if rule is not None:
                assistant_meta.escalation = self.escalation.evaluate(session_id, message, answer, history, rule)
            self._persist_turn(log, session_id, message, user_meta, answer, assistant_meta.to_meta(), relayed)
        else:
            log.info("No session id, skipping persistence")

        log.info("Turn done", context={"products": len(products), "knowledge": len(knowledge)})
        return TurnResult.text(answer, products, knowledge)

    def _is_human_mode(self, session_id: str, log: LoggerAdapter) -> bool:
        try:
            return self.store.is_human_mode(session_id)
        except Exception as e:
            log.error(f"Human mode check failed: {e}")
            return False

    def _load_history(self, session_id: str, log: LoggerAdapter) -> list[HistoryMessage]:
        try:
            with log_stage(log, "history"):
                return self.store.fetch_history(session_id, self.history_limit)
        except Exception as e:
            log.error(f"History load failed: {e}")
            return []

    def _load_profile(self, session_id: str, user_id: str, log: LoggerAdapter) -> Optional[BehaviorProfile]:
        if not user_id:
            return None
        try:
            with log_stage(log, "personalization"):
                return self.personalization.load_profile(session_id, user_id)
        except Exception as e:
            log.warning(f"Personalization failed: {e}")
            return None

    def _find_products(
        self,
        log: LoggerAdapter,
        message: str,
        vector: str,
        match_count: int,
        need_products: bool,
        inbound: ConversationMeta,
        history: list[HistoryMessage],
    ) -> list[ProductMatch]:
        if not need_products:
            return []
        request = RetrievalRequest(
            query_text=message, vector=vector, limit=match_count, articles=inbound.document_articles
        )
        try:
            with log_stage(log, "retrieval"):
                outcome = self.retrieval.retrieve(request)
        except RetrievalError as e:
            log.error(f"Product retrieval failed: {e}")
            raise UpstreamError("retrieval", "supabase products search failed") from e
        if outcome.products:
            log.info(
                "Products found",
                context={"strategy": outcome.strategy, "ids": [p.id for p in outcome.products[:5]]},
            )
            return outcome.products

        if not is_follow_up_message(message):
            return []
        try:
            reused = self.retrieval.reuse_from_history(history)
        except SupabaseError as e:
            log.warning(f"Reusing products from history failed: {e}")
            return []
        if reused:
            log.info("Products reused from history", context={"ids": [p.id for p in reused[:5]]})
        return reused

    def _render_quote(self, log: LoggerAdapter, products: list[ProductMatch]) -> Optional[bytes]:
        try:
            quote = assemble_quote(products)
        except QuoteError as e:
            log.info(f"Quote skipped: {e}")
            return None
        try:
            with log_stage(log, "quote"):
                return self.quote_renderer.render(quote)
        except Exception as e:
            log.error(f"Quote rendering failed: {e}")
            raise UpstreamError("quote", "quote generation failed") from e

    def _load_escalation_rule(self, log: LoggerAdapter, session_id: str, vector: str) -> Optional[EscalationRule]:
        if not session_id:
            return None
        try:
            matches = self.catalog.match_knowledge(vector, ESCALATION_RULE_THRESHOLD, 1, ESCALATION_RULE_TYPE)
        except Exception as e:
            log.warning(f"Escalation rule fetch failed: {e}")
            return None
        return EscalationRule.from_matches(matches)

    def _maybe_summarize(self, log: LoggerAdapter, history: list[HistoryMessage], answer: str) -> Optional[str]:
        if not should_update_summary(history, self.summary_every_turns):
            return None
        try:
            with log_stage(log, "summary"):
                summary = summarize_history(self.llm, history, answer)
        except Exception as e:
            log.warning(f"Summary update failed: {e}")
            return None
        return summary or None

    def _persist_turn(
        self,
        log: LoggerAdapter,
        session_id: str,
        message: str,
        user_meta: dict,
        answer: str,
        assistant_meta: dict,
        relayed: bool,
    ) -> None:
        if not session_id:
            return
        rows = []
        if not relayed:
            rows.append(NewMessage(session_id, "user", message, user_meta))
        rows.append(NewMessage(session_id, "assistant", answer, assistant_meta))
        self._persist(log, rows)

    def _persist(self, log: LoggerAdapter, rows: list[NewMessage]) -> None:
        try:
            self.store.insert_messages(rows)
        except Exception as e:
            log.error(f"Insert messages failed: {e}")
