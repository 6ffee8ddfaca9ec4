"""Process-wide collaborators, built once from settings."""

import threading
from dataclasses import dataclass
from typing import Optional

from app.config import Settings, settings
from app.database import SessionLocal
from app.services.catalog_service import CatalogService
from app.services.debounce_service import MessageDebouncer
from app.services.embedding_service import OllamaEmbeddingClient
from app.services.escalation_service import DirectorScheduler, EscalationService
from app.services.llm import OpenAIProvider
from app.services.media_service import DocumentExtractor, MediaProcessor
from app.services.personalization_service import PersonalizationService
from app.services.quote_renderer import QuoteRenderer
from app.services.relay_service import ManagerRelay
from app.services.retrieval_service import RetrievalService
from app.services.session_store import SessionStore
from app.services.telegram_channel import TelegramChannel
from app.services.telegram_service import TelegramService
from app.services.turn_service import TurnOrchestrator


@dataclass
class Runtime:
    orchestrator: TurnOrchestrator
    media: MediaProcessor
    quote_renderer: QuoteRenderer
    telegram: TelegramService
    channel: TelegramChannel
    debouncer: MessageDebouncer
    escalation: EscalationService
    relay: ManagerRelay

    def close(self) -> None:
        self.debouncer.close()
        self.escalation.close()
        self.channel.close()


def build_runtime(config: Settings) -> Runtime:
    timeout = config.http_timeout_seconds
    store = SessionStore(SessionLocal)
    catalog = CatalogService(config.supabase_url, config.supabase_service_role_key, timeout)
    llm = OpenAIProvider(
        api_key=config.openai_api_key,
        default_model=config.openai_model,
        base_url=config.openai_base_url,
        vision_model=config.vision_model,
        transcribe_model=config.openai_transcribe_model,
    )
    telegram = TelegramService(config.telegram_bot_token, config.telegram_base_url)
    escalation = EscalationService(
        telegram=telegram,
        manager_chat_id=config.manager_chat_id,
        director_chat_id=config.director_chat_id,
        history_loader=store.fetch_history,
        scheduler=DirectorScheduler(),
    )
    quote_renderer = QuoteRenderer(config.quote_font_path, config.quote_font_bold_path)
    orchestrator = TurnOrchestrator(
        store=store,
        catalog=catalog,
        embedder=OllamaEmbeddingClient(config.ollama_url, config.ollama_embedding_model, timeout),
        llm=llm,
        retrieval=RetrievalService(catalog),
        personalization=PersonalizationService(catalog),
        escalation=escalation,
        quote_renderer=quote_renderer,
        product_link_base_url=config.product_link_base_url,
        history_limit=config.history_limit,
        summary_every_turns=config.summary_every_turns,
    )
    media = MediaProcessor(llm, DocumentExtractor(config.tika_url))
    debouncer = MessageDebouncer(config.debounce_idle_seconds, config.debounce_max_wait_seconds)
    return Runtime(
        orchestrator=orchestrator,
        media=media,
        quote_renderer=quote_renderer,
        telegram=telegram,
        channel=TelegramChannel(telegram, debouncer, orchestrator, media),
        debouncer=debouncer,
        escalation=escalation,
        relay=ManagerRelay(store, telegram),
    )


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Process singleton; sync dependencies run on worker threads, so build under a lock."""
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = build_runtime(settings)
    return _runtime


def close_runtime() -> None:
    global _runtime
    with _runtime_lock:
        runtime, _runtime = _runtime, None
    if runtime is not None:
        runtime.close()
