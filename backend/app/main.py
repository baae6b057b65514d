from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from backend.app.auth import AuthContext, ensure_owner_access, require_roles
from backend.app.ledger import InsufficientMinutesError, LedgerStore
from backend.app.models import (
    BatchStatusEvent,
    CampaignCreateRequest,
    CampaignLaunchRequest,
    CampaignLaunchResponse,
    CampaignRecord,
    CampaignSummaryResponse,
    CleanupReport,
    CleanupRequest,
    ConversationEvent,
    CreditRequest,
    MinutesBalanceResponse,
    MinutesTransactionRecord,
    PollRequest,
    PollResult,
    PollStartedResponse,
    SettlementResult,
    SettleRequest,
    TransactionType,
    WebhookEnvelope,
    WebhookEventType,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import Database, PersistenceError
from backend.app.services.cleanup import CleanupSweeper
from backend.app.services.launch import launch_campaign
from backend.app.services.poller import BatchPoller, PollerRegistry
from backend.app.services.provider import ProviderClient, ProviderConfigError, ProviderIOError
from backend.app.services.reconciliation import (
    NoDeductionFoundError,
    OwnerResolutionError,
    ReconciliationEngine,
)
from backend.app.services.usage import is_billable_status, minutes_used
from backend.app.services.webhooks import (
    SignatureVerificationError,
    WebhookConfigurationError,
    verify_provider_signature,
)
from backend.app.settings import Settings, load_settings
from backend.app.store import CampaignStateStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("campaign_minutes.api")


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.pollers.shutdown()
        app.state.database.dispose()

    app = FastAPI(title="Campaign Minutes API", version="0.1.0", lifespan=lifespan)
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    metrics = MetricsRegistry()
    database = Database(settings.database_url)
    state_store = CampaignStateStore(database)
    ledger = LedgerStore(database)
    engine = ReconciliationEngine(state_store, ledger, metrics=metrics)
    provider = ProviderClient(
        api_key=settings.provider_api_key,
        base_url=settings.provider_base_url,
        timeout_seconds=settings.provider_timeout_seconds,
    )

    def poller_factory() -> BatchPoller:
        return BatchPoller(
            app.state.engine,
            app.state.provider,
            app.state.state_store,
            interval_seconds=settings.poll_interval_seconds,
            max_iterations=settings.poll_max_iterations,
            metrics=metrics,
        )

    app.state.settings = settings
    app.state.metrics = metrics
    app.state.database = database
    app.state.state_store = state_store
    app.state.ledger = ledger
    app.state.engine = engine
    app.state.provider = provider
    app.state.poller_factory = poller_factory
    app.state.pollers = PollerRegistry(lambda: app.state.poller_factory())
    app.state.sweeper = CleanupSweeper(
        state_store,
        ledger,
        grace=timedelta(hours=settings.cleanup_grace_hours),
        minutes_per_call=settings.minutes_per_recipient,
        metrics=metrics,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> CampaignStateStore:
    return request.app.state.state_store


def get_ledger(request: Request) -> LedgerStore:
    return request.app.state.ledger


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def load_campaign(store: CampaignStateStore, campaign_id: str) -> CampaignRecord:
    try:
        return store.get_campaign(campaign_id)
    except StoreNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def provider_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ProviderConfigError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not request.app.state.database.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/webhooks/provider")
    async def provider_webhook(request: Request) -> dict[str, bool]:
        settings = get_settings(request)
        engine = get_engine(request)
        raw_body = await request.body()
        try:
            verify_provider_signature(request.headers, raw_body, settings.webhook_secret)
        except WebhookConfigurationError as exc:
            logger.error("webhook_rejected reason=%s", exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
            ) from exc
        except SignatureVerificationError as exc:
            get_metrics(request).increment("webhook_signature_failures")
            logger.warning("webhook_rejected reason=%s", exc)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

        try:
            envelope = WebhookEnvelope.model_validate(json.loads(raw_body.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="invalid json payload",
            ) from exc

        logger.info("webhook_received type=%s", envelope.type)
        try:
            if envelope.type == WebhookEventType.post_call_transcription.value:
                event = ConversationEvent.model_validate(envelope.data)
                engine.ingest_conversation_event(event)
            elif envelope.type == WebhookEventType.batch_status_update.value:
                batch_event = BatchStatusEvent.model_validate(envelope.data)
                engine.ingest_batch_status_event(
                    batch_event.batch_id,
                    batch_event.status,
                    batch_event.total_calls_dispatched,
                    batch_event.last_updated_at_unix,
                )
            else:
                logger.info("webhook_ignored type=%s", envelope.type)
        except OwnerResolutionError as exc:
            logger.warning("webhook_owner_unresolved error=%s", exc)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Unable to determine user_id",
            ) from exc
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="invalid event payload",
            ) from exc
        except PersistenceError as exc:
            logger.error("webhook_persistence_failed type=%s error=%s", envelope.type, exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="failed to record event",
            ) from exc
        return {"success": True}

    @router.post("/campaigns", response_model=CampaignRecord, status_code=status.HTTP_201_CREATED)
    def create_campaign(
        payload: CampaignCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("owner", "admin")),
    ) -> CampaignRecord:
        ensure_owner_access(context, payload.user_id)
        return get_store(request).create_campaign(user_id=payload.user_id, name=payload.name)

    @router.get("/campaigns/{campaign_id}", response_model=CampaignSummaryResponse)
    def campaign_summary(
        campaign_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("owner", "admin", "service")),
    ) -> CampaignSummaryResponse:
        store = get_store(request)
        campaign = load_campaign(store, campaign_id)
        ensure_owner_access(context, campaign.user_id)
        batch = store.find_batch_for_campaign(campaign_id)
        recipients = store.list_recipients(batch.batch_id) if batch else []
        conversations = store.list_campaign_conversations(campaign_id)
        return CampaignSummaryResponse(
            campaign=campaign,
            batch=batch,
            recipients=len(recipients),
            conversations=len(conversations),
            billable_conversations=sum(
                1 for conversation in conversations if is_billable_status(conversation.status)
            ),
            minutes_used=minutes_used(conversations),
        )

    @router.post("/campaigns/{campaign_id}/launch", response_model=CampaignLaunchResponse)
    async def launch(
        campaign_id: str,
        payload: CampaignLaunchRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("owner", "admin")),
    ) -> CampaignLaunchResponse:
        store = get_store(request)
        settings = get_settings(request)
        campaign = load_campaign(store, campaign_id)
        ensure_owner_access(context, campaign.user_id)
        try:
            result = await asyncio.to_thread(
                launch_campaign,
                campaign_id,
                payload,
                state_store=store,
                ledger=get_ledger(request),
                provider=request.app.state.provider,
                minutes_per_recipient=settings.minutes_per_recipient,
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except InsufficientMinutesError as exc:
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc)
            ) from exc
        except (ProviderConfigError, ProviderIOError) as exc:
            raise provider_http_error(exc) from exc
        except PersistenceError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="launch could not be recorded",
            ) from exc
        if settings.poll_on_launch:
            request.app.state.pollers.start(result.batch_id, campaign.user_id)
            result = result.model_copy(update={"polling": True})
        return result

    @router.post("/batches/{batch_id}/poll")
    async def poll_batch(
        batch_id: str,
        request: Request,
        payload: Optional[PollRequest] = None,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ):
        options = payload or PollRequest()
        if options.wait:
            poller = request.app.state.poller_factory()
            try:
                result: PollResult = await poller.run(batch_id, options.user_id)
            except OwnerResolutionError as exc:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
            except (ProviderConfigError, ProviderIOError) as exc:
                raise provider_http_error(exc) from exc
            return result
        if not get_store(request).find_batch_call(batch_id) and not options.user_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"batch not found: {batch_id}"
            )
        started = request.app.state.pollers.start(batch_id, options.user_id)
        return PollStartedResponse(
            batch_id=batch_id, status="started" if started else "already_running"
        )

    @router.post("/batches/{batch_id}/settle", response_model=SettlementResult)
    def settle_batch(
        batch_id: str,
        request: Request,
        payload: Optional[SettleRequest] = None,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> SettlementResult:
        store = get_store(request)
        batch = store.find_batch_call(batch_id)
        if not batch:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"batch not found: {batch_id}"
            )
        options = payload or SettleRequest()
        try:
            return get_engine(request).settle_campaign_minutes(
                batch_id, batch.user_id, failed=options.failed
            )
        except NoDeductionFoundError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.post("/maintenance/cleanup-minutes", response_model=CleanupReport)
    def cleanup_minutes(
        request: Request,
        payload: Optional[CleanupRequest] = None,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> CleanupReport:
        options = payload or CleanupRequest()
        return request.app.state.sweeper.sweep(campaign_id=options.campaign_id)

    @router.get("/users/{user_id}/minutes", response_model=MinutesBalanceResponse)
    def minutes_balance(
        user_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("owner", "admin", "service")),
    ) -> MinutesBalanceResponse:
        ensure_owner_access(context, user_id)
        ledger = get_ledger(request)
        return MinutesBalanceResponse(
            user_id=user_id,
            available_minutes=ledger.get_balance(user_id),
            derived_minutes=ledger.derived_balance(user_id),
            transactions=ledger.list_transactions(user_id),
        )

    @router.post(
        "/users/{user_id}/minutes/transactions",
        response_model=MinutesTransactionRecord,
        status_code=status.HTTP_201_CREATED,
    )
    def credit_minutes(
        user_id: str,
        payload: CreditRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> MinutesTransactionRecord:
        if payload.transaction_type not in (TransactionType.purchase, TransactionType.bonus):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="only purchase and bonus credits can be recorded directly",
            )
        return get_ledger(request).apply_transaction(
            user_id=user_id,
            transaction_type=payload.transaction_type,
            minutes=payload.minutes,
            description=payload.description,
        )

    @router.get("/conversations/{conversation_id}/audio")
    async def conversation_audio(
        conversation_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("owner", "admin", "service")),
    ) -> Response:
        conversation = get_store(request).find_conversation(conversation_id)
        if conversation is not None:
            ensure_owner_access(context, conversation.user_id)
        elif not context.is_privileged:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"conversation not found: {conversation_id}",
            )
        try:
            audio = await asyncio.to_thread(
                request.app.state.provider.get_conversation_audio, conversation_id
            )
        except (ProviderConfigError, ProviderIOError) as exc:
            raise provider_http_error(exc) from exc
        return Response(
            content=audio,
            media_type="audio/mpeg",
            headers={
                "Content-Disposition": f'attachment; filename="conversation_{conversation_id}.mp3"'
            },
        )

    return router


app = create_app()
