"""FastAPI application: routes, admin auth and error mapping for the affiliate services."""

import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from affiliates.conversions import ConversionRecorder
from affiliates.db import Database, storage_retry
from affiliates.errors import AffiliateServiceError, NotFoundError, StateError, StorageUnavailable, ValidationError
from affiliates.export import rows_to_csv
from affiliates.ledger import CommissionLedger
from affiliates.logging_config import get_logger, setup_logging
from affiliates.models import (
    Affiliate,
    AffiliateStatus,
    AffiliateSummary,
    AffiliateUpdateRequest,
    ApplyRequest,
    Balance,
    Conversion,
    ConversionRequest,
    ConversionResult,
    ExportFilter,
    GeneratePayoutRequest,
    MarkPaidRequest,
    Payout,
    PayoutBatch,
    RefundRequest,
    ReversalResult,
    Statement,
)
from affiliates.notifications import LogNotifier, Notifier
from affiliates.payouts import PayoutBatchGenerator
from affiliates.registry import AffiliateRegistry
from affiliates.settings import Settings
from affiliates.tracker import AttributionTracker

logger = get_logger(__name__)

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StateError: status.HTTP_409_CONFLICT,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}

security = HTTPBearer(auto_error=False)


@dataclass
class Services:
    settings: Settings
    db: Database
    registry: AffiliateRegistry
    tracker: AttributionTracker
    ledger: CommissionLedger
    conversions: ConversionRecorder
    payouts: PayoutBatchGenerator


def build_services(settings: Settings, db: Database, notifier: Optional[Notifier] = None) -> Services:
    registry = AffiliateRegistry(db, settings, notifier or LogNotifier(settings.site_url))
    ledger = CommissionLedger(db)
    return Services(
        settings=settings,
        db=db,
        registry=registry,
        tracker=AttributionTracker(db, registry, settings),
        ledger=ledger,
        conversions=ConversionRecorder(db, registry, ledger),
        payouts=PayoutBatchGenerator(db),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(
    services: Services = Depends(get_services),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(credentials.credentials, services.settings.admin_api_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


def _page_size(services: Services, limit: Optional[int]) -> int:
    return min(limit or services.settings.default_page_size, services.settings.max_page_size)


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    notifier: Optional[Notifier] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or Settings()
    setup_logging(settings)
    database = database or Database(settings.database_url, timeout_seconds=settings.store_timeout_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app_starting", env=settings.env)
        database.open()
        database.create_tables()
        yield
        logger.info("app_shutting_down")
        database.close()

    app = FastAPI(
        title="Affiliate Ledger API",
        description="Referral attribution, commission ledger and payouts",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )
    app.state.services = build_services(settings, database, notifier)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.allowed_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
    )

    @app.exception_handler(AffiliateServiceError)
    async def service_error_handler(request: Request, exc: AffiliateServiceError):
        code = next(
            (c for error_type, c in ERROR_STATUS.items() if isinstance(exc, error_type)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        headers = {"Retry-After": "1"} if isinstance(exc, StorageUnavailable) else None
        return JSONResponse(status_code=code, content={"detail": str(exc)}, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_errors(exc)},
        )

    _register_routes(app)
    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


def _register_routes(app: FastAPI) -> None:
    admin = [Depends(require_admin)]

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "affiliate-ledger"}

    # ==================== ATTRIBUTION ====================

    @app.get("/r/{code}", tags=["Attribution"])
    def referral_redirect(
        code: str,
        request: Request,
        background_tasks: BackgroundTasks,
        services: Services = Depends(get_services),
    ):
        origin = f"{request.url.scheme}://{request.url.netloc}"
        token = services.tracker.record_click(
            code,
            landing_path="/",
            referrer=request.headers.get("referer"),
            user_agent=request.headers.get("user-agent"),
            dispatch=background_tasks.add_task,
        )
        if token is None:
            return RedirectResponse(f"{origin}/")

        response = RedirectResponse(f"{origin}/?ref={token.code}")
        response.set_cookie(
            key=services.settings.attribution_cookie_name,
            value=token.code,
            max_age=token.max_age_seconds,
            path="/",
            httponly=False,
            samesite="lax",
        )
        return response

    # ==================== AFFILIATES ====================

    @app.post("/affiliates/apply", status_code=status.HTTP_201_CREATED, tags=["Affiliates"])
    def apply(
        body: ApplyRequest,
        background_tasks: BackgroundTasks,
        services: Services = Depends(get_services),
    ):
        affiliate = services.registry.apply(
            **body.model_dump(),
            dispatch=background_tasks.add_task,
        )
        return {"id": affiliate.id}

    @app.get("/affiliates", response_model=list[Affiliate], dependencies=admin, tags=["Affiliates"])
    def list_affiliates(
        status_filter: Optional[AffiliateStatus] = Query(default=None, alias="status"),
        limit: Optional[int] = Query(default=None, ge=1),
        services: Services = Depends(get_services),
    ) -> list[Affiliate]:
        return services.registry.list_affiliates(status_filter, limit=_page_size(services, limit))

    @app.get("/affiliates/{affiliate_id}", response_model=Affiliate, dependencies=admin, tags=["Affiliates"])
    def get_affiliate(affiliate_id: int, services: Services = Depends(get_services)) -> Affiliate:
        return services.registry.get(affiliate_id)

    @app.patch("/affiliates/{affiliate_id}", response_model=Affiliate, dependencies=admin, tags=["Affiliates"])
    def update_affiliate(
        affiliate_id: int,
        body: AffiliateUpdateRequest,
        background_tasks: BackgroundTasks,
        services: Services = Depends(get_services),
    ) -> Affiliate:
        return services.registry.update(
            affiliate_id,
            status=body.status,
            commission_bps=body.commission_bps,
            dispatch=background_tasks.add_task,
        )

    @app.get("/affiliates/{affiliate_id}/balance", response_model=Balance, dependencies=admin, tags=["Ledger"])
    def get_balance(affiliate_id: int, services: Services = Depends(get_services)) -> Balance:
        services.registry.get(affiliate_id)
        return services.ledger.balance(affiliate_id)

    @app.get("/affiliates/{affiliate_id}/statement", response_model=Statement, dependencies=admin, tags=["Ledger"])
    def get_statement(
        affiliate_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        services: Services = Depends(get_services),
    ) -> Statement:
        services.registry.get(affiliate_id)
        return services.ledger.statement(affiliate_id, start, end)

    @app.get("/affiliates/{affiliate_id}/summary", response_model=AffiliateSummary, dependencies=admin,
             tags=["Ledger"])
    def get_summary(affiliate_id: int, services: Services = Depends(get_services)) -> AffiliateSummary:
        return services.ledger.summary(affiliate_id)

    @app.get("/affiliates/{affiliate_id}/conversions", response_model=list[Conversion], dependencies=admin,
             tags=["Conversions"])
    def list_conversions(
        affiliate_id: int,
        limit: Optional[int] = Query(default=None, ge=1),
        services: Services = Depends(get_services),
    ) -> list[Conversion]:
        return services.conversions.list_for_affiliate(affiliate_id, limit=_page_size(services, limit))

    @app.get("/affiliates/{affiliate_id}/payouts", response_model=list[Payout], dependencies=admin,
             tags=["Payouts"])
    def list_payouts(
        affiliate_id: int,
        limit: Optional[int] = Query(default=None, ge=1),
        services: Services = Depends(get_services),
    ) -> list[Payout]:
        return services.payouts.list_for_affiliate(affiliate_id, limit=_page_size(services, limit))

    # ==================== INGESTION ====================

    @app.post("/conversions", response_model=ConversionResult, dependencies=admin, tags=["Conversions"])
    def record_conversion(
        body: ConversionRequest,
        response: Response,
        services: Services = Depends(get_services),
    ) -> ConversionResult:
        result = storage_retry(services.settings.storage_retry_attempts)(
            services.conversions.record, body.order_id, body.revenue_cents, body.cookie_code
        )
        if result.created:
            response.status_code = status.HTTP_201_CREATED
        return result

    @app.post("/refunds", response_model=ReversalResult, dependencies=admin, tags=["Ledger"])
    def record_refund(body: RefundRequest, services: Services = Depends(get_services)) -> ReversalResult:
        return storage_retry(services.settings.storage_retry_attempts)(
            services.ledger.reverse_for_refund, body.order_id, body.refund_amount_cents, body.refund_id
        )

    # ==================== PAYOUTS ====================

    @app.post("/payouts/generate", response_model=PayoutBatch, dependencies=admin, tags=["Payouts"])
    def generate_payouts(body: GeneratePayoutRequest, services: Services = Depends(get_services)) -> PayoutBatch:
        retrying = storage_retry(services.settings.storage_retry_attempts)
        if body.affiliate_id is not None:
            payout = retrying(services.payouts.generate, body.affiliate_id, body.period_start, body.period_end)
            payouts = [payout] if payout else []
        else:
            payouts = retrying(services.payouts.generate_batch, body.period_start, body.period_end)
        return PayoutBatch(payouts=payouts, created=len(payouts))

    @app.post("/payouts/{payout_id}/approve", response_model=Payout, dependencies=admin, tags=["Payouts"])
    def approve_payout(payout_id: int, services: Services = Depends(get_services)) -> Payout:
        return services.payouts.approve(payout_id)

    @app.post("/payouts/{payout_id}/paid", response_model=Payout, dependencies=admin, tags=["Payouts"])
    def mark_payout_paid(
        payout_id: int,
        body: Optional[MarkPaidRequest] = None,
        services: Services = Depends(get_services),
    ) -> Payout:
        return services.payouts.mark_paid(payout_id, reference=body.reference if body else None)

    @app.get("/payouts/export", dependencies=admin, tags=["Payouts"])
    def export_payouts(
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        services: Services = Depends(get_services),
    ) -> Response:
        rows = services.payouts.export_rows(ExportFilter(start=start, end=end))
        return Response(
            content=rows_to_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="affiliate-payouts.csv"'},
        )

    @app.get("/payouts/{payout_id}", response_model=Payout, dependencies=admin, tags=["Payouts"])
    def get_payout(payout_id: int, services: Services = Depends(get_services)) -> Payout:
        return services.payouts.get(payout_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
