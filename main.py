import logging
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session
from typing import TYPE_CHECKING

from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import parse_amount
from database import get_db
from models import Category, PlanTier, Profile, Transaction, TransactionType
from periods import (
    DateRange,
    EntitlementError,
    Period,
    allowed_presets,
    clamp_preset,
    plan_window,
    resolve_window,
)
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    CategoryIn,
    CategoryOrderIn,
    CheckoutSessionIn,
    ReportOptions,
    ReportRange,
    TransactionIn,
)
from services import (
    BillingService,
    BudgetService,
    CSVService,
    CategoryService,
    MetricsService,
    ProfileService,
    ReportService,
    TransactionService,
    get_current_user_id,
    local_today,
)
from stripe_gateway import BillingConfigError, StripeGateway, WebhookSignatureError
from summaries import cents_to_decimal

if TYPE_CHECKING:  # pragma: no cover
    from weasyprint import HTML, CSS  # noqa: F401
    from weasyprint.text.fonts import FontConfiguration  # noqa: F401

logger = logging.getLogger(__name__)

app = FastAPI(title="FlowTrack")
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

PERIOD_COOKIE = "flowtrack_days"


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open(Path(__file__).parent / "pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def format_currency(cents: int, options: Optional[object] = None) -> str:
    include_cents = True
    if isinstance(options, dict):
        include_cents = options.get("include_cents", True)
    elif options is not None:
        include_cents = bool(getattr(options, "include_cents", True))
    amount = cents_to_decimal(cents)
    if include_cents:
        return f"{amount:,.2f}".replace(",", " ").replace(".", ",")
    return f"{amount:,.0f}".replace(",", " ")


templates.env.filters["currency"] = format_currency
templates.env.globals["TransactionType"] = TransactionType


def get_gateway() -> StripeGateway:
    return StripeGateway()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


async def require_csrf(request: Request):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    return form


def _entitlement_error(exc: EntitlementError) -> HTTPException:
    return HTTPException(status_code=402, detail={"upgrade": True, "reason": exc.reason})


def _parse_int(value: Optional[str], name: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def _parse_date(value: str, name: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name} date") from exc


def resolve_period(
    db: Session,
    days: Optional[str],
    start: Optional[str],
    end: Optional[str],
    stored_days: Optional[str] = None,
) -> Period:
    settings = get_settings()
    plan = ProfileService(db).effective_plan()
    custom_range = None
    if start or end:
        if not (start and end):
            raise HTTPException(status_code=400, detail="Custom range needs start and end")
        custom_range = DateRange(_parse_date(start, "start"), _parse_date(end, "end"))
    preset_days = _parse_int(days, "days")
    if preset_days is None and custom_range is None and stored_days:
        try:
            remembered = int(stored_days)
        except ValueError:
            remembered = None
        preset_days = clamp_preset(plan, remembered, settings.plans)
    try:
        return resolve_window(
            plan,
            preset_days,
            custom_range,
            today=local_today(),
            plans=settings.plans,
        )
    except EntitlementError as exc:
        raise _entitlement_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def period_from_request(request: Request, db: Session) -> Period:
    params = request.query_params
    return resolve_period(
        db,
        params.get("days"),
        params.get("start"),
        params.get("end"),
        request.cookies.get(PERIOD_COOKIE),
    )


def transaction_window(db: Session) -> DateRange:
    plan = ProfileService(db).effective_plan()
    return plan_window(plan, today=local_today(), plans=get_settings().plans)


def serialize_period(period: Period) -> dict:
    return {
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
        "using_custom_range": period.using_custom_range,
        "label": period.label,
        "days": period.days,
    }


def serialize_transaction(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "category": txn.category,
        "description": txn.description,
    }


def serialize_category(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "sort_index": category.sort_index,
    }


def transaction_payload_from_form(form) -> TransactionIn:
    raw_date = (form.get("date") or "").strip()
    if not raw_date:
        raise ValueError("Please fill amount and date.")
    return TransactionIn(
        date=date.fromisoformat(raw_date),
        amount_cents=parse_amount(form.get("amount") or ""),
        category=form.get("category") or "",
        description=form.get("description"),
    )


@app.get("/api/csrf-token")
def api_csrf_token():
    return {"csrf_token": generate_csrf_token(get_current_user_id())}


@app.get("/api/profile")
def api_profile(db: Session = Depends(get_db)):
    settings = get_settings()
    profile: Profile = ProfileService(db).get_or_create()
    record = ProfileService.record_of(profile)
    effective = ProfileService(db).effective_plan()
    window = settings.plans[effective.value]
    return {
        "user_id": profile.user_id,
        "email": profile.email,
        "plan": record.plan.value,
        "effective_plan": effective.value,
        "entitled": effective == PlanTier.pro,
        "subscription_status": record.subscription_status,
        "grace_until": record.grace_until.isoformat() if record.grace_until else None,
        "has_customer": bool(record.stripe_customer_id),
        "allowed_presets": list(allowed_presets(effective, settings.plans)),
        "max_days": window.max_days,
        "default_days": window.default_days,
    }


@app.get("/api/period")
def api_period(request: Request, response: Response, db: Session = Depends(get_db)):
    period = period_from_request(request, db)
    if not period.using_custom_range:
        response.set_cookie(PERIOD_COOKIE, str(period.days), samesite="lax")
    return serialize_period(period)


@app.get("/api/summary")
def api_summary(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request, db)
    metrics = MetricsService(db).dashboard(period)
    metrics["period"] = serialize_period(period)
    return metrics


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request, db)
    page = max(_parse_int(request.query_params.get("page"), "page") or 1, 1)
    limit = _parse_int(request.query_params.get("limit"), "limit") or 50
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    category = (request.query_params.get("category") or "").strip() or None
    service = TransactionService(db)
    items = service.list(period, limit=limit + 1, offset=offset, category=category)
    has_more = len(items) > limit
    items = items[:limit]
    payload = {
        "items": [serialize_transaction(txn) for txn in items],
        "period": serialize_period(period),
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }
    if category:
        payload["category"] = category
        payload["category_total_cents"] = service.category_total(period, category)
    return payload


@app.post("/transactions", status_code=201)
async def create_transaction(request: Request, db: Session = Depends(get_db)):
    form = await require_csrf(request)
    ProfileService(db).get_or_create()
    try:
        data = transaction_payload_from_form(form)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        txn = TransactionService(db).create(data, transaction_window(db))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_transaction(txn)


@app.post("/transactions/{transaction_id}/edit")
async def edit_transaction(
    transaction_id: int, request: Request, db: Session = Depends(get_db)
):
    form = await require_csrf(request)
    service = TransactionService(db)
    try:
        service.get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        data = transaction_payload_from_form(form)
        txn = service.update(transaction_id, data, transaction_window(db))
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_transaction(txn)


@app.post("/transactions/{transaction_id}/delete")
async def delete_transaction(
    transaction_id: int, request: Request, db: Session = Depends(get_db)
):
    await require_csrf(request)
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    ProfileService(db).get_or_create()
    return [serialize_category(c) for c in CategoryService(db).list_all()]


@app.post("/categories", status_code=201)
async def create_category(request: Request, db: Session = Depends(get_db)):
    form = await require_csrf(request)
    try:
        data = CategoryIn(
            name=form.get("name") or "",
            type=TransactionType(form.get("type") or "expense"),
        )
        category = CategoryService(db).create(data)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_category(category)


@app.post("/categories/order")
async def reorder_categories(request: Request, db: Session = Depends(get_db)):
    form = await require_csrf(request)
    data = CategoryOrderIn(names=form.getlist("names"))
    categories = CategoryService(db).reorder(data.names)
    return [serialize_category(c) for c in categories]


@app.post("/categories/{category_id}/delete")
async def delete_category(
    category_id: int, request: Request, db: Session = Depends(get_db)
):
    await require_csrf(request)
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/budgets")
def api_budgets(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request, db)
    transactions = TransactionService(db).all_for_period(period)
    return {
        "period": serialize_period(period),
        "budgets": BudgetService(db).usage(transactions),
    }


@app.post("/budgets")
async def upsert_budget(request: Request, db: Session = Depends(get_db)):
    form = await require_csrf(request)
    try:
        data = BudgetIn(
            category=form.get("category") or "",
            amount_cents=parse_amount(form.get("amount") or ""),
        )
        budget = BudgetService(db).upsert(data)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"category": budget.category, "amount_cents": budget.amount_cents}


@app.post("/budgets/delete")
async def delete_budget(request: Request, db: Session = Depends(get_db)):
    form = await require_csrf(request)
    category = (form.get("category") or "").strip()
    if not category:
        raise HTTPException(status_code=400, detail="Please choose a category.")
    try:
        BudgetService(db).delete(category)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/transactions/export.csv")
def export_transactions_endpoint(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request, db)
    csv_text = CSVService(db).export(period)
    filename = f"transactions_{period.start}_{period.end}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


REPORT_CSS = """
    @page {
        size: A4;
        margin: 18mm 16mm 20mm 16mm;
        @bottom-center {
            content: "Page " counter(page) " of " counter(pages);
            color: #64748b;
            font-size: 9pt;
        }
    }
    body { font-family: sans-serif; color: #0f172a; font-size: 10pt; }
    h1 { font-size: 18pt; margin: 0 0 2mm 0; }
    h2 { font-size: 12pt; margin: 6mm 0 2mm 0; }
    .muted { color: #64748b; }
    table { width: 100%; border-collapse: collapse; }
    th, td { padding: 1.5mm 2mm; border-bottom: 1px solid #e2e8f0; text-align: left; }
    td.amount, th.amount { text-align: right; }
    .positive { color: #16a34a; }
    .negative { color: #dc2626; }
    .status-over { color: #dc2626; }
    .status-near { color: #d97706; }
"""


@app.post("/reports/pdf")
async def generate_pdf_report(
    request: Request,
    range_mode: str = Form("window"),
    days: Optional[str] = Form(None),
    start: Optional[str] = Form(None),
    end: Optional[str] = Form(None),
    transaction_type: Optional[str] = Form(None),
    include_cents: bool = Form(True),
    notes: Optional[str] = Form(None),
    csrf_token: str = Form(...),
    db: Session = Depends(get_db),
):
    if not validate_csrf_token(csrf_token, get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    if ProfileService(db).effective_plan() != PlanTier.pro:
        raise _entitlement_error(EntitlementError("PDF reports are Pro."))

    try:
        mode = ReportRange(range_mode)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid range_mode") from exc
    period = resolve_period(db, days, start, end) if mode == ReportRange.window else None
    try:
        options = ReportOptions(
            range_mode=mode,
            start=period.start if period else None,
            end=period.end if period else None,
            label=period.label if period else None,
            include_cents=include_cents,
            notes=notes,
            transaction_type=(
                TransactionType(transaction_type) if transaction_type else None
            ),
        )
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        try:
            from weasyprint import CSS, HTML
            from weasyprint.text.fonts import FontConfiguration
        except Exception as exc:
            raise HTTPException(
                status_code=500,
                detail="PDF export requires WeasyPrint system dependencies; install them for your OS and retry.",
            ) from exc

        data = ReportService(db).gather_data(options)
        report_period = data["period"]
        data["generated_at"] = datetime.now()
        data["app_version"] = APP_VERSION
        html = templates.env.get_template("report.html").render(**data)

        start_time = datetime.now()
        font_config = FontConfiguration()
        css = CSS(string=REPORT_CSS, font_config=font_config)
        pdf_bytes = HTML(string=html, base_url=str(request.base_url)).write_pdf(
            stylesheets=[css], font_config=font_config
        )
        pdf_duration = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"report_generated: period={report_period.start}to{report_period.end} "
            f"pdf_size_bytes={len(pdf_bytes)} "
            f"pdf_duration={pdf_duration:.2f}s"
        )

        filename = f"flowtrack_report_{report_period.start}_{report_period.end}.pdf"
        return StreamingResponse(
            iter([pdf_bytes]),
            media_type="application/pdf",
            headers={
                "Content-Disposition": f'attachment; filename="{filename}"',
                "Content-Length": str(len(pdf_bytes)),
            },
        )
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error generating PDF report")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/billing/checkout")
async def billing_checkout(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    await require_csrf(request)
    settings = get_settings()
    profile = ProfileService(db).get_or_create()
    try:
        data = CheckoutSessionIn(
            user_id=profile.user_id,
            email=profile.email,
            price_id=gateway.monthly_price_id(),
            customer_id=profile.stripe_customer_id,
            success_url=f"{settings.app_url}/?checkout=success",
            cancel_url=f"{settings.app_url}/?checkout=cancel",
        )
        url = gateway.create_checkout_session(data)
    except BillingConfigError as exc:
        logger.error(f"checkout_misconfigured: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except RuntimeError as exc:
        logger.exception(f"checkout_failed: user_id={profile.user_id}")
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"url": url}


@app.post("/billing/webhook")
async def billing_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    payload = await request.body()
    try:
        event = gateway.verify_event(payload, request.headers.get("stripe-signature"))
    except BillingConfigError as exc:
        logger.error(f"webhook_misconfigured: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except WebhookSignatureError as exc:
        logger.warning(f"webhook_rejected: reason={exc}")
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    fetch = gateway.retrieve_subscription if gateway.settings.stripe_secret_key else None
    service = BillingService(db, fetch_subscription=fetch)
    try:
        outcome = service.handle(event)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(
            status_code=500, detail="Failed to apply billing event"
        ) from exc
    return outcome.as_response()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
