import csv
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from config import get_settings
from csv_utils import format_amount, try_parse_amount, try_parse_date
from database import get_db
from services import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    AlertGenerator,
    AuthService,
    ExpenseAccessDenied,
    ExpenseNotFound,
    ExpenseService,
    MonthlySummaryService,
)
from session_context import SessionContext
from validation import CATEGORY_PLACEHOLDER, Invalid, local_today

settings = get_settings()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
MONTHS = [
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
]

app = FastAPI(title="Expense Tracker")
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    session_cookie="expenses_session",
    same_site="lax",
)
app.mount("/static", StaticFiles(directory=BASE_DIR / "static"), name="static")
templates = Jinja2Templates(directory=BASE_DIR / "templates")


def format_currency(cents: int) -> str:
    return f"{cents / 100:,.2f}"


templates.env.filters["currency"] = format_currency
templates.env.globals["MONTHS"] = MONTHS


class LoginRequired(Exception):
    pass


def get_session(request: Request) -> SessionContext:
    return SessionContext(request.session)


def current_user_id(session: SessionContext = Depends(get_session)) -> int:
    if session.user_id is None:
        raise LoginRequired()
    return session.user_id


def render(
    request: Request,
    session: SessionContext,
    template: str,
    context: dict[str, object],
    status_code: int = 200,
) -> HTMLResponse:
    ctx: dict[str, object] = {
        "csrf_token": session.issue_csrf_token(),
        "authenticated": session.is_authenticated,
    }
    ctx.update(context)
    return templates.TemplateResponse(request, template, ctx, status_code=status_code)


def redirect(url: str, status_code: int = 303) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status_code)


def csrf_failure(
    session: SessionContext, token: str, action: str, back: str
) -> Optional[RedirectResponse]:
    if session.consume_csrf_token(token):
        return None
    logger.critical(f"csrf_failed: action={action} user_id={session.user_id}")
    return redirect(back)


def selected_period(year: Optional[int], month: Optional[int]) -> tuple[int, int]:
    today = local_today()
    return year or today.year, month or today.month


@app.exception_handler(LoginRequired)
async def login_required_handler(request: Request, exc: LoginRequired):
    return redirect("/login", status_code=302)


@app.exception_handler(ExpenseNotFound)
async def expense_not_found_handler(request: Request, exc: ExpenseNotFound):
    session = get_session(request)
    return render(request, session, "error.html", {"message": str(exc)}, 404)


@app.exception_handler(ExpenseAccessDenied)
async def expense_forbidden_handler(request: Request, exc: ExpenseAccessDenied):
    session = get_session(request)
    return render(
        request,
        session,
        "error.html",
        {"message": "You do not have permission to access this expense."},
        403,
    )


@app.get("/register", response_class=HTMLResponse)
def show_register(request: Request, session: SessionContext = Depends(get_session)):
    previous = session.pop_flash("register") or {}
    return render(
        request,
        session,
        "auth/register.html",
        {"username": previous.get("username", ""), "errors": previous.get("errors", {})},
    )


@app.post("/register")
def register(
    username: str = Form(""),
    password: str = Form(""),
    password_confirm: str = Form(""),
    csrf_token: str = Form(""),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    rejected = csrf_failure(session, csrf_token, "register", "/register")
    if rejected:
        return rejected
    result = AuthService(db).register(username, password, password_confirm)
    if isinstance(result, Invalid):
        session.flash("register", {"username": username, "errors": result.messages()})
        return redirect("/register")
    session.flash("notice", "Account created. You can sign in now.")
    return redirect("/login")


@app.get("/login", response_class=HTMLResponse)
def show_login(request: Request, session: SessionContext = Depends(get_session)):
    if session.is_authenticated:
        return redirect("/", status_code=302)
    return render(
        request,
        session,
        "auth/login.html",
        {
            "error": session.pop_flash("login_error"),
            "notice": session.pop_flash("notice"),
            "username": session.pop_flash("login_username", ""),
        },
    )


@app.post("/login")
def login(
    username: str = Form(""),
    password: str = Form(""),
    csrf_token: str = Form(""),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    rejected = csrf_failure(session, csrf_token, "login", "/login")
    if rejected:
        return rejected
    result = AuthService(db).attempt(username, password, session)
    if isinstance(result, Invalid):
        session.flash("login_error", result.get("credentials"))
        session.flash("login_username", username)
        return redirect("/login")
    return redirect("/")


@app.post("/logout")
def logout(
    csrf_token: str = Form(""),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    rejected = csrf_failure(session, csrf_token, "logout", "/")
    if rejected:
        return rejected
    AuthService(db).logout(session)
    return redirect("/login")


@app.get("/", response_class=HTMLResponse)
def dashboard(
    request: Request,
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    user_id: int = Depends(current_user_id),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    year, month = selected_period(year, month)
    years = ExpenseService(db, user_id).list_expenditure_years()
    if year not in years:
        years = sorted({*years, year}, reverse=True)
    summary = MonthlySummaryService(db, user_id)
    alerts = AlertGenerator(summary).generate(year, month)
    return render(
        request,
        session,
        "dashboard.html",
        {
            "years": years,
            "selected_year": year,
            "selected_month": month,
            "total": summary.total(year, month),
            "totals": summary.per_category_totals(year, month),
            "averages": summary.per_category_averages(year, month),
            "alerts": alerts,
            "budgets": settings.category_budgets,
        },
    )


@app.get("/expenses", response_class=HTMLResponse)
def list_expenses(
    request: Request,
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user_id: int = Depends(current_user_id),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    year, month = selected_period(year, month)
    service = ExpenseService(db, user_id)
    result = service.list(year, month, page=page, page_size=page_size)
    years = service.list_expenditure_years()
    if year not in years:
        years = sorted({*years, year}, reverse=True)

    def page_url(number: int) -> str:
        query = urlencode(
            {"year": year, "month": month, "page": number, "page_size": page_size}
        )
        return f"/expenses?{query}"

    return render(
        request,
        session,
        "expenses/index.html",
        {
            "expenses": result.items,
            "page": result,
            "years": years,
            "selected_year": year,
            "selected_month": month,
            "previous_page_url": page_url(result.page - 1)
            if result.has_previous
            else None,
            "next_page_url": page_url(result.page + 1) if result.has_next else None,
            "export_url": f"/expenses/export.csv?{urlencode({'year': year, 'month': month})}",
            "imported_rows": session.pop_flash("imported_rows"),
            "import_error": session.pop_flash("import_error"),
            "expense_deleted": session.pop_flash("expense_deleted"),
        },
    )


def expense_form_context(session: SessionContext, defaults: dict[str, str]) -> dict:
    previous = session.pop_flash("expense_form") or {}
    return {
        "categories": settings.categories,
        "placeholder": CATEGORY_PLACEHOLDER,
        "form": previous.get("values", defaults),
        "errors": previous.get("errors", {}),
    }


@app.get("/expenses/create", response_class=HTMLResponse)
def create_expense_form(
    request: Request,
    user_id: int = Depends(current_user_id),
    session: SessionContext = Depends(get_session),
):
    defaults = {
        "date": local_today().isoformat(),
        "category": "",
        "amount": "",
        "description": "",
    }
    return render(
        request, session, "expenses/create.html", expense_form_context(session, defaults)
    )


@app.post("/expenses")
def store_expense(
    date: str = Form(""),
    category: str = Form(""),
    amount: str = Form(""),
    description: str = Form(""),
    csrf_token: str = Form(""),
    user_id: int = Depends(current_user_id),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    rejected = csrf_failure(session, csrf_token, "expense_create", "/expenses/create")
    if rejected:
        return rejected
    result = ExpenseService(db, user_id).create(
        try_parse_date(date), category, try_parse_amount(amount), description
    )
    if isinstance(result, Invalid):
        session.flash(
            "expense_form",
            {
                "values": {
                    "date": date,
                    "category": category,
                    "amount": amount,
                    "description": description,
                },
                "errors": result.messages(),
            },
        )
        return redirect("/expenses/create")
    return redirect("/expenses")


@app.get("/expenses/export.csv")
def export_expenses_endpoint(
    year: Optional[int] = Query(None, ge=1970, le=3000),
    month: Optional[int] = Query(None, ge=1, le=12),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    year, month = selected_period(year, month)
    csv_text = ExpenseService(db, user_id).export_csv(year, month)
    filename = f"expenses_{year}_{month:02d}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/expenses/{expense_id}/edit", response_class=HTMLResponse)
def edit_expense_form(
    expense_id: int,
    request: Request,
    user_id: int = Depends(current_user_id),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, user_id).get_owned(expense_id)
    defaults = {
        "date": expense.date.isoformat(),
        "category": expense.category,
        "amount": format_amount(expense.amount_cents),
        "description": expense.description,
    }
    context = expense_form_context(session, defaults)
    context["expense"] = expense
    return render(request, session, "expenses/edit.html", context)


@app.post("/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    date: str = Form(""),
    category: str = Form(""),
    amount: str = Form(""),
    description: str = Form(""),
    csrf_token: str = Form(""),
    user_id: int = Depends(current_user_id),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    edit_url = f"/expenses/{expense_id}/edit"
    rejected = csrf_failure(session, csrf_token, "expense_update", edit_url)
    if rejected:
        return rejected
    result = ExpenseService(db, user_id).update(
        expense_id, try_parse_date(date), category, try_parse_amount(amount), description
    )
    if isinstance(result, Invalid):
        session.flash(
            "expense_form",
            {
                "values": {
                    "date": date,
                    "category": category,
                    "amount": amount,
                    "description": description,
                },
                "errors": result.messages(),
            },
        )
        return redirect(edit_url)
    return redirect("/expenses")


@app.post("/expenses/{expense_id}/delete")
def delete_expense(
    expense_id: int,
    csrf_token: str = Form(""),
    user_id: int = Depends(current_user_id),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    rejected = csrf_failure(session, csrf_token, "expense_delete", "/expenses")
    if rejected:
        return rejected
    description = ExpenseService(db, user_id).delete(expense_id)
    session.flash("expense_deleted", description)
    return redirect("/expenses")


@app.post("/expenses/import")
def import_expenses(
    csv_file: Optional[UploadFile] = File(None, alias="csv"),
    csrf_token: str = Form(""),
    user_id: int = Depends(current_user_id),
    session: SessionContext = Depends(get_session),
    db: Session = Depends(get_db),
):
    rejected = csrf_failure(session, csrf_token, "expense_import", "/expenses")
    if rejected:
        return rejected
    if csv_file is None or not csv_file.filename:
        logger.info(f"expense_import: user_id={user_id} no file uploaded")
        session.flash("import_error", "Choose a CSV file to import.")
        return redirect("/expenses")
    try:
        rows = ExpenseService(db, user_id).import_from_csv(csv_file.file)
    except (UnicodeDecodeError, csv.Error) as exc:
        logger.info(f"expense_import: user_id={user_id} unreadable file ({exc})")
        session.flash("import_error", "The uploaded file is not a readable CSV file.")
        return redirect("/expenses")
    session.flash("imported_rows", rows)
    return redirect("/expenses")
