import re

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from main import app
from models import Expense
from validation import ERROR_AMOUNT, ERROR_AMOUNT_TOO_LARGE, ERROR_CATEGORY

TOKEN_PATTERN = re.compile(r'name="csrf_token" value="([^"]+)"')


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield factory
    app.dependency_overrides.clear()
    engine.dispose()


def _client() -> TestClient:
    return TestClient(app)


def _token(client: TestClient, path: str) -> str:
    response = client.get(path, follow_redirects=False)
    assert response.status_code == 200
    match = TOKEN_PATTERN.search(response.text)
    assert match is not None
    return match.group(1)


def _sign_up(client: TestClient, username: str, password: str = "s3cretpass") -> None:
    response = client.post(
        "/register",
        data={
            "username": username,
            "password": password,
            "password_confirm": password,
            "csrf_token": _token(client, "/register"),
        },
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert response.headers["location"] == "/login"

    response = client.post(
        "/login",
        data={
            "username": username,
            "password": password,
            "csrf_token": _token(client, "/login"),
        },
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert response.headers["location"] == "/"


def _expense_count(factory) -> int:
    with factory() as db:
        return db.execute(select(func.count(Expense.id))).scalar_one()


def test_pages_require_login(session_factory) -> None:
    client = _client()
    for path in ("/", "/expenses", "/expenses/create", "/expenses/export.csv"):
        response = client.get(path, follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/login"


def test_wrong_password_shows_generic_message(session_factory) -> None:
    client = _client()
    _sign_up(client, "alice")
    client.post("/logout", data={"csrf_token": _token(client, "/")})

    response = client.post(
        "/login",
        data={
            "username": "alice",
            "password": "wr0ngpass",
            "csrf_token": _token(client, "/login"),
        },
    )
    assert response.status_code == 200
    assert "Invalid username or password" in response.text


def test_create_and_list_expense(session_factory) -> None:
    client = _client()
    _sign_up(client, "alice")

    response = client.post(
        "/expenses",
        data={
            "date": "2024-03-05",
            "category": "Food",
            "amount": "12.50",
            "description": "Groceries",
            "csrf_token": _token(client, "/expenses/create"),
        },
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert response.headers["location"] == "/expenses"

    listing = client.get("/expenses", params={"year": 2024, "month": 3})
    assert listing.status_code == 200
    assert "Groceries" in listing.text
    assert "12.50" in listing.text

    export = client.get("/expenses/export.csv", params={"year": 2024, "month": 3})
    assert export.status_code == 200
    assert export.text.strip() == "2024-03-05,12.50,Groceries,Food"


def test_invalid_expense_is_redirected_back_with_errors(session_factory) -> None:
    client = _client()
    _sign_up(client, "alice")

    response = client.post(
        "/expenses",
        data={
            "date": "2024-03-05",
            "category": "Select a category",
            "amount": "-3",
            "description": "",
            "csrf_token": _token(client, "/expenses/create"),
        },
    )
    assert response.status_code == 200
    assert ERROR_CATEGORY in response.text
    assert ERROR_AMOUNT in response.text
    assert _expense_count(session_factory) == 0


def test_forged_csrf_token_changes_nothing(session_factory) -> None:
    client = _client()
    _sign_up(client, "alice")
    _token(client, "/expenses/create")

    response = client.post(
        "/expenses",
        data={
            "date": "2024-03-05",
            "category": "Food",
            "amount": "12.50",
            "description": "Groceries",
            "csrf_token": "forged",
        },
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert response.headers["location"] == "/expenses/create"
    assert _expense_count(session_factory) == 0


def test_import_csv_upload(session_factory) -> None:
    client = _client()
    _sign_up(client, "alice")
    content = (
        "2024-03-01,12.50,Groceries,Food\n"
        "2024-03-02,2.80,Bus,Transport\n"
        "2024-03-02,2.80,Bus,Transport\n"
        "2024-03-03,20,Cinema,Hobbies\n"
    )

    response = client.post(
        "/expenses/import",
        data={"csrf_token": _token(client, "/expenses")},
        files={"csv": ("march.csv", content.encode("utf-8"), "text/csv")},
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert _expense_count(session_factory) == 2

    listing = client.get("/expenses", params={"year": 2024, "month": 3})
    assert "Imported 2 rows." in listing.text


def test_other_users_expense_is_forbidden(session_factory) -> None:
    owner = _client()
    _sign_up(owner, "alice")
    owner.post(
        "/expenses",
        data={
            "date": "2024-03-05",
            "category": "Food",
            "amount": "12.50",
            "description": "Groceries",
            "csrf_token": _token(owner, "/expenses/create"),
        },
    )
    with session_factory() as db:
        expense_id = db.scalar(select(Expense.id))

    intruder = _client()
    _sign_up(intruder, "mallory")
    assert intruder.get(f"/expenses/{expense_id}/edit").status_code == 403
    assert intruder.get("/expenses/9999/edit").status_code == 404

    response = intruder.post(
        f"/expenses/{expense_id}/delete",
        data={"csrf_token": _token(intruder, "/expenses")},
    )
    assert response.status_code == 403
    assert _expense_count(session_factory) == 1


def test_delete_own_expense(session_factory) -> None:
    client = _client()
    _sign_up(client, "alice")
    client.post(
        "/expenses",
        data={
            "date": "2024-03-05",
            "category": "Food",
            "amount": "12.50",
            "description": "Groceries",
            "csrf_token": _token(client, "/expenses/create"),
        },
    )
    with session_factory() as db:
        expense_id = db.scalar(select(Expense.id))

    response = client.post(
        f"/expenses/{expense_id}/delete",
        data={"csrf_token": _token(client, "/expenses")},
        follow_redirects=False,
    )
    assert response.status_code == 303
    assert _expense_count(session_factory) == 0


@pytest.mark.parametrize(
    "amount, message",
    [("1e30", ERROR_AMOUNT), ("100000000000000000", ERROR_AMOUNT_TOO_LARGE)],
)
def test_huge_amount_is_a_form_error(session_factory, amount: str, message: str) -> None:
    client = _client()
    _sign_up(client, "alice")

    response = client.post(
        "/expenses",
        data={
            "date": "2024-03-05",
            "category": "Food",
            "amount": amount,
            "description": "Yacht",
            "csrf_token": _token(client, "/expenses/create"),
        },
    )
    assert response.status_code == 200
    assert message in response.text
    assert _expense_count(session_factory) == 0
