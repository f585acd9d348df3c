"""Tests for the FastAPI service."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import viac_web.app as web_app
from tests.conftest import CORRECTION_ADVICE, FRENCH_STATEMENT, GERMAN_BUY_ADVICE, GERMAN_STATEMENT
from viac_model import ConfigError, Language, StatementType
from viac_web.app import build_user_index, create_app, parse_scope

ADMIN = {"Authorization": "Bearer admin-token"}
READER = {"Authorization": "Bearer reader-token"}
OTHER = {"Authorization": "Bearer other-token"}


def fake_read_pdf_text(path: Path):
    return [Path(path).read_text(encoding="utf-8")], "VIAC"


@pytest.fixture
def cfg(tmp_path: Path) -> dict:
    return {
        "database": {"sqlite_path": str(tmp_path / "app.db")},
        "storage": {"upload_dir": str(tmp_path / "uploads")},
        "converter": {"file_prefix": "VIAC"},
        "users": [
            {"username": "admin", "token": "admin-token", "role": "admin"},
            {
                "username": "reader",
                "token": "reader-token",
                "role": "user",
                "permissions": {"read": [{"type": "portfolio", "value": "1"}]},
            },
            {
                "username": "other",
                "token": "other-token",
                "role": "user",
                "permissions": {"read": [{"type": "portfolio", "value": "2"}]},
            },
        ],
    }


@pytest.fixture
def client(cfg, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setattr(web_app, "read_pdf_text", fake_read_pdf_text)
    return TestClient(create_app(cfg))


def upload(client: TestClient, text: str, name: str = "2023.pdf", headers=ADMIN):
    files = {"file": (name, text.encode("utf-8"), "application/pdf")}
    return client.post("/api/documents/upload", files=files, headers=headers)


class TestUserConfig:
    """Tests for token and permission parsing."""

    def test_unknown_rule_type(self) -> None:
        """Only portfolio rules are supported."""
        with pytest.raises(ConfigError):
            parse_scope([{"type": "isin", "value": "CH0123456789"}])

    def test_read_permission_required(self) -> None:
        """Non-admin users need a read scope."""
        with pytest.raises(ConfigError):
            build_user_index({"users": [{"username": "x", "token": "t", "role": "user", "permissions": {}}]})

    def test_tokens_indexed(self, cfg) -> None:
        """Users are keyed by token."""
        users = build_user_index(cfg)
        assert users["reader-token"].read_scope.portfolios == {"1"}
        assert users["admin-token"].role == "admin"


class TestAuth:
    """Tests for login and bearer tokens."""

    def test_health(self, client) -> None:
        """The health check needs no token."""
        assert client.get("/api/health").json() == {"ok": True}

    def test_login(self, client) -> None:
        """A known token logs in."""
        response = client.post("/api/login", json={"token": "reader-token"})
        assert response.status_code == 200
        assert response.json()["username"] == "reader"
        assert client.post("/api/login", json={"token": "nope"}).status_code == 401

    def test_me(self, client) -> None:
        """The current user sees their portfolio scope."""
        assert client.get("/api/me", headers=READER).json()["portfolios"] == ["1"]

    def test_missing_token(self, client) -> None:
        """Endpoints other than health and login need a token."""
        assert client.get("/api/documents").status_code == 401
        assert client.get("/api/documents", headers={"Authorization": "Bearer bad"}).status_code == 401


class TestUpload:
    """Tests for storing parsed documents."""

    def test_upload_statement(self, client) -> None:
        """A statement is parsed and stored."""
        response = upload(client, GERMAN_STATEMENT)
        assert response.status_code == 200
        body = response.json()
        assert body["language"] == Language.GERMAN.value
        assert body["statement_type"] == StatementType.ACCOUNT_STATEMENT.value
        assert body["portfolios"] == ["1"]
        assert body["transactions_count"] == 6
        assert body["errors"] == []

    def test_duplicate(self, client) -> None:
        """The same bytes cannot be uploaded twice."""
        first = upload(client, GERMAN_STATEMENT).json()["document_id"]
        response = upload(client, GERMAN_STATEMENT, name="copy.pdf")
        assert response.status_code == 409
        assert response.json()["detail"]["existing_document_id"] == first

    def test_unrecognized(self, client) -> None:
        """Unsupported documents are refused."""
        response = upload(client, CORRECTION_ADVICE)
        assert response.status_code == 400
        assert "parse failed" in response.json()["detail"]

    def test_unexpected_error_removes_file(self, client, cfg, monkeypatch) -> None:
        """A crash while parsing leaves no stored file behind."""
        def crashing(path: Path):
            raise RuntimeError("unexpected layout")

        monkeypatch.setattr(web_app, "read_pdf_text", crashing)
        assert upload(client, GERMAN_STATEMENT).status_code == 500
        assert list(Path(cfg["storage"]["upload_dir"]).iterdir()) == []

    def test_admin_only(self, client) -> None:
        """Readers cannot upload."""
        assert upload(client, GERMAN_STATEMENT, headers=READER).status_code == 403

    def test_pdf_only(self, client) -> None:
        """Other file types are refused."""
        assert upload(client, GERMAN_STATEMENT, name="statement.txt").status_code == 400


class TestRead:
    """Tests for listing, filtering and scopes."""

    @pytest.fixture(autouse=True)
    def stored(self, client) -> int:
        return upload(client, GERMAN_STATEMENT).json()["document_id"]

    def test_documents_visible_in_scope(self, client, stored) -> None:
        """Readers see documents of their portfolios only."""
        items = client.get("/api/documents", headers=READER).json()["items"]
        assert [item["id"] for item in items] == [stored]
        assert items[0]["can_view_pdf"] is True
        assert client.get("/api/documents", headers=OTHER).json()["total"] == 0
        assert client.get(f"/api/documents/{stored}", headers=OTHER).status_code == 403

    def test_document_detail(self, client, stored) -> None:
        """The detail lists transactions in document order."""
        body = client.get(f"/api/documents/{stored}", headers=ADMIN).json()
        kinds = [tx["kind"] for tx in body["transactions"]]
        assert kinds == ["DEPOSIT", "BUY", "DIVIDENDS", "FEES", "INTEREST", "SELL"]
        assert body["transactions"][1]["price"] == "100.00000"
        assert client.get("/api/documents/999", headers=ADMIN).status_code == 404

    def test_document_file(self, client, stored) -> None:
        """The stored PDF is returned unchanged."""
        response = client.get(f"/api/documents/{stored}/file", headers=READER)
        assert response.status_code == 200
        assert response.content == GERMAN_STATEMENT.encode("utf-8")
        assert client.get(f"/api/documents/{stored}/file", headers=OTHER).status_code == 403

    def test_transaction_filters(self, client) -> None:
        """Kind, ISIN, date and text filters narrow the list."""
        def items(**params):
            return client.get("/api/transactions", params=params, headers=READER).json()["items"]

        assert len(items()) == 6
        assert [tx["amount"] for tx in items(kind="DEPOSIT")] == ["1000.00000"]
        assert len(items(isin="ch0123456789")) == 3
        assert len(items(tx_date_from="2023-03-01", tx_date_to="2023-03-31")) == 3
        assert len(items(q="Zinsen")) == 1
        assert items(limit=2)[0]["date"] == "2023-06-15"

    def test_transaction_filter_errors(self, client) -> None:
        """Bad filter values are rejected."""
        def get(**params):
            return client.get("/api/transactions", params=params, headers=ADMIN)

        assert get(kind="SWAP").status_code == 400
        assert get(tx_date_from="31.03.2023").status_code == 400
        assert get(tx_date_from="2023-04-01", tx_date_to="2023-03-01").status_code == 400

    def test_transactions_out_of_scope(self, client) -> None:
        """Readers of other portfolios see nothing."""
        assert client.get("/api/transactions", headers=OTHER).json()["items"] == []


class TestExport:
    """Tests for the per-portfolio export."""

    def test_account_csv(self, client) -> None:
        """Cash rows are exported in date order."""
        upload(client, GERMAN_STATEMENT)
        response = client.get("/api/portfolios/1/export/account", headers=READER)
        assert response.status_code == 200
        assert response.headers["content-disposition"] == 'attachment; filename="VIAC_1_Account.csv"'
        assert response.text.splitlines() == [
            "Date,Kind,Amount,Currency",
            "2023-01-02,DEPOSIT,1000.00000,CHF",
            "2023-03-20,DIVIDENDS,12.50000,CHF",
            "2023-03-31,FEES,-1.25000,CHF",
            "2023-03-31,INTEREST,0.10000,CHF",
        ]

    def test_portfolio_csv_combines_documents(self, client) -> None:
        """Trades from several uploads are reconciled together."""
        upload(client, GERMAN_STATEMENT)
        upload(client, FRENCH_STATEMENT, name="releve.pdf")
        response = client.get("/api/portfolios/1/export/portfolio", headers=ADMIN)
        assert response.text.splitlines() == [
            "Date,ISIN,Quantity,Price,Currency",
            "2023-01-05,CH0123456789,10.00000,100.00000,CHF",
            "2023-01-05,CH0123456789,10.00000,100.00000,CHF",
            "2023-06-15,CH0123456789,-10.00000,110.00000,CHF",
            "2023-06-15,CH0123456789,-10.00000,110.00000,CHF",
        ]

    def test_securities_csv(self, client) -> None:
        """Each traded security is listed once."""
        upload(client, GERMAN_STATEMENT)
        response = client.get("/api/portfolios/1/export/securities", headers=ADMIN)
        assert response.text == "ISIN,Name,Currency\nCH0123456789,UBS ETF SPI,CHF\n"

    def test_export_errors(self, client) -> None:
        """Unknown tables and portfolios are 404, foreign ones 403."""
        upload(client, GERMAN_STATEMENT)
        assert client.get("/api/portfolios/1/export/ledger", headers=ADMIN).status_code == 404
        assert client.get("/api/portfolios/9/export/account", headers=ADMIN).status_code == 404
        assert client.get("/api/portfolios/1/export/account", headers=OTHER).status_code == 403

    def test_currencies_fixed_across_portfolios(self, client) -> None:
        """A trade conflicting with another portfolio's earlier trade is excluded, as in a batch run."""
        upload(client, GERMAN_BUY_ADVICE, name="p1.pdf")
        other = (
            GERMAN_BUY_ADVICE.replace("Portfolio 1", "Portfolio 2")
            .replace("CHF", "EUR")
            .replace("05.01.2023", "04.01.2023")
        )
        upload(client, other, name="p2.pdf")
        first = client.get("/api/portfolios/1/export/portfolio", headers=ADMIN)
        assert first.text == "Date,ISIN,Quantity,Price,Currency\n"
        second = client.get("/api/portfolios/2/export/securities", headers=ADMIN)
        assert second.text == "ISIN,Name,Currency\nCH0123456789,UBS ETF SPI,EUR\n"
