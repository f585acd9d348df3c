from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Set

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from pypdf.errors import PdfReadError
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, select, text
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from viac_config import ConverterConfig, load_config as load_converter_config
from viac_currency import ExchangeRateTable
from viac_model import (
    ConfigError,
    Kind,
    Language,
    Source,
    StatementType,
    Transaction,
    UnrecognizedDocument,
    decimal_to_text,
)
from viac_pipeline import convert_documents
from viac_portfolio import TABLE_NAMES, render_csv, safe_portfolio_name
from viac_statement_parser import ParsedDocument, parse_document, read_pdf_text


logger = logging.getLogger(__name__)

APP_DIR = Path(__file__).resolve().parent
REPO_ROOT = APP_DIR.parent
CONFIG_PATH = APP_DIR / "config.json"


class Base(DeclarativeBase):
    pass


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    stored_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    language: Mapped[str] = mapped_column(String(8), nullable=False)
    statement_type: Mapped[str] = mapped_column(String(32), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(128), nullable=False)
    portfolios_json: Mapped[str] = mapped_column(Text, nullable=False)
    errors_json: Mapped[str] = mapped_column(Text, nullable=False)
    lines_seen: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class StoredTransaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id"), index=True, nullable=False)
    portfolio: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    account_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    kind: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    tx_date: Mapped[str] = mapped_column(String(10), index=True, nullable=False)
    line_order: Mapped[int] = mapped_column(Integer, nullable=False)
    page: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # decimals are stored as text at working precision
    amount: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    isin: Mapped[Optional[str]] = mapped_column(String(12), index=True, nullable=True)
    security_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reported_quantity: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    price: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    trade_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    gross_amount: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    taxes: Mapped[str] = mapped_column(String(32), nullable=False)
    exchange_rate: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)


@dataclass(frozen=True)
class Scope:
    portfolios: Set[str]


@dataclass(frozen=True)
class User:
    username: str
    token: str
    role: str
    read_scope: Scope


class LoginRequest(BaseModel):
    token: str


def parse_scope(raw: Optional[list]) -> Scope:
    rules = raw or []
    if not isinstance(rules, list):
        raise ConfigError("permission scope must be a list of typed rules")

    portfolios: Set[str] = set()
    for rule in rules:
        if not isinstance(rule, dict):
            raise ConfigError("each permission rule must be an object")
        rule_type = str(rule.get("type", "")).strip()
        value = str(rule.get("value", "")).strip()
        if not rule_type or not value:
            continue
        if rule_type == "portfolio":
            portfolios.add(value)
        else:
            raise ConfigError(f"unsupported permission type: {rule_type}")
    return Scope(portfolios=portfolios)


def load_config() -> dict:
    if not CONFIG_PATH.exists():
        raise ConfigError(f"Missing config file: {CONFIG_PATH}")
    return json.loads(CONFIG_PATH.read_text(encoding="utf-8"))


def build_user_index(cfg: dict) -> Dict[str, User]:
    users: Dict[str, User] = {}
    for raw in cfg.get("users", []):
        token = str(raw.get("token", "")).strip()
        if not token:
            continue
        role = str(raw.get("role", "user")).strip().lower()
        perms = raw.get("permissions", {}) if role != "admin" else {}
        if role != "admin" and not isinstance(perms, dict):
            raise ConfigError("permissions must be an object")
        if role != "admin" and "read" not in perms:
            raise ConfigError("permissions.read is required for non-admin users")
        users[token] = User(
            username=str(raw.get("username", "unknown")),
            token=token,
            role=role,
            read_scope=parse_scope(perms.get("read")),
        )
    return users


def build_converter_config(cfg: dict) -> ConverterConfig:
    section = dict(cfg.get("converter", {}))
    if section.get("rates_path"):
        section["rates_path"] = resolve_path(section["rates_path"])
    # the service ignores VIAC_* variables; config.json is its only source
    return load_converter_config(env={}, **section)


def resolve_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = REPO_ROOT / path
    return path


def document_portfolios(doc: Document) -> Set[str]:
    return set(json.loads(doc.portfolios_json))


def can_see_document(user: User, doc: Document) -> bool:
    if user.role == "admin":
        return True
    return bool(document_portfolios(doc).intersection(user.read_scope.portfolios))


def has_full_document_access(user: User, doc: Document) -> bool:
    if user.role == "admin":
        return True
    return document_portfolios(doc) <= user.read_scope.portfolios


def can_read_portfolio(user: User, portfolio: str) -> bool:
    return user.role == "admin" or portfolio in user.read_scope.portfolios


def ensure_admin(user: User) -> None:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin permission required")


def parse_iso_date_or_400(raw: str, field_name: str) -> str:
    value = (raw or "").strip()
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid {field_name}, expected YYYY-MM-DD")
    return parsed.isoformat()


def apply_transaction_read_scope(stmt, user: User):
    if user.role == "admin":
        return stmt
    if not user.read_scope.portfolios:
        return stmt.where(text("1 = 0"))
    return stmt.where(StoredTransaction.portfolio.in_(user.read_scope.portfolios))


def _text(value: Optional[Decimal]) -> Optional[str]:
    return decimal_to_text(value) if value is not None else None


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def to_row(document_id: int, tx: Transaction) -> StoredTransaction:
    source = tx.source or Source(path="")
    return StoredTransaction(
        document_id=document_id,
        portfolio=tx.portfolio,
        account_number=tx.account_number,
        kind=tx.kind.value,
        tx_date=tx.date.isoformat(),
        line_order=tx.order[1],
        page=source.page,
        line_no=source.line,
        description=tx.description,
        amount=decimal_to_text(tx.amount),
        currency=tx.currency,
        isin=tx.isin,
        security_name=tx.security_name,
        quantity=_text(tx.quantity),
        reported_quantity=_text(tx.reported_quantity),
        price=_text(tx.price),
        trade_currency=tx.trade_currency,
        gross_amount=_text(tx.gross_amount),
        taxes=decimal_to_text(tx.taxes),
        exchange_rate=format(tx.exchange_rate, "f") if tx.exchange_rate is not None else None,
    )


def from_row(row: StoredTransaction, doc: Document) -> Transaction:
    return Transaction(
        kind=Kind(row.kind),
        date=date.fromisoformat(row.tx_date),
        portfolio=row.portfolio,
        amount=Decimal(row.amount),
        currency=row.currency,
        language=Language(doc.language),
        isin=row.isin,
        security_name=row.security_name,
        quantity=_decimal(row.quantity),
        reported_quantity=_decimal(row.reported_quantity),
        price=_decimal(row.price),
        trade_currency=row.trade_currency,
        gross_amount=_decimal(row.gross_amount),
        taxes=Decimal(row.taxes),
        exchange_rate=_decimal(row.exchange_rate),
        account_number=row.account_number,
        description=row.description,
        source=Source(path=doc.stored_path, page=row.page, line=row.line_no),
        order=(doc.id, row.line_order),
    )


def serialize_transaction(row: StoredTransaction) -> dict:
    return {
        "id": row.id,
        "document_id": row.document_id,
        "portfolio": row.portfolio,
        "account_number": row.account_number,
        "kind": row.kind,
        "order_type": Kind(row.kind).order_type,
        "date": row.tx_date,
        "description": row.description,
        "amount": row.amount,
        "currency": row.currency,
        "isin": row.isin,
        "security_name": row.security_name,
        "quantity": row.quantity,
        "reported_quantity": row.reported_quantity,
        "price": row.price,
        "trade_currency": row.trade_currency,
        "gross_amount": row.gross_amount,
        "taxes": row.taxes,
        "exchange_rate": row.exchange_rate,
        "page": row.page,
        "line": row.line_no,
    }


def serialize_document(doc: Document) -> dict:
    return {
        "id": doc.id,
        "original_filename": doc.original_filename,
        "language": doc.language,
        "statement_type": doc.statement_type,
        "portfolios": sorted(document_portfolios(doc)),
        "uploaded_at": doc.uploaded_at.isoformat(),
        "uploaded_by": doc.uploaded_by,
    }


def create_app(cfg: Optional[dict] = None) -> FastAPI:
    if cfg is None:
        cfg = load_config()

    db_path = resolve_path(cfg.get("database", {}).get("sqlite_path", "viac_web/data/app.db"))
    db_path.parent.mkdir(parents=True, exist_ok=True)

    upload_dir = resolve_path(cfg.get("storage", {}).get("upload_dir", "viac_web/data/uploads"))
    upload_dir.mkdir(parents=True, exist_ok=True)

    converter = build_converter_config(cfg)
    rates: Optional[ExchangeRateTable] = None
    if converter.rates_path is not None:
        rates = ExchangeRateTable.load(converter.rates_path)

    engine = create_engine(f"sqlite+pysqlite:///{db_path}", future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(engine)

    user_index = build_user_index(cfg)

    app = FastAPI(title="VIAC Statement Converter API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    bearer = HTTPBearer(auto_error=False)

    def get_db() -> Session:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(bearer),
    ) -> User:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="missing bearer token")
        token = credentials.credentials.strip()
        user = user_index.get(token)
        if user is None:
            raise HTTPException(status_code=401, detail="invalid token")
        return user

    @app.get("/api/health")
    def health() -> dict:
        return {"ok": True}

    @app.post("/api/login")
    def login(payload: LoginRequest) -> dict:
        token = payload.token.strip()
        user = user_index.get(token)
        if not user:
            raise HTTPException(status_code=401, detail="invalid token")
        return {
            "username": user.username,
            "role": user.role,
            "token": user.token,
        }

    @app.get("/api/me")
    def me(user: User = Depends(get_current_user)) -> dict:
        return {
            "username": user.username,
            "role": user.role,
            "portfolios": sorted(user.read_scope.portfolios),
        }

    @app.post("/api/documents/upload")
    async def upload_document(
        file: UploadFile = File(...),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        ensure_admin(user)

        if not file.filename or not file.filename.lower().endswith(".pdf"):
            raise HTTPException(status_code=400, detail="only PDF is supported")

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        stored_path = upload_dir / f"{stamp}_{os.path.basename(file.filename)}"

        digest = hashlib.sha256()
        with stored_path.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                digest.update(chunk)
                out.write(chunk)
        sha256 = digest.hexdigest()

        existing = db.scalars(select(Document).where(Document.sha256 == sha256)).first()
        if existing is not None:
            stored_path.unlink(missing_ok=True)
            raise HTTPException(
                status_code=409,
                detail={
                    "message": "duplicate document detected",
                    "existing_document_id": existing.id,
                    "original_filename": existing.original_filename,
                },
            )

        try:
            pages, author = read_pdf_text(stored_path)
            parsed = parse_document(pages, path=str(stored_path), author=author)
        except (UnrecognizedDocument, PdfReadError) as e:
            stored_path.unlink(missing_ok=True)
            raise HTTPException(status_code=400, detail=f"parse failed: {e}")
        except Exception:
            stored_path.unlink(missing_ok=True)
            logger.exception("Parsing failed on upload %s", file.filename)
            raise HTTPException(status_code=500, detail="parse failed")
        if not parsed.transactions:
            stored_path.unlink(missing_ok=True)
            raise HTTPException(
                status_code=400,
                detail={
                    "message": "no transaction could be parsed",
                    "errors": [str(err) for err in parsed.errors],
                },
            )

        portfolios = sorted({tx.portfolio for tx in parsed.transactions})
        doc = Document(
            original_filename=file.filename,
            stored_path=str(stored_path),
            sha256=sha256,
            language=parsed.language.value,
            statement_type=parsed.statement_type.value,
            uploaded_at=datetime.now(timezone.utc),
            uploaded_by=user.username,
            portfolios_json=json.dumps(portfolios),
            errors_json=json.dumps([str(err) for err in parsed.errors], ensure_ascii=False),
            lines_seen=parsed.lines_seen,
        )
        db.add(doc)
        db.flush()
        for tx in parsed.transactions:
            db.add(to_row(doc.id, tx))
        db.commit()
        logger.info("Stored %s transactions from %s as document %s", len(parsed.transactions), file.filename, doc.id)

        return {
            "document_id": doc.id,
            "language": doc.language,
            "statement_type": doc.statement_type,
            "portfolios": portfolios,
            "transactions_count": len(parsed.transactions),
            "errors": json.loads(doc.errors_json),
        }

    @app.get("/api/documents")
    def list_documents(
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        rows = db.scalars(select(Document).order_by(Document.id.desc())).all()
        visible: List[dict] = []
        for doc in rows:
            if not can_see_document(user, doc):
                continue
            item = serialize_document(doc)
            item["can_view_pdf"] = has_full_document_access(user, doc)
            visible.append(item)

        total = len(visible)
        items = visible[offset : offset + limit]
        returned = len(items)
        return {
            "items": items,
            "offset": offset,
            "limit": limit,
            "returned": returned,
            "total": total,
            "has_more": offset + returned < total,
        }

    @app.get("/api/documents/{document_id}")
    def get_document(
        document_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        doc = db.get(Document, document_id)
        if not doc:
            raise HTTPException(status_code=404, detail="document not found")
        if not can_see_document(user, doc):
            raise HTTPException(status_code=403, detail="forbidden")

        stmt = select(StoredTransaction).where(StoredTransaction.document_id == document_id)
        stmt = apply_transaction_read_scope(stmt, user).order_by(StoredTransaction.line_order)
        item = serialize_document(doc)
        item["lines_seen"] = doc.lines_seen
        item["errors"] = json.loads(doc.errors_json) if has_full_document_access(user, doc) else []
        item["transactions"] = [serialize_transaction(row) for row in db.scalars(stmt).all()]
        return item

    @app.get("/api/documents/{document_id}/file")
    def get_document_file(
        document_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> FileResponse:
        doc = db.get(Document, document_id)
        if not doc:
            raise HTTPException(status_code=404, detail="document not found")
        if not has_full_document_access(user, doc):
            raise HTTPException(status_code=403, detail="forbidden")
        path = Path(doc.stored_path)
        if not path.exists():
            raise HTTPException(status_code=404, detail="file not found")
        return FileResponse(path=str(path), filename=doc.original_filename, media_type="application/pdf")

    @app.get("/api/transactions")
    def list_transactions(
        document_id: Optional[int] = Query(default=None),
        portfolio: Optional[str] = Query(default=None),
        isin: Optional[str] = Query(default=None),
        kind: Optional[str] = Query(default=None),
        tx_date_from: Optional[str] = Query(default=None),
        tx_date_to: Optional[str] = Query(default=None),
        q: Optional[str] = Query(default=None),
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        stmt = select(StoredTransaction).order_by(StoredTransaction.tx_date.desc(), StoredTransaction.id.desc())

        date_from: Optional[str] = None
        date_to: Optional[str] = None
        if tx_date_from:
            date_from = parse_iso_date_or_400(tx_date_from, "tx_date_from")
        if tx_date_to:
            date_to = parse_iso_date_or_400(tx_date_to, "tx_date_to")
        if date_from and date_to and date_from > date_to:
            raise HTTPException(status_code=400, detail="tx_date_from must be <= tx_date_to")
        if kind and kind not in {k.value for k in Kind}:
            raise HTTPException(status_code=400, detail=f"invalid kind: {kind}")

        stmt = apply_transaction_read_scope(stmt, user)

        if document_id is not None:
            stmt = stmt.where(StoredTransaction.document_id == document_id)
        if portfolio:
            stmt = stmt.where(StoredTransaction.portfolio == portfolio)
        if isin:
            stmt = stmt.where(StoredTransaction.isin == isin.strip().upper())
        if kind:
            stmt = stmt.where(StoredTransaction.kind == kind)
        if date_from:
            stmt = stmt.where(StoredTransaction.tx_date >= date_from)
        if date_to:
            stmt = stmt.where(StoredTransaction.tx_date <= date_to)
        if q:
            stmt = stmt.where(StoredTransaction.description.ilike(f"%{q}%"))

        rows = db.scalars(stmt.offset(offset).limit(limit + 1)).all()
        has_more = len(rows) > limit
        rows = rows[:limit]
        out = [serialize_transaction(row) for row in rows]
        return {
            "items": out,
            "offset": offset,
            "limit": limit,
            "returned": len(out),
            "has_more": has_more,
        }

    @app.get("/api/portfolios/{portfolio}/export/{table}")
    def export_portfolio(
        portfolio: str,
        table: str,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> Response:
        if table not in TABLE_NAMES:
            raise HTTPException(status_code=404, detail=f"unknown table: {table}")
        if not can_read_portfolio(user, portfolio):
            raise HTTPException(status_code=403, detail="forbidden")

        # security currencies are fixed across every portfolio, as in a batch run
        rows = db.execute(
            select(StoredTransaction, Document)
            .join(Document, StoredTransaction.document_id == Document.id)
            .order_by(Document.id, StoredTransaction.line_order)
        ).all()
        if not any(row.portfolio == portfolio for row, _doc in rows):
            raise HTTPException(status_code=404, detail="portfolio not found")

        documents: Dict[int, ParsedDocument] = {}
        for row, doc in rows:
            parsed = documents.get(doc.id)
            if parsed is None:
                parsed = documents[doc.id] = ParsedDocument(
                    path=doc.stored_path,
                    language=Language(doc.language),
                    statement_type=StatementType(doc.statement_type),
                )
            parsed.transactions.append(from_row(row, doc))

        result = convert_documents(list(documents.values()), converter, rates)
        tables = result.tables.get(portfolio)
        if tables is None:
            raise HTTPException(status_code=404, detail="portfolio not found")
        columns, cells = tables.table(table)
        filename = f"{converter.file_prefix}_{safe_portfolio_name(portfolio)}_{TABLE_NAMES[table]}.csv"
        headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
        if result.warnings:
            headers["X-Conversion-Warnings"] = str(len(result.warnings))
        return Response(content=render_csv(columns, cells), media_type="text/csv", headers=headers)

    return app
