"""Batch conversion of a directory of VIAC PDFs.

Documents are parsed independently (optionally in a process pool); currency
resolution, share reconciliation and aggregation run once over the complete
history afterwards.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from pypdf.errors import PdfReadError

from viac_config import ConverterConfig
from viac_currency import CurrencyResolver, ExchangeRateTable
from viac_model import ConfigError, RunWarning, Transaction, UnrecognizedDocument
from viac_portfolio import PortfolioTables, aggregate, write_tables
from viac_reconcile import ShareReconciler
from viac_statement_parser import ParsedDocument, parse_statement


logger = logging.getLogger(__name__)

PARSED = "parsed"
PARTIAL = "partial"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class DocumentReport:
    path: str
    status: str
    language: Optional[str] = None
    statement_type: Optional[str] = None
    transactions: int = 0
    lines_seen: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "status": self.status,
            "language": self.language,
            "statement_type": self.statement_type,
            "transactions": self.transactions,
            "lines_seen": self.lines_seen,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class RunSummary:
    documents: List[DocumentReport] = field(default_factory=list)
    warnings: List[RunWarning] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for doc in self.documents if doc.status == status)

    @property
    def lines_failed(self) -> int:
        return sum(len(doc.errors) for doc in self.documents if doc.status == PARTIAL)

    @property
    def all_failed(self) -> bool:
        return bool(self.documents) and not any(doc.status in (PARSED, PARTIAL) for doc in self.documents)

    def warning_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for warning in self.warnings:
            counts[warning.code] = counts.get(warning.code, 0) + 1
        return dict(sorted(counts.items()))

    def render(self) -> str:
        lines = [
            f"Documents: {len(self.documents)} "
            f"(parsed {self.count(PARSED)}, partial {self.count(PARTIAL)}, "
            f"skipped {self.count(SKIPPED)}, failed {self.count(FAILED)})",
            f"Transactions: {sum(doc.transactions for doc in self.documents)}, "
            f"unparseable lines: {self.lines_failed}",
        ]
        if self.warnings:
            counts = ", ".join(f"{code} {n}" for code, n in self.warning_counts().items())
            lines.append(f"Warnings: {counts}")
        for doc in self.documents:
            if doc.status == PARSED:
                continue
            lines.append(f"  [{doc.status}] {doc.path}")
            for error in doc.errors:
                lines.append(f"      {error}")
        for warning in self.warnings:
            lines.append(f"  {warning}")
        if self.outputs:
            lines.append(f"Wrote {len(self.outputs)} files")
        return "\n".join(lines)

    def to_json(self) -> str:
        payload = {
            "documents": [doc.to_dict() for doc in self.documents],
            "counts": {
                PARSED: self.count(PARSED),
                PARTIAL: self.count(PARTIAL),
                SKIPPED: self.count(SKIPPED),
                FAILED: self.count(FAILED),
            },
            "warnings": [
                {
                    "code": warning.code,
                    "message": warning.message,
                    "portfolio": warning.portfolio,
                    "isin": warning.isin,
                    "source": warning.source,
                }
                for warning in self.warnings
            ],
            "outputs": list(self.outputs),
        }
        return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"


@dataclass
class ParseOutcome:
    index: int
    path: str
    document: Optional[ParsedDocument] = None
    status: str = PARSED
    error: Optional[str] = None


@dataclass
class ConversionResult:
    tables: Dict[str, PortfolioTables]
    warnings: List[RunWarning]
    conflicts: Dict[str, str]
    rejected: Dict[str, List[str]]


def discover_pdfs(input_dir: Path) -> List[Path]:
    if not input_dir.is_dir():
        raise ConfigError(f"Input directory not found: {input_dir}")
    try:
        found = [path for path in input_dir.rglob("*") if path.is_file() and path.suffix.lower() == ".pdf"]
    except OSError as exc:
        raise ConfigError(f"Cannot read input directory {input_dir}: {exc}") from exc
    return sorted(found)


def parse_pdf_file(path: Path, index: int = 0) -> ParseOutcome:
    """Worker entry point: never raises for document-level problems."""
    try:
        document = parse_statement(path, doc_index=index)
    except UnrecognizedDocument as exc:
        logger.warning("Skipping %s: %s", path, exc)
        return ParseOutcome(index=index, path=str(path), status=SKIPPED, error=str(exc))
    except (PdfReadError, OSError) as exc:
        logger.error("Cannot read %s: %s", path, exc)
        return ParseOutcome(index=index, path=str(path), status=FAILED, error=f"Cannot read PDF: {exc}")
    except Exception as exc:
        logger.exception("Parsing failed on %s", path)
        return ParseOutcome(index=index, path=str(path), status=FAILED, error=str(exc))
    return ParseOutcome(index=index, path=str(path), document=document)


def _parse_job(job: Tuple[Path, int]) -> ParseOutcome:
    path, index = job
    return parse_pdf_file(path, index)


def parse_all(paths: Sequence[Path], workers: int) -> List[ParseOutcome]:
    """Parse every PDF; results come back in submission order."""
    jobs = [(path, index) for index, path in enumerate(paths)]
    if workers <= 1 or len(jobs) <= 1:
        return [_parse_job(job) for job in jobs]

    outcomes: Dict[int, ParseOutcome] = {}
    with ProcessPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(_parse_job, job): job for job in jobs}
        for fut in as_completed(futures):
            path, index = futures[fut]
            try:
                outcomes[index] = fut.result()
            except Exception as exc:
                logger.exception("Worker failed on %s", path)
                outcomes[index] = ParseOutcome(index=index, path=str(path), status=FAILED, error=str(exc))
    return [outcomes[index] for index in range(len(jobs))]


def convert_documents(
    documents: Sequence[ParsedDocument],
    config: ConverterConfig,
    rates: Optional[ExchangeRateTable] = None,
) -> ConversionResult:
    """Resolve currencies, reconcile quantities, convert and aggregate."""
    resolver = CurrencyResolver(config.target_currency, rates, config.isin_currency)
    conflicts = resolver.register([(doc.path, doc.transactions) for doc in documents])

    portfolio_ids: List[str] = []
    accepted: List[Transaction] = []
    for doc in documents:
        for tx in doc.transactions:
            if tx.portfolio not in portfolio_ids:
                portfolio_ids.append(tx.portfolio)
        if doc.path not in conflicts:
            accepted.extend(doc.transactions)

    reconciler = ShareReconciler(
        enabled=config.share_adjustment_enabled,
        clamp_oversized_sales=config.clamp_oversized_sales,
        dust_threshold=config.dust_threshold,
    )
    reconciled = reconciler.reconcile(accepted)
    rejected: Dict[str, List[str]] = {}
    for tx, exc in reconciled.rejected:
        key = tx.source.path if tx.source is not None else "<unknown>"
        rejected.setdefault(key, []).append(str(exc))

    converted, conversion_warnings = resolver.convert_all(reconciled.transactions)
    tables, aggregate_warnings = aggregate(portfolio_ids, converted, resolver.securities)
    return ConversionResult(
        tables=tables,
        warnings=reconciled.warnings + conversion_warnings + aggregate_warnings,
        conflicts={path: str(exc) for path, exc in conflicts.items()},
        rejected=rejected,
    )


def _from_document(warning: RunWarning, path: str) -> bool:
    return warning.source is not None and (warning.source == path or warning.source.startswith(path + " "))


def _report(outcome: ParseOutcome, result: Optional[ConversionResult]) -> DocumentReport:
    if outcome.document is None:
        return DocumentReport(path=outcome.path, status=outcome.status, errors=[outcome.error or ""])

    doc = outcome.document
    report = DocumentReport(
        path=doc.path,
        status=PARSED,
        language=doc.language.value,
        statement_type=doc.statement_type.value,
        transactions=len(doc.transactions),
        lines_seen=doc.lines_seen,
        errors=[str(err) for err in doc.errors],
    )
    if result is not None:
        if doc.path in result.conflicts:
            report.errors.append(result.conflicts[doc.path])
            report.transactions = 0
            report.status = FAILED
            return report
        report.errors.extend(result.rejected.get(doc.path, []))
        report.transactions -= len(result.rejected.get(doc.path, []))
        report.warnings = [str(w) for w in result.warnings if _from_document(w, doc.path)]
    if report.errors:
        report.status = PARTIAL if report.transactions > 0 else FAILED
    return report


def run(config: ConverterConfig, input_dir: Path) -> RunSummary:
    """Convert every PDF below ``input_dir``; raises ``ConfigError`` on run-level failures."""
    rates: Optional[ExchangeRateTable] = None
    if config.target_currency is not None and config.rates_path is None:
        raise ConfigError("Converting to a target currency needs an exchange-rate table")
    if config.rates_path is not None:
        rates = ExchangeRateTable.load(config.rates_path)

    paths = discover_pdfs(input_dir)
    summary = RunSummary()
    written: List[Path] = []
    if paths:
        logger.info("Parsing %s PDF files from %s", len(paths), input_dir)
        outcomes = parse_all(paths, config.worker_count)
        documents = [outcome.document for outcome in outcomes if outcome.document is not None]
        result = convert_documents(documents, config, rates)
        summary.documents = [_report(outcome, result) for outcome in outcomes]
        summary.warnings = list(result.warnings)
        written = write_tables(result.tables, config.output_dir, config.file_prefix, config.output_format)
    else:
        logger.warning("No PDF files found in %s", input_dir)
        config.output_dir.mkdir(parents=True, exist_ok=True)
    summary_path = config.output_dir / f"{config.file_prefix}_summary.json"
    summary.outputs = [str(path) for path in written] + [str(summary_path)]
    summary_path.write_text(summary.to_json(), encoding="utf-8")
    logger.info("Summary written to %s", summary_path)
    return summary
