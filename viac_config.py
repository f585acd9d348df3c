"""Converter configuration and logging setup.

Values come from dataclass defaults, then ``VIAC_*`` environment variables
(a ``.env`` file is loaded first), then explicit overrides from the CLI.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from viac_model import ConfigError


CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
ISIN_RE = re.compile(r"^[A-Z]{2}[A-Z0-9]{9}\d$")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

ENV_VARS = {
    "share_adjustment_enabled": "VIAC_SHARE_ADJUSTMENT",
    "target_currency": "VIAC_TARGET_CURRENCY",
    "rates_path": "VIAC_RATES_PATH",
    "clamp_oversized_sales": "VIAC_CLAMP_SALES",
    "dust_threshold": "VIAC_DUST_THRESHOLD",
    "jobs": "VIAC_JOBS",
    "output_dir": "VIAC_OUTPUT_DIR",
    "output_format": "VIAC_OUTPUT_FORMAT",
    "file_prefix": "VIAC_FILE_PREFIX",
    "log_level": "VIAC_LOG_LEVEL",
    "isin_currency": "VIAC_ISIN_CURRENCY",
}


@dataclass(frozen=True)
class ConverterConfig:
    share_adjustment_enabled: bool = True
    target_currency: Optional[str] = None
    rates_path: Optional[Path] = None
    clamp_oversized_sales: bool = True
    dust_threshold: Decimal = Decimal("0.00010")
    jobs: int = 0
    output_dir: Path = Path(".")
    output_format: str = "csv"
    file_prefix: str = "VIAC"
    log_level: str = "INFO"
    isin_currency: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> "ConverterConfig":
        if self.target_currency is not None and not CURRENCY_RE.match(self.target_currency):
            raise ConfigError(f"Invalid target currency: {self.target_currency!r}")
        if self.target_currency is not None and self.rates_path is None:
            raise ConfigError("Converting to a target currency needs an exchange-rate table (rates_path)")
        if self.dust_threshold < 0:
            raise ConfigError(f"Dust threshold must not be negative: {self.dust_threshold}")
        if self.jobs < 0:
            raise ConfigError(f"Worker count must not be negative: {self.jobs}")
        if self.output_format not in ("csv", "json"):
            raise ConfigError(f"Unsupported output format: {self.output_format!r}")
        if not self.file_prefix:
            raise ConfigError("File prefix must not be empty")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"Unknown log level: {self.log_level!r}")
        for isin, currency in self.isin_currency.items():
            if not ISIN_RE.match(isin):
                raise ConfigError(f"Invalid ISIN in currency override: {isin!r}")
            if not CURRENCY_RE.match(currency):
                raise ConfigError(f"Invalid currency for {isin}: {currency!r}")
        return self

    @property
    def worker_count(self) -> int:
        return self.jobs or os.cpu_count() or 1


def parse_bool(raw: str, name: str) -> bool:
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {raw!r}")


def parse_isin_currency(raw: Any, source: str) -> Dict[str, str]:
    """Accept ``ISIN=CCY`` pairs as a comma separated string, a list or a mapping."""
    pairs: List[Tuple[str, str]]
    if isinstance(raw, Mapping):
        pairs = [(str(key), str(value)) for key, value in raw.items()]
    else:
        items = raw.split(",") if isinstance(raw, str) else list(raw)
        pairs = []
        for item in items:
            text = str(item).strip()
            if not text:
                continue
            isin, sep, currency = text.partition("=")
            if not sep:
                raise ConfigError(f"Expected ISIN=CCY in {source}: {text!r}")
            pairs.append((isin, currency))
    return {isin.strip().upper(): currency.strip().upper() for isin, currency in pairs}


def _coerce(name: str, raw: Any, source: str) -> Any:
    if raw is None:
        return None
    if name == "isin_currency":
        return parse_isin_currency(raw, source)
    if name in ("share_adjustment_enabled", "clamp_oversized_sales"):
        return raw if isinstance(raw, bool) else parse_bool(str(raw), source)
    if name == "target_currency":
        text = str(raw).strip().upper()
        return text or None
    if name in ("rates_path", "output_dir"):
        return Path(raw)
    if name == "dust_threshold":
        try:
            return Decimal(str(raw).strip())
        except InvalidOperation:
            raise ConfigError(f"Invalid decimal for {source}: {raw!r}")
    if name == "jobs":
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid integer for {source}: {raw!r}")
    if name in ("output_format", "log_level"):
        text = str(raw).strip()
        return text.upper() if name == "log_level" else text.lower()
    return str(raw)


def load_config(
    env: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
    **overrides: Any,
) -> ConverterConfig:
    """Build a validated config; ``None`` overrides are ignored."""
    if env is None:
        if use_dotenv:
            load_dotenv()
        env = os.environ

    known = {f.name for f in fields(ConverterConfig)}
    values: Dict[str, Any] = {}
    for name, var in ENV_VARS.items():
        raw = env.get(var)
        if raw is not None and raw.strip() != "":
            values[name] = _coerce(name, raw, var)
    for name, raw in overrides.items():
        if name not in known:
            raise ConfigError(f"Unknown configuration option: {name}")
        if raw is not None:
            values[name] = _coerce(name, raw, name)
    return replace(ConverterConfig(), **values).validate()


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Install one console handler on the root logger; later calls only adjust the level."""
    root = logging.getLogger()
    if not any(getattr(handler, "_viac_console", False) for handler in root.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        console_handler._viac_console = True  # type: ignore[attr-defined]
        root.addHandler(console_handler)
    root.setLevel(level)
    return root
