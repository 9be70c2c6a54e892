"""Shared pytest fixtures and utilities for POS ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_ledger import constants, core_logic, data_manager  # noqa: E402
from pos_ledger.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_CLIENT_ID = "CLI-WALKIN"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultClient = {default_client_id}\n"
    "LowStockThreshold = {low_stock_threshold}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_client_id: str
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        default_client_id: str = DEFAULT_CLIENT_ID,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, default_client_id=default_client_id, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_client_id: str = DEFAULT_CLIENT_ID,
        low_stock_threshold: int = 5,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(
            subdir=bundle_dir_name,
            default_client_id=default_client_id,
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                default_client_id=default_client_id,
                low_stock_threshold=low_stock_threshold,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_client_id=default_client_id,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory business logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_client_id=DEFAULT_CLIENT_ID,
        low_stock_threshold=5,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Runtime context backed by a freshly built, unsaved workbook."""

    return core_logic.RuntimeContext(settings=settings, workbook=build_master_workbook())


@pytest.fixture
def make_product(context: core_logic.RuntimeContext) -> Callable[..., data_manager.ProductRow]:
    """Register products through the business layer with sensible defaults."""

    def _make(
        name: str = "Widget",
        *,
        stock: int = 0,
        cost_price: str = "4.00",
        selling_price: str = "10.00",
        category: str = "",
        supplier_id: str = "",
        low_stock_threshold: int | None = None,
    ) -> data_manager.ProductRow:
        return core_logic.add_product(
            context,
            core_logic.NewProductCommand(
                name=name,
                selling_price=Decimal(selling_price),
                cost_price=Decimal(cost_price),
                category=category,
                supplier_id=supplier_id,
                stock=stock,
                low_stock_threshold=low_stock_threshold,
            ),
        )

    return _make


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` so ``now`` returns a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime(datetime):
            @classmethod
            def now(cls, tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
