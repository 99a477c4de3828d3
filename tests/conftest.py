"""Shared pytest fixtures and utilities for loyalty ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from loyalty_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from loyalty_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_TIME = datetime(2024, 3, 1, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "LockTimeoutSeconds = {lock_timeout}\n"
    "UnitTimeoutSeconds = {unit_timeout}\n"
    "MaxConflictRetries = {max_retries}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
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


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def make_product() -> Callable[..., data_manager.ProductRow]:
    """Factory for product rows with sensible defaults."""

    def _make(
        product_id: int,
        *,
        name: str | None = None,
        price: str = "15000.00",
        stock: int = 10,
        category: str = "General",
        description: str | None = None,
    ) -> data_manager.ProductRow:
        return data_manager.ProductRow(
            product_id=product_id,
            name=name or f"Product {product_id}",
            description=description,
            price=Decimal(price),
            stock_quantity=stock,
            category=category,
            created_at=FIXED_TIME,
        )

    return _make


@pytest.fixture
def make_customer() -> Callable[..., data_manager.CustomerRow]:
    """Factory for customer rows with sensible defaults."""

    def _make(
        customer_id: int,
        *,
        name: str | None = None,
        email: str | None = None,
        points: int = 0,
        cashback: str = "0.00",
        phone: str | None = None,
    ) -> data_manager.CustomerRow:
        return data_manager.CustomerRow(
            customer_id=customer_id,
            name=name or f"Customer {customer_id}",
            email=email or f"customer{customer_id}@example.com",
            phone=phone,
            points_balance=points,
            cashback_balance=Decimal(cashback),
            created_at=FIXED_TIME,
        )

    return _make


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder.

    Optional ``products`` and ``customers`` rows are written straight into the
    sheets so tests can start from arbitrary balances.
    """

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "ledger.xlsx",
        products: Sequence[data_manager.ProductRow] = (),
        customers: Sequence[data_manager.CustomerRow] = (),
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        if products or customers:
            workbook = data_manager.open_workbook(workbook_path)
            for product in products:
                data_manager.append_product(workbook, product)
            for customer in customers:
                data_manager.append_customer(workbook, customer)
            data_manager.save_workbook(workbook, workbook_path)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh empty ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        lock_timeout: float = 0.2,
        unit_timeout: float = 30,
        max_retries: int = 2,
        products: Sequence[data_manager.ProductRow] = (),
        customers: Sequence[data_manager.CustomerRow] = (),
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name, products=products, customers=customers)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                lock_timeout=lock_timeout,
                unit_timeout=unit_timeout,
                max_retries=max_retries,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
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
    """Load an empty ledger through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def ledger_context(config_factory: Callable[..., ConfigBundle]) -> Callable[..., core_logic.RuntimeContext]:
    """Factory returning a runtime context over a seeded workbook."""

    def _load(**config_kwargs) -> core_logic.RuntimeContext:
        bundle = config_factory(**config_kwargs)
        context = core_logic.load_runtime_context(bundle.config_path)
        core_logic.ensure_schema_version(context)
        return context

    return _load


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="loyalty-cli", description="Loyalty CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
