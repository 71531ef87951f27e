"""Shared pytest fixtures and utilities for ShopSync tests."""

from __future__ import annotations

import argparse
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

from shopsync import cli, constants, core_logic, data_manager  # noqa: E402
from shopsync.models import (  # noqa: E402
    AppState,
    Customer,
    CustomerTier,
    EarningRule,
    Period,
    Product,
)
from shopsync.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OPERATOR = "counter-1"
FIXED_NOW = datetime(2024, 3, 15, 10, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "ShopName = {shop_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultOperator = {default_operator}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_operator: str
    schema_version: str
    shop_name: str


class FixedClock:
    """Callable clock whose reading tests can move forward."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


def sample_state() -> AppState:
    """Two catalog products, one returning customer and a two-band earning table."""

    return AppState(
        products=(
            Product(
                product_id="P-OIL",
                name="Engine Oil 1L",
                quantity=10,
                purchase_price=Decimal("600.00"),
                sale_price=Decimal("1000.00"),
                barcode="8901000000011",
            ),
            Product(
                product_id="P-PLUG",
                name="Spark Plug",
                quantity=5,
                purchase_price=Decimal("90.00"),
                sale_price=Decimal("150.00"),
            ),
        ),
        customers=(
            Customer(
                customer_id="KA01AB1234",
                name="Ravi",
                sale_ids=(),
                first_seen=datetime(2023, 1, 10, 9, 0, tzinfo=UTC),
                last_seen=datetime(2023, 1, 10, 9, 0, tzinfo=UTC),
                loyalty_points=0,
                tier_id="base-tier",
            ),
        ),
        earning_rules=(
            EarningRule(rule_id="low", min_spend=Decimal("0"), max_spend=Decimal("500"), points_per_hundred=Decimal("1")),
            EarningRule(rule_id="high", min_spend=Decimal("500"), max_spend=None, points_per_hundred=Decimal("2")),
        ),
        tiers=(
            CustomerTier(
                tier_id="base-tier",
                name="Standard",
                min_visits=0,
                min_spend=Decimal("0"),
                period=Period(12, constants.PeriodUnit.MONTHS),
                points_multiplier=Decimal("1"),
                rank=0,
            ),
            CustomerTier(
                tier_id="gold",
                name="Gold",
                min_visits=3,
                min_spend=Decimal("5000"),
                period=Period(6, constants.PeriodUnit.MONTHS),
                points_multiplier=Decimal("1.5"),
                rank=1,
            ),
        ),
    )


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
def clock() -> FixedClock:
    return FixedClock(FIXED_NOW)


@pytest.fixture
def state() -> AppState:
    """Return the sample snapshot used by most engine tests."""

    return sample_state()


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "shopsync.xlsx",
        shop_name="Test Garage",
        schema_version=DEFAULT_SCHEMA_VERSION,
        default_operator=DEFAULT_OPERATOR,
    )


@pytest.fixture
def store(state: AppState) -> data_manager.MemoryStore:
    return data_manager.MemoryStore(state)


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    store: data_manager.MemoryStore,
    clock: FixedClock,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory store and a fixed clock."""

    return core_logic.RuntimeContext(settings=settings, store=store, clock=clock)


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        initial_state: AppState | None = None,
        filename: str = "shopsync.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, initial_state=initial_state, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook seeded with the sample snapshot."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}", initial_state=sample_state())


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        shop_name: str = "Test Garage",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_operator: str = DEFAULT_OPERATOR,
        initial_state: AppState | None = None,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(
            subdir=f"bundle_{bundle_id}",
            initial_state=initial_state if initial_state is not None else sample_state(),
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                shop_name=shop_name,
                schema_version=schema_version,
                default_operator=default_operator,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_operator=default_operator,
            schema_version=schema_version,
            shop_name=shop_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path, clock: FixedClock) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file, clock=clock)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="shopsync-cli", description="ShopSync CLI")


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
