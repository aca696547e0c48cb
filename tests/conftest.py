"""Shared pytest fixtures and utilities for booking ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from booking_erp import cli, constants, core_logic, data_manager  # noqa: E402
from booking_erp.constants import CircleType, RecordKind  # noqa: E402
from booking_erp.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_RECORDED_BY = "cashier"
FIXED_NOW = datetime(2024, 5, 1, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "OperatorName = {operator_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "RecordedBy = {recorded_by}\n\n"
    "[Settlement]\n"
    "StrictPriceLookup = {strict}\n"
    "TrashRetentionHours = {retention}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    recorded_by: str
    schema_version: str
    operator_name: str


def make_prices(**overrides: int) -> data_manager.PriceList:
    """Build a price list from whole-number keyword arguments."""

    return data_manager.PriceList(**{name: Decimal(value) for name, value in overrides.items()})


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
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
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
        operator_name: str = "Test Bureau",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        recorded_by: str = DEFAULT_RECORDED_BY,
        strict: bool = False,
        retention: int = constants.DEFAULT_TRASH_RETENTION_HOURS,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                operator_name=operator_name,
                schema_version=schema_version,
                recorded_by=recorded_by,
                strict="true" if strict else "false",
                retention=retention,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            recorded_by=recorded_by,
            schema_version=schema_version,
            operator_name=operator_name,
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
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="booking-cli", description="Booking CLI")


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


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        operator_name="Test Bureau",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        recorded_by=DEFAULT_RECORDED_BY,
    )


@pytest.fixture
def workbook():
    """Return an unsaved in-memory master workbook."""

    return build_master_workbook()


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook) -> core_logic.RuntimeContext:
    """Assemble a runtime context over the in-memory workbook."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def mock_context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Runtime context whose workbook is a mock, for delegation tests."""

    return core_logic.RuntimeContext(settings=settings, workbook=Mock(name="workbook"))


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# Domain builders
# ---------------------------------------------------------------------------


@pytest.fixture
def add_office(context: core_logic.RuntimeContext) -> Callable[..., data_manager.Office]:
    """Register an office in the in-memory workbook."""

    def _add(name: str = "Al-Najah", *, username: Optional[str] = None, **prices: int) -> data_manager.Office:
        return core_logic.register_office(
            context,
            core_logic.OfficeCommand(
                office_name=name,
                username=username or f"user-{uuid.uuid4().hex[:6]}",
                prices=make_prices(**prices),
            ),
        )

    return _add


@pytest.fixture
def add_source(context: core_logic.RuntimeContext) -> Callable[..., data_manager.BookingSource]:
    """Register a booking source in the in-memory workbook."""

    def _add(name: str = "Gateway", **prices: int) -> data_manager.BookingSource:
        return core_logic.register_source(
            context,
            core_logic.SourceCommand(source_name=name, prices=make_prices(**prices)),
        )

    return _add


@pytest.fixture
def add_record(context: core_logic.RuntimeContext) -> Callable[..., data_manager.PersonRecord]:
    """Create a reviewer or office record in the in-memory workbook."""

    def _add(
        kind: RecordKind = RecordKind.OFFICE,
        *,
        full_name: str = "Ahmed Ali",
        circle_type: CircleType = CircleType.RIGHT_MOSUL,
        affiliation: Optional[str] = "Al-Najah",
        family_members=(),
        timestamp: Optional[datetime] = None,
    ) -> data_manager.PersonRecord:
        return core_logic.add_person_record(
            context,
            core_logic.RecordCommand(
                kind=kind,
                circle_type=circle_type,
                full_name=full_name,
                affiliation=affiliation if kind is RecordKind.OFFICE else None,
                family_members=tuple(family_members),
                timestamp=timestamp,
            ),
        )

    return _add


@pytest.fixture
def book(context: core_logic.RuntimeContext) -> Callable[..., data_manager.PersonRecord]:
    """Book an existing record."""

    def _book(
        record: data_manager.PersonRecord,
        *,
        source_id: Optional[str] = None,
        booking_date: Optional[str] = "2024-05-01",
    ) -> data_manager.PersonRecord:
        return core_logic.book_record(
            context,
            core_logic.BookingCommand(
                kind=record.kind,
                record_id=record.record_id,
                source_id=source_id,
                booking_date=booking_date,
            ),
        )

    return _book
