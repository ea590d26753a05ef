"""Shared pytest fixtures and utilities for PharmaStore tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from pharmastore import cli, constants, core_logic, data_manager  # noqa: E402
from setup_store import create_data_store  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ACTOR = "pharmacist"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataDir = {data_dir}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultActor = {default_actor}\n\n"
    "[Sales]\n"
    "TaxRate = 7.5\n"
    "DiscountRate = 0\n"
    "LowStockThreshold = 3\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_dir: Path
    default_actor: str
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
def data_dir_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized data directory in a temp folder."""

    def _create_data_dir(*, subdir: str | None = None, dirname: str = "data") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_data_store(base_dir / dirname, overwrite=True)

    return _create_data_dir


@pytest.fixture
def config_factory(tmp_path: Path, data_dir_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/data directory bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Pharmacy",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_actor: str = DEFAULT_ACTOR,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        data_dir = data_dir_factory(subdir=f"bundle_{bundle_id}")
        data_dir_entry = data_dir.name if make_relative else str(data_dir)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_dir=data_dir_entry,
                store_name=store_name,
                schema_version=schema_version,
                default_actor=default_actor,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_dir=data_dir,
            default_actor=default_actor,
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
# Record builders
# ---------------------------------------------------------------------------


@pytest.fixture
def make_drug() -> Callable[..., data_manager.Drug]:
    """Return a builder for drug records with sensible defaults."""

    def _make(
        drug_id: str = "d1",
        *,
        name: str = "Paracetamol 500mg",
        quantity: int = 5,
        price: str = "10.00",
        category: str = "Analgesic",
        expiry: Optional[date] = None,
        supplier: str = "Acme Pharma",
    ) -> data_manager.Drug:
        return data_manager.Drug(
            id=drug_id,
            name=name,
            category=category,
            quantity=quantity,
            price=Decimal(price),
            expiry=expiry,
            supplier=supplier,
        )

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pharmastore-cli", description="PharmaStore CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


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
        data_dir=tmp_path / "data",
        store_name="Test Pharmacy",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_actor=DEFAULT_ACTOR,
        low_stock_threshold=3,
    )


@pytest.fixture
def store(tmp_path: Path) -> Mock:
    """Return a mock document store for business logic tests."""

    mock_store = Mock(name="store", spec=data_manager.JsonFileStore)
    mock_store.data_dir = tmp_path / "data"
    return mock_store


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and a store mock."""

    return core_logic.RuntimeContext(settings=settings, store=store, actor=DEFAULT_ACTOR)


@pytest.fixture
def saved_keys(store: Mock) -> Callable[[], list[str]]:
    """Return the document keys written to the mock store, audit writes excluded."""

    def _keys() -> list[str]:
        return [
            call.args[0]
            for call in store.save.call_args_list
            if call.args[0] != constants.StorageKey.AUDIT_LOG.value
        ]

    return _keys


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
