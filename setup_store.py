"""Utility for initializing the PharmaStore data directory.

The module doubles as a script (``python setup_store.py``) and as a library
used by tests or other tooling. Shared helpers keep the bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence
import sys

# Every document starts out as an empty list.
EMPTY_DOCUMENTS: Mapping[str, Any] = {
    "drugs": [],
    "sales": [],
    "auditLog": [],
    "stockAdjustments": [],
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_dir: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_dir_raw = parser.get("System", "DataDir")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_dir = Path(data_dir_raw)
    if not data_dir.is_absolute():
        data_dir = (config_path.parent / data_dir).resolve()

    return SetupSettings(data_dir=data_dir)


def create_data_store(
    destination: Path,
    *,
    documents: Mapping[str, Any] = EMPTY_DOCUMENTS,
    overwrite: bool = False,
) -> Path:
    """Create the PharmaStore data directory at ``destination``.

    One ``<key>.json`` file is written per entry of ``documents``. When
    ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if any of those files already exists.
    """

    destination = destination.expanduser().resolve()
    targets = {key: destination / f"{key}.json" for key in documents}
    existing = [path for path in targets.values() if path.exists()]
    if existing and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing data files: {', '.join(str(path) for path in existing)}"
        )

    destination.mkdir(parents=True, exist_ok=True)
    for key, path in targets.items():
        path.write_text(json.dumps(documents[key], indent=2), encoding="utf-8")

    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the data directory named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_data_store(settings.data_dir, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the PharmaStore data directory")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing data files. All stored records are lost.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- PharmaStore Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing files if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write data files: {exc}")
        return 1

    print(f"\n[SUCCESS] Created data directory at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
