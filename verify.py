#!/usr/bin/env python3
from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path
from typing import Iterable

from sector_update import (
    NAVDATA_DIR,
    PROFILE_EXT,
    SESSION_EXT,
    ConfigError,
    RegionConfig,
    load_config,
    read_text,
)

SECTOR_LINE_RE = re.compile(r"^Settings\tsector\t([^\r\n]*)", re.MULTILINE)
SECTORFILE_RE = re.compile(r"^SECTORFILE:([^\r\n]*)", re.MULTILINE)


def iter_profiles(region: RegionConfig) -> Iterable[Path]:
    for path in sorted(region.install_root.iterdir()):
        if path.is_file() and path.name.startswith(region.prf_prefix) and path.name.endswith(PROFILE_EXT):
            yield path


def check_profile(path: Path, root: Path) -> list[str]:
    problems: list[str] = []
    values = SECTOR_LINE_RE.findall(read_text(path))
    if not values:
        return [f"{path.name}: no sector line"]
    for value in values:
        name = value.lstrip("\\/")
        if not name:
            problems.append(f"{path.name}: empty sector path")
        elif not (root / name).is_file():
            problems.append(f"{path.name}: sector file not installed: {name}")
    return problems


def check_sessions(asr_dir: Path) -> list[str]:
    problems: list[str] = []
    for path in sorted(asr_dir.iterdir()):
        if not path.is_file() or not path.name.endswith(SESSION_EXT):
            continue
        bound = [v for v in SECTORFILE_RE.findall(read_text(path)) if v.strip()]
        if bound:
            problems.append(f"{path.name}: still bound to {bound[0]}")
    return problems


def check_region(region: RegionConfig) -> tuple[int, list[str]]:
    """Return (ok_count, problems) for one installation."""
    root = region.install_root
    if not root.is_dir():
        return 0, [f"installation directory not found: {root}"]

    ok_count = 0
    problems: list[str] = []

    if (root / NAVDATA_DIR).is_dir():
        ok_count += 1
    else:
        problems.append(f"{NAVDATA_DIR} directory missing")

    for path in iter_profiles(region):
        found = check_profile(path, root)
        if found:
            problems.extend(found)
        else:
            ok_count += 1

    if region.session_dir.is_dir():
        found = check_sessions(region.session_dir)
        if found:
            problems.extend(found)
        else:
            ok_count += 1
    else:
        problems.append(f"session directory missing: {region.session_dir}")

    return ok_count, problems


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check installations after a sector update")
    parser.add_argument("--config", default="config.yaml", help="Path to config YAML (or legacy JSON) file")
    args = parser.parse_args(argv)

    config_path = Path(args.config)
    if not config_path.exists():
        print(f"[NG] config file not found: {config_path}")
        return 1
    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"[NG] failed to load config: {e}")
        return 1

    ok_total = 0
    ng_total = 0
    for region in config.regions:
        try:
            ok_count, problems = check_region(region)
        except OSError as e:
            ok_count, problems = 0, [f"cannot inspect installation: {e}"]
        ok_total += ok_count
        ng_total += len(problems)
        if not problems:
            print(f"[OK] {region.fir}")
        for problem in problems:
            print(f"[NG] {region.fir}: {problem}")

    print(f"OK: {ok_total}")
    print(f"NG: {ng_total}")
    return 1 if ng_total > 0 else 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
