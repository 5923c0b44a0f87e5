#!/usr/bin/env python3
"""Replace the EuroScope sector package of one or more FIRs with the newest release.

Stages, run once per configured region:
1) Check the installation directory.
2) Resolve the newest package link from the FIR listing page.
3) Download the archive into a scratch directory.
4) Extract it and locate the sector (.sct) file.
5) Merge the package into the installation, then its NavData subtree into NavData/.
6) Point matching .prf profiles at the new sector file.
7) Clear sector bindings in .asr session files.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import shutil
import tempfile
import zipfile
import zlib
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import urljoin, urlparse

import aiohttp
import yaml
from bs4 import BeautifulSoup

__version__ = "1.0.0"

INDEX_BASE = "http://files.aero-nav.com"
LINK_SUFFIX = "zip"
SECTOR_EXT = ".sct"
PROFILE_EXT = ".prf"
SESSION_EXT = ".asr"
NAVDATA_DIR = "NavData"
ARCHIVE_NAME = "sector.zip"
PACKAGE_DIR = "package"
SCRATCH_PREFIX = "es-sector-updater-"
CHUNK_SIZE = 64 * 1024

PRF_SECTOR_RE = re.compile(r"^Settings\tsector\t[^\r\n]*", re.MULTILINE)
ASR_BINDING_RE = re.compile(r"^SECTORFILE:[^\r\n]*(\r?\n)SECTORTITLE:[^\r\n]*", re.MULTILINE)


class SectorUpdateError(Exception):
    """Base class for every failure of a region update."""


class NetworkError(SectorUpdateError):
    """A request could not be completed."""


class PackageNotFound(SectorUpdateError):
    """The listing page has no link matching the package filter."""


class ExtractError(SectorUpdateError):
    """The archive is unreadable or an entry could not be written."""


class InstallError(SectorUpdateError):
    """A filesystem operation on the scratch area or installation failed."""


class ConfigError(SectorUpdateError):
    """Configuration or package shape does not match what the update needs."""


@dataclass(frozen=True, slots=True)
class RegionConfig:
    """One FIR to update. Sub-paths are relative to their documented base."""

    fir: str
    package_name: str
    es_path: str
    asr_path: str = ""
    navdata_path: str = ""
    prf_prefix: str = ""

    @property
    def install_root(self) -> Path:
        return Path(self.es_path)

    @property
    def session_dir(self) -> Path:
        """Session files directory, relative to the installation root."""
        return self.install_root / self.asr_path


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from config.yaml."""

    index_base: str = INDEX_BASE
    timeout_sec: int = 60
    fail_fast: bool = False
    scratch_dir: str | None = None
    regions: list[RegionConfig] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RequestIdentity:
    """Fixed header set sent with archive downloads."""

    headers: Mapping[str, str]


def browser_identity(index_base: str = INDEX_BASE) -> RequestIdentity:
    """Headers of a desktop Firefox navigating from the listing site."""
    parsed = urlparse(index_base)
    return RequestIdentity(
        headers=MappingProxyType(
            {
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
                "Accept-Encoding": "gzip, deflate, br",
                "Accept-Language": "en-US;q=0.7,en;q=0.3",
                "Connection": "keep-alive",
                "DNT": "1",
                "Host": parsed.netloc,
                "Referer": f"{parsed.scheme}://{parsed.netloc}/",
                "Sec-Fetch-Dest": "document",
                "Sec-Fetch-Mode": "navigate",
                "Sec-Fetch-Site": "cross-site",
                "Sec-Fetch-User": "?1",
                "Upgrade-Insecure-Requests": "1",
                "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:108.0) Gecko/20100101 Firefox/108.0",
            }
        )
    )


@dataclass(slots=True)
class RegionContext:
    """State shared by the stages of one region's run."""

    region: RegionConfig
    config: Config
    session: aiohttp.ClientSession | None
    identity: RequestIdentity
    scratch: Path
    url: str | None = None
    sector_file: str | None = None

    @property
    def archive(self) -> Path:
        return self.scratch / ARCHIVE_NAME

    @property
    def package_root(self) -> Path:
        return self.scratch / PACKAGE_DIR


@dataclass(slots=True)
class RunReport:
    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


# --- link resolution ---------------------------------------------------------


def is_correct_link(link: str, package_name: str, suffix: str = LINK_SUFFIX) -> bool:
    """Substring filter plus a literal, case-sensitive suffix test."""
    return package_name in link and link.endswith(suffix)


def pick_sector_link(html: str, package_name: str) -> str:
    """Return the last matching ``td > a`` href; listings are ascending by date."""
    soup = BeautifulSoup(html, "html.parser")
    links = [a.get("href") for a in soup.select("td > a")]
    matches = [link for link in links if isinstance(link, str) and is_correct_link(link, package_name)]
    if not matches:
        raise PackageNotFound(f"no link containing {package_name!r} and ending in {LINK_SUFFIX!r}")
    return matches[-1]


def listing_url(index_base: str, fir: str) -> str:
    return f"{index_base.rstrip('/')}/{fir}"


async def resolve_sector_link(
    session: aiohttp.ClientSession,
    index_base: str,
    fir: str,
    package_name: str,
) -> str:
    """Fetch the FIR listing and return the absolute URL of the newest package."""
    url = listing_url(index_base, fir)
    logging.info("Getting sector link from %s", url)
    try:
        async with session.get(url) as resp:
            resp.raise_for_status()
            html = await resp.text(errors="replace")
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise NetworkError(f"listing fetch failed: {url} ({exc})") from exc
    link = urljoin(url, pick_sector_link(html, package_name))
    logging.info("Got url: %s", link)
    return link


# --- download ----------------------------------------------------------------


async def download_archive(
    session: aiohttp.ClientSession,
    url: str,
    dest: Path,
    identity: RequestIdentity,
) -> int:
    """Stream ``url`` into ``dest`` without following redirects. Return bytes written."""
    logging.info("Creating file: %s", dest)
    written = 0
    try:
        async with session.get(url, headers=dict(identity.headers), allow_redirects=False) as resp:
            if 300 <= resp.status < 400:
                logging.debug("Not following redirect (HTTP %s) for %s", resp.status, url)
            with dest.open("wb") as fh:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    fh.write(chunk)
                    written += len(chunk)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise NetworkError(f"archive download failed: {url} ({exc})") from exc
    except OSError as exc:
        raise InstallError(f"cannot write archive {dest}: {exc}") from exc
    logging.debug("Downloaded %s bytes from %s", written, url)
    return written


# --- extraction --------------------------------------------------------------


def safe_entry_path(dest: Path, name: str) -> Path | None:
    """Map an archive entry name under ``dest``; None if it would escape it."""
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or PureWindowsPath(name).drive:
        return None
    parts = [p for p in PurePosixPath(normalized).parts if p not in ("", ".")]
    if not parts or ".." in parts:
        return None
    target = dest.joinpath(*parts)
    try:
        target.resolve().relative_to(dest.resolve())
    except ValueError:
        return None
    return target


def extract_archive(archive: Path, dest: Path) -> list[Path]:
    """Unpack every entry of ``archive`` under ``dest``. Return written files."""
    logging.info("Extracting %s", archive.name)
    written: list[Path] = []
    try:
        dest.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                target = safe_entry_path(dest, info.filename)
                if target is None:
                    logging.warning("Skipping unsafe archive entry: %s", info.filename)
                    continue
                if info.filename.replace("\\", "/").endswith("/"):
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, target.open("wb") as out:
                    shutil.copyfileobj(src, out, CHUNK_SIZE)
                written.append(target)
    except (OSError, EOFError, RuntimeError, NotImplementedError, zipfile.BadZipFile, zlib.error) as exc:
        raise ExtractError(f"cannot extract {archive}: {exc}") from exc
    logging.debug("Extracted %s files", len(written))
    return written


def find_sector_file(package_root: Path) -> str:
    """Return the single top-level sector file name of an extracted package."""
    try:
        names = sorted(p.name for p in package_root.iterdir() if p.is_file() and p.name.endswith(SECTOR_EXT))
    except OSError as exc:
        raise InstallError(f"cannot list {package_root}: {exc}") from exc
    if len(names) != 1:
        raise ConfigError(f"expected exactly one {SECTOR_EXT} file in package, found {len(names)}: {names}")
    logging.info("Got sector file: %s", names[0])
    return names[0]


# --- installation ------------------------------------------------------------


def _raise(exc: OSError) -> None:
    raise exc


def merge_copy(src: Path, dst: Path) -> int:
    """Copy the tree under ``src`` into ``dst``, overwriting files, keeping extras."""
    if not src.is_dir():
        raise InstallError(f"source directory missing: {src}")
    copied = 0
    try:
        for dirpath, _dirnames, filenames in os.walk(src, onerror=_raise):
            target_dir = dst / Path(dirpath).relative_to(src)
            target_dir.mkdir(parents=True, exist_ok=True)
            for name in sorted(filenames):
                shutil.copyfile(Path(dirpath) / name, target_dir / name)
                logging.debug("\t%s", target_dir / name)
                copied += 1
    except OSError as exc:
        raise InstallError(f"copy {src} -> {dst} failed: {exc}") from exc
    return copied


# --- text patches ------------------------------------------------------------


def read_text(path: Path) -> str:
    with path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as fh:
        return fh.read()


def atomic_write_text(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` via a sibling temp file and rename."""
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as fh:
            fh.write(text)
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except OSError:
        Path(tmp).unlink(missing_ok=True)
        raise


def set_profile_sector(text: str, sector_file_name: str) -> str:
    line = f"Settings\tsector\t\\{sector_file_name}"
    return PRF_SECTOR_RE.sub(lambda _m: line, text)


def clear_asr_bindings(text: str) -> str:
    return ASR_BINDING_RE.sub(lambda m: f"SECTORFILE:{m.group(1)}SECTORTITLE:", text)


def _list_files(directory: Path, keep: Callable[[str], bool]) -> list[Path]:
    try:
        return sorted(p for p in directory.iterdir() if p.is_file() and keep(p.name))
    except OSError as exc:
        raise InstallError(f"cannot list {directory}: {exc}") from exc


def _rewrite_each(paths: Iterable[Path], transform: Callable[[str], str], kind: str) -> list[Path]:
    """Apply ``transform`` to every file; report all failures together."""
    done: list[Path] = []
    errors: list[str] = []
    for path in paths:
        logging.info("\t%s", path.name)
        try:
            atomic_write_text(path, transform(read_text(path)))
        except OSError as exc:
            logging.error("Failed to patch %s file %s: %s", kind, path, exc)
            errors.append(f"{path.name}: {exc}")
            continue
        done.append(path)
    if errors:
        raise InstallError(f"{len(errors)} {kind} file(s) could not be patched: {'; '.join(errors)}")
    return done


def patch_profiles(es_path: Path, sector_file_name: str, prf_prefix: str) -> list[Path]:
    """Point every ``<prefix>*.prf`` directly under ``es_path`` at the new sector file."""
    logging.info("Changing sectorfile in PRFs")
    profiles = _list_files(es_path, lambda n: n.startswith(prf_prefix) and n.endswith(PROFILE_EXT))
    return _rewrite_each(profiles, lambda text: set_profile_sector(text, sector_file_name), "profile")


def clear_session_bindings(asr_dir: Path) -> list[Path]:
    """Empty SECTORFILE/SECTORTITLE pairs in every .asr file of ``asr_dir``."""
    logging.info("Clearing ASRs")
    if not asr_dir.is_dir():
        raise InstallError(f"session directory missing: {asr_dir}")
    sessions = _list_files(asr_dir, lambda n: n.endswith(SESSION_EXT))
    return _rewrite_each(sessions, clear_asr_bindings, "session")


# --- stages ------------------------------------------------------------------


async def stage_check_install(ctx: RegionContext) -> None:
    root = ctx.region.install_root
    if not root.is_dir():
        raise ConfigError(f"installation directory not found: {root}")
    if not os.access(root, os.W_OK):
        raise ConfigError(f"installation directory not writable: {root}")


async def stage_resolve(ctx: RegionContext) -> None:
    ctx.url = await resolve_sector_link(ctx.session, ctx.config.index_base, ctx.region.fir, ctx.region.package_name)


async def stage_download(ctx: RegionContext) -> None:
    await download_archive(ctx.session, ctx.url, ctx.archive, ctx.identity)


async def stage_extract(ctx: RegionContext) -> None:
    extract_archive(ctx.archive, ctx.package_root)


async def stage_locate_sector(ctx: RegionContext) -> None:
    ctx.sector_file = find_sector_file(ctx.package_root)


async def stage_install_package(ctx: RegionContext) -> None:
    logging.info("Copying files to ES dir")
    count = merge_copy(ctx.package_root, ctx.region.install_root)
    logging.info("Copied %s files", count)


async def stage_install_navdata(ctx: RegionContext) -> None:
    logging.info("Copying NavData to ES dir")
    if not PurePosixPath(ctx.region.navdata_path.replace("\\", "/")).parts:
        raise ConfigError(f"{ctx.region.fir}: navdata_path must name a folder inside the package")
    src = ctx.package_root / ctx.region.navdata_path
    if not src.is_dir():
        raise ConfigError(f"navdata path {ctx.region.navdata_path!r} not found in package")
    count = merge_copy(src, ctx.region.install_root / NAVDATA_DIR)
    logging.info("Copied %s NavData files", count)


async def stage_patch_profiles(ctx: RegionContext) -> None:
    patch_profiles(ctx.region.install_root, ctx.sector_file, ctx.region.prf_prefix)


async def stage_clear_sessions(ctx: RegionContext) -> None:
    clear_session_bindings(ctx.region.session_dir)


Stage = Callable[[RegionContext], Awaitable[None]]

STAGES: tuple[Stage, ...] = (
    stage_check_install,
    stage_resolve,
    stage_download,
    stage_extract,
    stage_locate_sector,
    stage_install_package,
    stage_install_navdata,
    stage_patch_profiles,
    stage_clear_sessions,
)


async def update_region(
    region: RegionConfig,
    config: Config,
    session: aiohttp.ClientSession | None,
    identity: RequestIdentity,
    stages: Iterable[Stage] = STAGES,
) -> RegionContext:
    """Run every stage for one region inside a scratch directory removed on exit."""
    try:
        scratch = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=config.scratch_dir))
    except OSError as exc:
        raise InstallError(f"cannot create scratch area for {region.fir}: {exc}") from exc
    try:
        ctx = RegionContext(region=region, config=config, session=session, identity=identity, scratch=scratch)
        for stage in stages:
            logging.debug("FIR %s: %s", region.fir, stage.__name__)
            await stage(ctx)
        return ctx
    finally:
        remove_scratch(scratch)


def remove_scratch(scratch: Path) -> None:
    """Delete the scratch tree; a failure is only logged."""
    try:
        shutil.rmtree(scratch)
    except OSError as exc:
        logging.warning("Could not remove scratch area %s: %s", scratch, exc)


# --- configuration -----------------------------------------------------------

REQUIRED_REGION_KEYS = ("fir", "package_name", "es_path", "navdata_path")


def _relative_subpath(value: Any, key: str, fir: str) -> str:
    text = str(value or "")
    if PurePosixPath(text).is_absolute() or PureWindowsPath(text).is_absolute() or PureWindowsPath(text).drive:
        raise ConfigError(f"{fir}: {key} must be relative, got {text!r}")
    if ".." in PurePosixPath(text.replace("\\", "/")).parts:
        raise ConfigError(f"{fir}: {key} must not leave its base directory, got {text!r}")
    return text


def parse_region(data: Any, index: int) -> RegionConfig:
    """Validate one region record."""
    if not isinstance(data, dict):
        raise ConfigError(f"region #{index} must be a mapping")
    missing = [key for key in REQUIRED_REGION_KEYS if not str(data.get(key) or "").strip()]
    if missing:
        raise ConfigError(f"region #{index} is missing {', '.join(missing)}")
    fir = str(data["fir"]).strip()
    return RegionConfig(
        fir=fir,
        package_name=str(data["package_name"]),
        es_path=str(data["es_path"]),
        asr_path=_relative_subpath(data.get("asr_path"), "asr_path", fir),
        navdata_path=_relative_subpath(data.get("navdata_path"), "navdata_path", fir),
        prf_prefix=str(data.get("prf_prefix") or ""),
    )


def load_config(config_path: Path) -> Config:
    """Load config.yaml (or the legacy config.json region list) and apply defaults."""
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read {config_path}: {exc}") from exc
    if isinstance(data, list):
        data = {"regions": data}
    if not isinstance(data, dict):
        raise ConfigError("config must be a mapping or a list of regions")
    raw_regions = data.get("regions") or []
    if not isinstance(raw_regions, list):
        raise ConfigError("regions must be a list")

    try:
        timeout_sec = int(data.get("timeout_sec", 60))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"timeout_sec must be an integer: {exc}") from exc
    fail_fast = data.get("fail_fast", False)
    if not isinstance(fail_fast, bool):
        raise ConfigError(f"fail_fast must be true or false, got {fail_fast!r}")
    scratch_dir = data.get("scratch_dir")
    return Config(
        index_base=str(data.get("index_base", INDEX_BASE)).rstrip("/"),
        timeout_sec=timeout_sec,
        fail_fast=fail_fast,
        scratch_dir=str(scratch_dir) if scratch_dir else None,
        regions=[parse_region(item, i) for i, item in enumerate(raw_regions, start=1)],
    )


# --- orchestration -----------------------------------------------------------


async def run(config: Config, identity: RequestIdentity | None = None) -> RunReport:
    """Update every configured region in order. Never raises for a region failure."""
    identity = identity or browser_identity(config.index_base)
    report = RunReport()
    timeout = aiohttp.ClientTimeout(total=config.timeout_sec)

    async with aiohttp.ClientSession(timeout=timeout) as session:
        for region in config.regions:
            logging.info("-- FIR %s --", region.fir)
            try:
                await update_region(region, config, session, identity)
            except SectorUpdateError as exc:
                logging.error("FIR %s failed: %s", region.fir, exc)
                report.failed.append((region.fir, str(exc)))
                if config.fail_fast:
                    logging.error("fail_fast is set; skipping remaining regions")
                    break
            else:
                report.succeeded.append(region.fir)

    logging.info("Summary: succeeded=%s failed=%s", len(report.succeeded), len(report.failed))
    for fir, reason in report.failed:
        logging.info("  %s: %s", fir, reason)
    return report


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Update EuroScope sector packages")
    parser.add_argument("--config", default="config.yaml", help="Path to config YAML (or legacy JSON) file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every copied file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    logging.info("ES Sector Update version %s", __version__)
    config_path = Path(args.config)
    if not config_path.exists():
        raise SystemExit(f"config file not found: {config_path}")
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise SystemExit(f"invalid config: {exc}") from exc
    report = asyncio.run(run(config))
    raise SystemExit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
