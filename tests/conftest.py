import zipfile
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer


def listing_html(hrefs):
    rows = "\n".join(f"<tr><td><a href=\"{h}\">{h.rsplit('/', 1)[-1]}</a></td><td>1 MB</td></tr>" for h in hrefs)
    return f"<html><body><a href=\"/top.zip\">nav</a><table>{rows}</table></body></html>"


@pytest.fixture
def make_zip(tmp_path):
    """Build a zip from {name: bytes}; a None value writes a directory entry."""

    def _make(entries, name="pkg.zip"):
        path = tmp_path / name
        with zipfile.ZipFile(path, "w") as zf:
            for entry, data in entries.items():
                if data is None:
                    zf.writestr(zipfile.ZipInfo(entry), b"")
                else:
                    zf.writestr(zipfile.ZipInfo(entry), data)
        return path

    return _make


@pytest.fixture
def package_entries():
    return {
        "EDMM-2024.sct": b"[INFO]\nEDMM 2024\n",
        "EDMM-2024.ese": b"[POSITIONS]\n",
        "EDMM/": None,
        "EDMM/NavData/": None,
        "EDMM/NavData/airway.txt": b"UL607\n",
        "EDMM/NavData/isec.txt": b"ABGAS\n",
        "EDMM/Settings/lists.txt": b"lists\n",
    }


@pytest.fixture
def es_root(tmp_path):
    root = tmp_path / "euroscope"
    (root / "ASR").mkdir(parents=True)
    (root / "EDMM_Radar.prf").write_text("Settings\tSettingsfileSYMBOLOGY\t\\sym.txt\nSettings\tsector\t\\EDMM-2023.sct\n")
    (root / "LOVV_Radar.prf").write_text("Settings\tsector\t\\LOVV.sct\n")
    (root / "ASR" / "radar.asr").write_text("DisplayTypeName:Standard\nSECTORFILE:EDMM-2023.sct\nSECTORTITLE:EDMM 2023\nGeo:ok\n")
    (root / "keep.txt").write_text("local")
    return root


@pytest.fixture
def scratch_root(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@asynccontextmanager
async def serve(routes):
    """Run a local aiohttp server for {path: handler}; yield its base URL."""
    app = web.Application()
    for path, handler in routes.items():
        app.router.add_get(path, handler)
    async with TestServer(app) as server:
        yield f"http://{server.host}:{server.port}"
