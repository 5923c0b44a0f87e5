import sector_update as su
import verify


def _region(root):
    return su.RegionConfig(fir="EDMM", package_name="P", es_path=str(root), asr_path="ASR", prf_prefix="EDMM")


def test_check_region_after_update(es_root):
    (es_root / "NavData").mkdir()
    (es_root / "EDMM-2024.sct").write_text("x")
    su.patch_profiles(es_root, "EDMM-2024.sct", "EDMM")
    su.clear_session_bindings(es_root / "ASR")

    ok_count, problems = verify.check_region(_region(es_root))

    assert problems == []
    assert ok_count == 3


def test_check_region_reports_stale_state(es_root):
    ok_count, problems = verify.check_region(_region(es_root))

    assert ok_count == 0
    assert "NavData directory missing" in problems
    assert "EDMM_Radar.prf: sector file not installed: EDMM-2023.sct" in problems
    assert "radar.asr: still bound to EDMM-2023.sct" in problems


def test_check_region_missing_root(tmp_path):
    assert verify.check_region(_region(tmp_path / "nope")) == (0, [f"installation directory not found: {tmp_path / 'nope'}"])


def test_main_exit_codes(tmp_path, es_root, capsys):
    config = tmp_path / "config.yaml"
    config.write_text(f"regions:\n  - fir: EDMM\n    package_name: P\n    es_path: '{es_root}'\n    asr_path: ASR\n    navdata_path: NavData\n    prf_prefix: EDMM\n")

    assert verify.main(["--config", str(config)]) == 1
    assert "[NG] EDMM:" in capsys.readouterr().out

    (es_root / "NavData").mkdir()
    (es_root / "EDMM-2023.sct").write_text("x")
    su.clear_session_bindings(es_root / "ASR")
    assert verify.main(["--config", str(config)]) == 0
    out = capsys.readouterr().out
    assert "[OK] EDMM" in out
    assert "NG: 0" in out


def test_main_missing_config(tmp_path, capsys):
    assert verify.main(["--config", str(tmp_path / "none.yaml")]) == 1
    assert "config file not found" in capsys.readouterr().out
