import io

import pytest

from lakerunner.sysinfo import CPUQuota, get_cpu_quota_cores, main, run_sysinfo


def _write_v1(root, quota, period):
    cpu = root / "cpu"
    cpu.mkdir()
    (cpu / "cpu.cfs_quota_us").write_text(quota + "\n")
    (cpu / "cpu.cfs_period_us").write_text(period + "\n")


def test_v2_quota(tmp_path):
    (tmp_path / "cpu.max").write_text("150000 100000\n")
    quota = get_cpu_quota_cores(tmp_path)
    assert quota == CPUQuota(1.5, "150000 100000")
    assert not quota.unlimited


def test_v2_unlimited(tmp_path):
    (tmp_path / "cpu.max").write_text("max 100000\n")
    quota = get_cpu_quota_cores(tmp_path)
    assert quota.cores == 0
    assert quota.raw == "max 100000"
    assert quota.unlimited


def test_v2_bad_format(tmp_path):
    (tmp_path / "cpu.max").write_text("garbage")
    with pytest.raises(ValueError, match="unexpected format"):
        get_cpu_quota_cores(tmp_path)


def test_v2_zero_period_is_bad_format(tmp_path):
    (tmp_path / "cpu.max").write_text("100 0")
    with pytest.raises(ValueError):
        get_cpu_quota_cores(tmp_path)


def test_v1_unlimited(tmp_path):
    _write_v1(tmp_path, "-1", "100000")
    quota = get_cpu_quota_cores(tmp_path)
    assert quota.raw == "-1 100000"
    assert quota.unlimited


def test_v1_quota(tmp_path):
    _write_v1(tmp_path, "50000", "100000")
    quota = get_cpu_quota_cores(tmp_path)
    assert quota.cores == pytest.approx(50000 / 100000)
    assert quota.raw == "50000 100000"


def test_no_files(tmp_path):
    with pytest.raises(OSError, match="no cgroup CPU quota files available"):
        get_cpu_quota_cores(tmp_path)


def test_run_sysinfo_reports_quota(tmp_path):
    (tmp_path / "cpu.max").write_text("150000 100000\n")
    out = io.StringIO()
    run_sysinfo(out, tmp_path)
    text = out.getvalue()
    assert "=== cgroup CPU quota ===" in text
    assert '"150000 100000"' in text
    assert "1.50 cores" in text


def test_run_sysinfo_reports_unlimited(tmp_path):
    (tmp_path / "cpu.max").write_text("max 100000\n")
    out = io.StringIO()
    run_sysinfo(out, tmp_path)
    assert 'none (unlimited) — raw: "max 100000"' in out.getvalue()


def test_run_sysinfo_reports_error(tmp_path):
    out = io.StringIO()
    run_sysinfo(out, tmp_path)
    text = out.getvalue()
    assert "error reading quota" in text
    assert "=== Config sanity check ===" in text


def test_main_prints_report(capsys):
    assert main([]) == 0
    captured = capsys.readouterr().out
    assert "=== cgroup CPU quota ===" in captured
    assert "NumCPU (host)" in captured