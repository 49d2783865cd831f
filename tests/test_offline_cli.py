import json
import os
import subprocess
import sys
from pathlib import Path

REPO = Path(__file__).resolve().parent.parent

ROWS = [
    ["등록생 목록(26년2월)"],
    ["이름", "주횟수", "요일 및 시간", "시작날짜", "종료날짜", "합의 결석", "특이사항"],
    ["민지", "2", "화2목4", "260202", "260226", "", ""],
    ["준호", "1", "화2", "260202", "260226", "", ""],
]


def run_cli(cwd, *args):
    env = dict(os.environ, PYTHONPATH=str(REPO))
    return subprocess.run(
        [
            sys.executable,
            "-m",
            "studio_timetable.cli",
            "--offline",
            "--sheet",
            "roster",
            "--now",
            "2026-02-01T09:00",
            *args,
        ],
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        encoding="utf-8",
    )


def test_offline_cli_execution(tmp_path):
    json_dir = tmp_path / "out" / "json"
    json_dir.mkdir(parents=True)
    with (json_dir / "roster_A_Z.json").open("w", encoding="utf-8") as f:
        json.dump(ROWS, f, ensure_ascii=False)

    week = run_cli(tmp_path, "week", "--week", "2026-02-09")
    assert week.returncode == 0, week.stderr
    assert "Tue P2 2026-02-10  2/7  민지, 준호" in week.stdout

    holding = run_cli(tmp_path, "holding", "민지", "2026-02-10", "2026-02-12")
    assert holding.returncode == 0, holding.stderr
    assert "2 classes held" in holding.stdout
    assert "new end date 2026-03-05" in holding.stdout
    assert (tmp_path / "out" / "state.json").exists()

    occupancy = run_cli(tmp_path, "occupancy", "화2", "2026-02-10")
    assert "1/7  준호  out: 민지(holding)" in occupancy.stdout

    again = run_cli(tmp_path, "holding", "민지", "2026-02-17", "2026-02-19")
    assert again.returncode == 1
    assert "ValidationFailed" in again.stderr

    export = run_cli(tmp_path, "export", "민지", "2026-02-01", "2026-02-28")
    assert export.returncode == 0, export.stderr
    assert (tmp_path / export.stdout.strip()).exists()
