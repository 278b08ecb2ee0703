"""Integration tests for CLI."""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).parent.parent / "src"


def run_cartengine(args: list[str], data_dir: Path) -> subprocess.CompletedProcess:
    """Run cartengine CLI command against a data directory."""
    env = dict(os.environ)
    env["CARTENGINE_DATA_DIR"] = str(data_dir)
    env["CARTENGINE_BACKEND"] = "json"
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))
    return subprocess.run(
        [sys.executable, "-m", "cartengine.cli"] + args,
        capture_output=True,
        text=True,
        env=env,
    )


@pytest.fixture
def data_dir(temp_dir):
    path = temp_dir / "data"
    result = run_cartengine(["init"], path)
    assert result.returncode == 0
    return path


class TestCLIIntegration:
    """Integration tests for CLI commands."""

    def test_init_creates_store(self, temp_dir):
        """cartengine init should create the store file."""
        data_dir = temp_dir / "data"
        result = run_cartengine(["init"], data_dir)

        assert result.returncode == 0
        assert "Initialized" in result.stdout
        assert (data_dir / "store.json").exists()

    def test_init_force_overwrites(self, data_dir):
        result = run_cartengine(["init"], data_dir)
        assert result.returncode == 1
        assert "already exists" in result.stderr

        result = run_cartengine(["init", "--force"], data_dir)
        assert result.returncode == 0

    def test_commands_need_store(self, temp_dir):
        result = run_cartengine(["stock", "show"], temp_dir / "missing")
        assert result.returncode == 1
        assert "cartengine init" in result.stderr

    def test_product_and_stock(self, data_dir):
        result = run_cartengine(
            ["product", "add", "runner", "--name", "Road Runner", "--price", "100"], data_dir
        )
        assert result.returncode == 0
        assert "Saved product: runner" in result.stdout

        run_cartengine(["stock", "set", "runner", "9", "3"], data_dir)
        run_cartengine(["stock", "set", "runner", "10", "0"], data_dir)

        result = run_cartengine(["stock", "show", "runner"], data_dir)
        assert "size 9  3 left" in result.stdout
        assert "size 10  sold out" in result.stdout

        result = run_cartengine(["stock", "show", "--json"], data_dir)
        rows = json.loads(result.stdout)
        assert {r["quantity"] for r in rows} == {3, 0}

    def test_negative_stock(self, data_dir):
        result = run_cartengine(["stock", "set", "runner", "9", "-1"], data_dir)
        assert result.returncode == 1
        assert "negative" in result.stderr

    def test_coupon_add_and_check(self, data_dir):
        result = run_cartengine(
            ["coupon", "add", "save10", "--type", "percentage", "--value", "10", "--min-spend", "250"],
            data_dir,
        )
        assert result.returncode == 0
        assert "Saved coupon: SAVE10" in result.stdout

        result = run_cartengine(["coupon", "check", "SAVE10", "2000"], data_dir)
        assert result.returncode == 0
        assert "-₹200" in result.stdout

        result = run_cartengine(["coupon", "check", "SAVE10", "100", "--json"], data_dir)
        assert result.returncode == 2
        data = json.loads(result.stdout)
        assert data["eligible"] is False
        assert data["reason"] == "below_minimum_spend"

    def test_disabled_coupon(self, data_dir):
        run_cartengine(
            ["coupon", "add", "OFF", "--value", "10", "--expires", "2020-01-01T00:00:00Z", "--disabled"],
            data_dir,
        )
        result = run_cartengine(["coupon", "check", "OFF", "100"], data_dir)
        assert result.returncode == 2
        assert "no longer active" in result.stdout

    def test_order_status_unknown_order(self, data_dir):
        result = run_cartengine(["order", "status", "missing", "shipped"], data_dir)
        assert result.returncode == 1
        assert "Order not found" in result.stderr

    def test_version(self, temp_dir):
        result = run_cartengine(["--version"], temp_dir)
        assert result.returncode == 0
        assert "cartengine" in result.stdout
