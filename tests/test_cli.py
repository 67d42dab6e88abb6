"""Integration tests for CLI."""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from stockcart import __version__

SRC_DIR = Path(__file__).resolve().parent.parent / "src"

CATALOG = {
    "products": [
        {"id": "whey", "name": "Whey Protein", "price": "10.00", "stock_quantity": 5},
        {
            "id": "gainer",
            "name": "Mass Gainer",
            "price": "30.00",
            "variants": [
                {"id": "choc", "name": "Chocolate", "price": "30.00", "stock_quantity": 2},
                {"id": "van", "name": "Vanilla", "price": "32.00"},
            ],
        },
    ]
}


@pytest.fixture
def data_dir(temp_dir):
    return temp_dir / "data"


def run_stockcart(args: list[str], data_dir: Path) -> subprocess.CompletedProcess:
    """Run stockcart CLI command."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))
    env["STOCKCART_DATA_DIR"] = str(data_dir)
    return subprocess.run(
        [sys.executable, "-m", "stockcart.cli"] + args,
        capture_output=True,
        text=True,
        env=env,
    )


@pytest.fixture
def catalog_file(temp_dir):
    path = temp_dir / "catalog.json"
    path.write_text(json.dumps(CATALOG))
    return path


class TestCLIIntegration:
    """Integration tests for CLI commands."""

    def test_version(self, data_dir):
        result = run_stockcart(["--version"], data_dir)

        assert result.returncode == 0
        assert __version__ in result.stdout

    def test_catalog_import_and_list(self, data_dir, catalog_file):
        result = run_stockcart(["catalog", "import", str(catalog_file)], data_dir)
        assert result.returncode == 0
        assert "Imported 2 product(s)" in result.stdout

        result = run_stockcart(["catalog", "list", "--json"], data_dir)
        assert result.returncode == 0
        products = {p["id"]: p for p in json.loads(result.stdout)}
        assert products["whey"]["stock_quantity"] == 5
        assert products["gainer"]["variants"][1]["in_stock"] is False

    def test_catalog_list_empty(self, data_dir):
        result = run_stockcart(["catalog", "list"], data_dir)

        assert result.returncode == 0
        assert "No products found." in result.stdout

    def test_catalog_import_bad_file(self, data_dir, temp_dir):
        bad = temp_dir / "bad.json"
        bad.write_text("{not json")

        result = run_stockcart(["catalog", "import", str(bad)], data_dir)

        assert result.returncode == 1
        assert "cannot read" in result.stderr

    def test_stock(self, data_dir, catalog_file):
        run_stockcart(["catalog", "import", str(catalog_file)], data_dir)

        result = run_stockcart(["stock", "gainer", "--variant", "choc"], data_dir)
        assert result.returncode == 0
        assert "gainer (choc): 2 available" in result.stdout

        result = run_stockcart(["stock", "nope"], data_dir)
        assert result.returncode == 1
        assert "Error:" in result.stderr

    def test_sweep_json(self, data_dir, catalog_file):
        run_stockcart(["catalog", "import", str(catalog_file)], data_dir)

        result = run_stockcart(["sweep", "--json"], data_dir)

        assert result.returncode == 0
        report = json.loads(result.stdout)
        assert report["users_processed"] == 0
        assert report["skipped"] is False

    def test_carts_cleanup(self, data_dir):
        result = run_stockcart(["carts", "cleanup", "--max-age-hours", "12"], data_dir)

        assert result.returncode == 0
        assert "Removed 0 cart(s) older than 12h" in result.stdout
