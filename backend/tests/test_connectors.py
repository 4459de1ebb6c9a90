"""
Tests for the dataset connectors and the entity directory.
"""

from __future__ import annotations

import json

import pytest

from backend.app.engine.connectors import CsvConnector, StaticConnector
from backend.app.engine.directory import EntityDirectory
from backend.app.errors import NotFoundError, ValidationError
from backend.app.schema.directory_schema import SubscriptionTier

CSV_TEXT = "order_id,region,amount\n1,EU,10.0\n2,EU,15.0\n3,US,\n"


@pytest.fixture
def csv_path(tmp_path):
    path = tmp_path / "Q3 Orders.csv"
    path.write_text(CSV_TEXT)
    return path


# Connectors

class TestStaticConnector:
    def test_schema_and_sample(self):
        connector = StaticConnector({"tables": {"orders": ["id"]}}, sample_rows=[{"id": 1}, {"id": 2}])
        assert connector.fetch_schema() == {"tables": {"orders": ["id"]}}
        assert connector.fetch_sample(limit=1) == [{"id": 1}]

    def test_cannot_execute(self):
        with pytest.raises(ValidationError, match="cannot execute"):
            StaticConnector({}).execute("SELECT 1")

    def test_connection(self):
        assert StaticConnector({"tables": {"b": [], "a": []}}).test_connection() == {
            "success": True, "tables": ["a", "b"],
        }


class TestCsvConnector:
    def test_schema(self, csv_path):
        connector = CsvConnector(csv_path)
        schema = connector.fetch_schema()
        assert connector.table_name == "q3_orders"
        assert schema["tables"] == {"q3_orders": ["order_id", "region", "amount"]}
        assert schema["row_counts"] == {"q3_orders": 3}
        assert schema["nulls"]["amount"] == 1

    def test_sample(self, csv_path):
        rows = CsvConnector(csv_path).fetch_sample(limit=2)
        assert [r["region"] for r in rows] == ["EU", "EU"]

    def test_execute_select(self, csv_path):
        connector = CsvConnector(csv_path, table_name="orders")
        rows = connector.execute(
            "SELECT region, SUM(amount) AS total FROM orders GROUP BY region ORDER BY region"
        )
        assert rows[0] == {"region": "EU", "total": 25.0}

    def test_execute_rejects_writes(self, csv_path):
        with pytest.raises(ValidationError):
            CsvConnector(csv_path).execute("DELETE FROM q3_orders")

    def test_missing_file(self, tmp_path):
        connector = CsvConnector(tmp_path / "missing.csv")
        result = connector.test_connection()
        assert result["success"] is False
        assert "not found" in result["error"]


# Directory

class TestEntityDirectory:
    def test_lookups(self, directory):
        assert directory.get_organization(3).name == "Acme"
        assert directory.get_user(1).subscription_tier == SubscriptionTier.PROFESSIONAL
        assert directory.get_dataset(7).name == "orders"
        assert directory.get_connector(7) is not None
        assert directory.get_connector(8) is None

    @pytest.mark.parametrize("method", ["get_organization", "get_user", "get_dataset"])
    def test_missing_entities(self, directory, method):
        with pytest.raises(NotFoundError):
            getattr(directory, method)(999)

    def test_load_seed(self, tmp_path):
        seed = tmp_path / "seed.json"
        seed.write_text(json.dumps({
            "organizations": [{"id": 1, "name": "Acme", "settings": {"allowed_models": ["gpt-4"]}}],
            "users": [{"id": 5, "organization_id": 1, "subscription_tier": "enterprise"}],
            "datasets": [{"id": 9, "organization_id": 1, "name": "orders", "location": "/data/o.csv"}],
        }))
        directory = EntityDirectory()
        directory.load_seed(seed)

        assert directory.get_organization(1).settings.allowed_models == ["gpt-4"]
        assert directory.get_user(5).subscription_tier == SubscriptionTier.ENTERPRISE
        assert directory.get_dataset(9).location == "/data/o.csv"
        assert directory.organization_ids() == [1]

    def test_reset(self, directory):
        directory.reset()
        assert directory.organization_ids() == []
