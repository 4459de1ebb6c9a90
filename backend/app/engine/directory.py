"""
Entity Directory

Read-mostly registry of organisations, users and datasets (plus the
connector attached to each dataset).  These entities are owned by the
surrounding application; the analysis core only looks them up.

The directory can be seeded from a JSON document::

    {
      "organizations": [{"id": 3, "name": "Acme", "settings": {...}}],
      "users":         [{"id": 1, "organization_id": 3, ...}],
      "datasets":      [{"id": 7, "organization_id": 3, "name": "orders", ...}]
    }
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

from backend.app.engine.connectors import DatasetConnector
from backend.app.errors import NotFoundError
from backend.app.schema.directory_schema import Dataset, Organization, User

logger = logging.getLogger(__name__)


class EntityDirectory:
    """Thread-safe in-memory registry of organisations, users and datasets."""

    def __init__(self) -> None:
        self._orgs: dict[int, Organization] = {}
        self._users: dict[int, User] = {}
        self._datasets: dict[int, Dataset] = {}
        self._connectors: dict[int, DatasetConnector] = {}
        self._lock = threading.RLock()

    # Registration

    def add_organization(self, org: Organization) -> Organization:
        with self._lock:
            self._orgs[org.id] = org
        return org

    def add_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = user
        return user

    def add_dataset(
        self,
        dataset: Dataset,
        connector: DatasetConnector | None = None,
    ) -> Dataset:
        with self._lock:
            self._datasets[dataset.id] = dataset
            if connector is not None:
                self._connectors[dataset.id] = connector
        return dataset

    # Lookups

    def get_organization(self, org_id: int) -> Organization:
        with self._lock:
            org = self._orgs.get(org_id)
        if org is None:
            raise NotFoundError(f"Organization '{org_id}' not found.")
        return org

    def get_user(self, user_id: int) -> User:
        with self._lock:
            user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User '{user_id}' not found.")
        return user

    def get_dataset(self, dataset_id: int) -> Dataset:
        with self._lock:
            dataset = self._datasets.get(dataset_id)
        if dataset is None:
            raise NotFoundError(f"Dataset '{dataset_id}' not found.")
        return dataset

    def get_connector(self, dataset_id: int) -> Optional[DatasetConnector]:
        with self._lock:
            return self._connectors.get(dataset_id)

    def organization_ids(self) -> list[int]:
        with self._lock:
            return list(self._orgs)

    # Seeding

    def load_seed(self, path: str | Path) -> None:
        """Populate the directory from a JSON seed file."""
        payload: dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
        for raw in payload.get("organizations", []):
            self.add_organization(Organization(**raw))
        for raw in payload.get("users", []):
            self.add_user(User(**raw))
        for raw in payload.get("datasets", []):
            self.add_dataset(Dataset(**raw))
        logger.info(
            "Directory seeded from %s: %d orgs, %d users, %d datasets.",
            path, len(self._orgs), len(self._users), len(self._datasets),
        )

    def reset(self) -> None:
        with self._lock:
            self._orgs.clear()
            self._users.clear()
            self._datasets.clear()
            self._connectors.clear()
