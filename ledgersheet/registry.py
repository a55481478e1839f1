"""
DatasetRegistry - CRUD store for dataset definitions.

The registry provides:
- Typed Dataset records persisted as dataset_<id> in the key-value store
- An ordered index list (dataset_index) kept in creation order
- Validation at the store boundary (queries are parsed, standard reports
  need a report name, enabled schedules must be well-formed)
- A version counter bumped on every mutation
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Optional

from ledgersheet.errors import NotFound, ValidationError
from ledgersheet.query_parser import parse_query
from ledgersheet.schemas import (
    Dataset,
    DatasetType,
    LastWrite,
    Pagination,
    Schedule,
    Target,
)
from ledgersheet.store import KeyValueStore

logger = logging.getLogger(__name__)

INDEX_KEY = "dataset_index"
KEY_PREFIX = "dataset_"


def dataset_key(dataset_id: str) -> str:
    return f"{KEY_PREFIX}{dataset_id}"


def new_dataset_id() -> str:
    return f"ds_{uuid.uuid4().hex[:12]}"


class DatasetRegistry:
    """
    Registry of Dataset definitions.

    Args:
        store: Persisted key-value store
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    def _index(self) -> list[str]:
        return list(self._store.get(INDEX_KEY) or [])

    def _save(self, dataset: Dataset) -> None:
        self._store.set(dataset_key(dataset.id), dataset.to_dict())

    def validate(self, dataset: Dataset) -> None:
        """
        Validate a dataset definition.

        Raises:
            ValidationError: If the definition cannot be run
        """
        if not dataset.name or not dataset.name.strip():
            raise ValidationError("Dataset name is required")
        if dataset.type == DatasetType.QUERY:
            if not dataset.query:
                raise ValidationError("Query datasets require params.query")
            parse_query(dataset.query).require()
            dataset.pagination.validate()
        elif not dataset.report_name:
            raise ValidationError("Standard datasets require params.report_name")
        if dataset.schedule.enabled:
            dataset.schedule.validate()

    def create(
        self,
        type: DatasetType | str,
        name: str,
        params: dict[str, Any],
        target: Optional[Target] = None,
        pagination: Optional[Pagination] = None,
        schedule: Optional[Schedule] = None,
    ) -> Dataset:
        """
        Create and persist a new dataset.

        For query datasets without explicit pagination, STARTPOSITION and
        MAXRESULTS in the query text seed the dataset's pagination.
        """
        try:
            dataset_type = DatasetType(type)
        except ValueError:
            raise ValidationError(f"Unknown dataset type: {type}")

        if pagination is None:
            pagination = Pagination()
            if dataset_type == DatasetType.QUERY:
                parsed = parse_query(params.get("query"))
                if parsed.valid:
                    pagination = Pagination(
                        start_position=parsed.start_position or 1,
                        max_results=parsed.max_results or 1000,
                    )

        dataset = Dataset(
            id=new_dataset_id(),
            type=dataset_type,
            name=name.strip() if name else "",
            params=dict(params),
            target=target or Target(),
            pagination=pagination,
            schedule=schedule or Schedule(),
        )
        self.validate(dataset)

        self._save(dataset)
        index = self._index()
        index.append(dataset.id)
        self._store.set(INDEX_KEY, index)
        logger.info(f"Created dataset {dataset.id} ({dataset.type.value}: {dataset.name})")
        return dataset

    def find(self, dataset_id: str) -> Optional[Dataset]:
        """Return the dataset, or None if it does not exist."""
        data = self._store.get(dataset_key(dataset_id))
        if data is None:
            return None
        return Dataset.from_dict(data)

    def get(self, dataset_id: str) -> Dataset:
        """
        Return the dataset.

        Raises:
            NotFound: If no dataset has this id
        """
        dataset = self.find(dataset_id)
        if dataset is None:
            raise NotFound(f"Dataset not found: {dataset_id}")
        return dataset

    def list(self) -> list[Dataset]:
        """All datasets in index (creation) order. Dangling index entries are skipped."""
        datasets = []
        for dataset_id in self._index():
            dataset = self.find(dataset_id)
            if dataset is None:
                logger.warning(f"Index references missing dataset {dataset_id}")
                continue
            datasets.append(dataset)
        return datasets

    def update(
        self,
        dataset_id: str,
        name: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
        target: Optional[Target] = None,
        pagination: Optional[Pagination] = None,
        schedule: Optional[Schedule] = None,
    ) -> Dataset:
        """Apply changes, validate, bump version and persist."""
        current = self.get(dataset_id)
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name.strip()
        if params is not None:
            changes["params"] = dict(params)
        if target is not None:
            changes["target"] = target
        if pagination is not None:
            changes["pagination"] = pagination
        if schedule is not None:
            changes["schedule"] = schedule

        updated = replace(current, **changes)
        self.validate(updated)
        return self._commit(updated)

    def record_write(
        self,
        dataset_id: str,
        last_write: LastWrite,
        target_updates: Optional[dict[str, Any]] = None,
    ) -> Dataset:
        """Store the LastWrite snapshot and any target fields the writer resolved."""
        current = self.get(dataset_id)
        target = current.target
        if target_updates:
            target = replace(target, **target_updates)
        return self._commit(replace(current, last_write=last_write, target=target))

    def delete(self, dataset_id: str) -> Dataset:
        """
        Delete a dataset.

        Raises:
            NotFound: If no dataset has this id
        """
        dataset = self.get(dataset_id)
        self._store.delete(dataset_key(dataset_id))
        self._store.set(INDEX_KEY, [i for i in self._index() if i != dataset_id])
        logger.info(f"Deleted dataset {dataset_id}")
        return dataset

    def _commit(self, dataset: Dataset) -> Dataset:
        dataset.version += 1
        dataset.updated_at = datetime.now(timezone.utc)
        self._save(dataset)
        return dataset
