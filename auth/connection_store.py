from __future__ import annotations

import json
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

from halive.errors import StorageError


@dataclass
class Connection:
    base_url: str
    access_token: str
    refresh_token: str | None = None
    instance_name: str | None = None
    last_connected_at: float | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def display_name(self) -> str:
        return self.instance_name or self.base_url

    @classmethod
    def from_payload(cls, payload: dict) -> "Connection":
        try:
            return cls(
                id=payload["id"],
                base_url=payload["base_url"],
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token"),
                instance_name=payload.get("instance_name"),
                last_connected_at=payload.get("last_connected_at"),
            )
        except (KeyError, TypeError) as error:
            raise StorageError(f"Stored connection record is invalid: {error}") from error


def _recency(connection: Connection) -> float:
    if connection.last_connected_at is None:
        return float("-inf")
    return connection.last_connected_at


class ConnectionStore(ABC):
    """Persistence for connection records.

    ``insert_or_update`` only stages a snapshot of the record; nothing is
    durable until ``save`` commits every staged record. A failed ``save``
    discards what was staged.
    """

    def __init__(self) -> None:
        self._pending: dict[str, Connection] = {}

    async def insert_or_update(self, connection: Connection) -> None:
        self._pending[connection.id] = replace(connection)

    async def save(self) -> None:
        pending, self._pending = self._pending, {}
        if pending:
            await self._commit(pending)

    async def fetch_most_recently_connected(self) -> Connection | None:
        connections = await self.all()
        return connections[0] if connections else None

    async def all(self) -> list[Connection]:
        records = await self._load()
        return sorted(records.values(), key=_recency, reverse=True)

    async def get(self, connection_id: str) -> Connection | None:
        records = await self._load()
        return records.get(connection_id)

    @abstractmethod
    async def delete(self, connection_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def _load(self) -> dict[str, Connection]:
        raise NotImplementedError

    @abstractmethod
    async def _commit(self, pending: dict[str, Connection]) -> None:
        raise NotImplementedError


class MemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, Connection] = {}

    async def delete(self, connection_id: str) -> None:
        self._pending.pop(connection_id, None)
        self._records.pop(connection_id, None)

    async def _load(self) -> dict[str, Connection]:
        return {key: replace(value) for key, value in self._records.items()}

    async def _commit(self, pending: dict[str, Connection]) -> None:
        self._records.update(pending)


class FileConnectionStore(ConnectionStore):
    def __init__(self, path: str | Path = ".connections.json") -> None:
        super().__init__()
        self._path = Path(path)

    async def delete(self, connection_id: str) -> None:
        self._pending.pop(connection_id, None)
        all_records = self._read_all()
        if all_records.pop(connection_id, None) is not None:
            self._write_all(all_records)

    async def _load(self) -> dict[str, Connection]:
        return {
            key: Connection.from_payload(payload) for key, payload in self._read_all().items()
        }

    async def _commit(self, pending: dict[str, Connection]) -> None:
        all_records = self._read_all()
        for key, connection in pending.items():
            all_records[key] = asdict(connection)
        self._write_all(all_records)

    def _read_all(self) -> dict[str, dict]:
        if not self._path.exists():
            return {}

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise StorageError(f"Could not read connection store: {error}") from error
        if not isinstance(raw, dict):
            raise StorageError("Connection store file is invalid; expected top-level JSON object.")
        return raw

    def _write_all(self, payload: dict[str, dict]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f"{self._path.name}.",
                suffix=".tmp",
                dir=self._path.parent,
            )
        except OSError as error:
            raise StorageError(f"Could not write connection store: {error}") from error
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except OSError as error:
            raise StorageError(f"Could not write connection store: {error}") from error
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
