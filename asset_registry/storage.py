"""
Asset Registry - 永続化サービス境界

責務:
  - 永続化サービスの論理操作（get / list / insert / update / delete）の契約定義
  - 全呼び出しへのタイムアウト付与（期限切れは Unavailable）
  - インメモリ実装（テスト・ローカル検証用。PostgreSQL実装は repository.py）

前提:
  - 保証されるのは1レコード単位の原子性のみ
  - update の expected は同時更新検出用の前提条件（不一致は Conflict）
"""
import asyncio
import copy
import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from asset_registry.errors import Conflict, NotFound, Unavailable

logger = logging.getLogger("asset_registry")

Record = Dict[str, Any]


class RecordKind(Enum):
    OPERATOR = "operator"
    AIRCRAFT = "aircraft"
    VERTIPORT = "vertiport"
    VERTIPAD = "vertipad"
    ASSET_GROUP = "asset_group"


# 一意制約（永続化サービス側で保証する項目）
UNIQUE_FIELDS = {
    RecordKind.AIRCRAFT: ("registration_number", "serial_number"),
}


class PersistenceService:
    """永続化サービスの契約。実装は全メソッドを非同期で提供する。"""

    async def get(self, kind: RecordKind, record_id: uuid.UUID) -> Record:
        raise NotImplementedError

    async def list(self, kind: RecordKind,
                   filter: Optional[Mapping[str, Any]] = None) -> List[Record]:
        raise NotImplementedError

    async def insert(self, kind: RecordKind, record: Record) -> Record:
        raise NotImplementedError

    async def update(self, kind: RecordKind, record_id: uuid.UUID,
                     fields: Mapping[str, Any],
                     expected: Optional[Mapping[str, Any]] = None) -> Record:
        raise NotImplementedError

    async def delete(self, kind: RecordKind, record_id: uuid.UUID) -> None:
        raise NotImplementedError


# ═══════════════════════════════════════
# タイムアウト付きラッパー
# ═══════════════════════════════════════

class TimedStore(PersistenceService):
    """
    1回の操作（論理的な作業単位）の間だけ使うラッパー。
    各呼び出しを asyncio.wait_for で打ち切り、期限切れを Unavailable に変換する。
    書き込みの再試行は行わない（再試行方針は呼び出し側が決める）。
    """

    def __init__(self, store: PersistenceService, timeout: float):
        self._store = store
        self._timeout = timeout

    async def _bounded(self, operation: str, kind: RecordKind, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"永続化サービス タイムアウト: {operation} {kind.value} "
                f"({self._timeout}秒)"
            )
            raise Unavailable(
                f"persistence {operation} on {kind.value} timed out "
                f"after {self._timeout}s"
            ) from e

    async def get(self, kind, record_id):
        return await self._bounded("get", kind, self._store.get(kind, record_id))

    async def list(self, kind, filter=None):
        return await self._bounded("list", kind, self._store.list(kind, filter))

    async def insert(self, kind, record):
        return await self._bounded("insert", kind, self._store.insert(kind, record))

    async def update(self, kind, record_id, fields, expected=None):
        return await self._bounded(
            "update", kind, self._store.update(kind, record_id, fields, expected)
        )

    async def delete(self, kind, record_id):
        return await self._bounded("delete", kind, self._store.delete(kind, record_id))


# ═══════════════════════════════════════
# インメモリ実装
# ═══════════════════════════════════════

class InMemoryStore(PersistenceService):
    """
    プロセス内dictによる実装。
    各メソッドは await を挟まないため、asyncioタスク切替が起きず1レコード単位で原子的。
    返却値は常にコピー（呼び出し側の変更が保存内容に漏れない）。
    """

    def __init__(self):
        self._tables: Dict[RecordKind, Dict[uuid.UUID, Record]] = {
            kind: {} for kind in RecordKind
        }

    def _table(self, kind: RecordKind) -> Dict[uuid.UUID, Record]:
        return self._tables[kind]

    def _check_unique(self, kind: RecordKind, record: Record,
                      skip_id: Optional[uuid.UUID] = None):
        for name in UNIQUE_FIELDS.get(kind, ()):
            value = record.get(name)
            if value is None:
                continue
            for other_id, other in self._table(kind).items():
                if other_id != skip_id and other.get(name) == value:
                    raise Conflict(f"{kind.value}.{name} already exists: {value}")

    async def get(self, kind, record_id):
        record = self._table(kind).get(record_id)
        if record is None:
            raise NotFound(kind.value, record_id)
        return copy.deepcopy(record)

    async def list(self, kind, filter=None):
        criteria = dict(filter or {})
        return [
            copy.deepcopy(record)
            for record in self._table(kind).values()
            if all(record.get(k) == v for k, v in criteria.items())
        ]

    async def insert(self, kind, record):
        record_id = record["id"]
        if record_id in self._table(kind):
            raise Conflict(f"{kind.value} already exists: {record_id}")
        self._check_unique(kind, record)
        self._table(kind)[record_id] = copy.deepcopy(dict(record))
        return copy.deepcopy(record)

    async def update(self, kind, record_id, fields, expected=None):
        current = self._table(kind).get(record_id)
        if current is None:
            raise NotFound(kind.value, record_id)
        for name, value in (expected or {}).items():
            if current.get(name) != value:
                raise Conflict(
                    f"{kind.value} {record_id} was modified concurrently ({name})"
                )
        merged = dict(current)
        merged.update(copy.deepcopy(dict(fields)))
        merged["id"] = record_id
        self._check_unique(kind, merged, skip_id=record_id)
        self._table(kind)[record_id] = merged
        return copy.deepcopy(merged)

    async def delete(self, kind, record_id):
        if self._table(kind).pop(record_id, None) is None:
            raise NotFound(kind.value, record_id)
