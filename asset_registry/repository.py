"""
Asset Registry - リポジトリ層（PostgreSQL版 永続化サービス）

責務:
  - 永続化サービスの論理操作（get / list / insert / update / delete）のSQL実装
  - asyncpg の例外をレジストリのエラー分類へ変換
  - 削除時のアーカイブ処理（論理削除フラグの完全排除、物理移動）

設計方針:
  - asyncpg コネクションプールから接続を取得して操作する
  - 保証するのは1レコード単位の原子性のみ（複数レコードにまたがる整合はレジストリ層の責務）
  - update の expected は WHERE 句の前提条件として評価する（比較更新）
  - アーカイブ処理はトランザクションで原子性を保証する
"""
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional, Tuple

import asyncpg

from asset_registry.errors import Conflict, NotFound, Unavailable
from asset_registry.storage import PersistenceService, RecordKind

_BASICS_COLUMNS = (
    "id", "name", "group_id", "owner", "whitelist", "status", "schedule",
    "created_at", "updated_at",
)

# レコード種別 → (テーブル名, 列)
TABLES: Dict[RecordKind, Tuple[str, Tuple[str, ...]]] = {
    RecordKind.OPERATOR: (
        "operators", ("id", "name", "country", "created_at"),
    ),
    RecordKind.AIRCRAFT: (
        "aircraft", _BASICS_COLUMNS + (
            "vehicle_model_id", "manufacturer", "serial_number",
            "registration_number", "description", "max_payload_kg",
            "max_range_km", "last_vertiport_id", "last_maintenance",
            "next_maintenance",
        ),
    ),
    RecordKind.VERTIPORT: (
        "vertiports", _BASICS_COLUMNS + ("description", "location", "vertipads"),
    ),
    RecordKind.VERTIPAD: (
        "vertipads", (
            "id", "name", "vertiport_id", "location", "enabled", "occupied",
            "schedule", "created_at", "updated_at",
        ),
    ),
    RecordKind.ASSET_GROUP: (
        "asset_groups", (
            "id", "name", "owner", "delegatee", "assets", "created_at",
            "updated_at",
        ),
    ),
}


def _table(kind: RecordKind) -> Tuple[str, Tuple[str, ...]]:
    return TABLES[kind]


def _check_columns(kind: RecordKind, names) -> None:
    """列名はSQLに直接埋め込むため、定義済みの列以外は受け付けない。"""
    _, columns = _table(kind)
    unknown = [n for n in names if n not in columns]
    if unknown:
        raise ValueError(f"unknown {kind.value} columns: {', '.join(unknown)}")


# ─────────────────────────────────
# SQL組み立て（DBに触れない純粋関数）
# ─────────────────────────────────

def build_select(kind: RecordKind,
                 criteria: Optional[Mapping[str, Any]] = None) -> Tuple[str, List[Any]]:
    table, columns = _table(kind)
    criteria = dict(criteria or {})
    _check_columns(kind, criteria)
    sql = f"SELECT {', '.join(columns)} FROM {table}"
    args: List[Any] = []
    clauses = []
    for name, value in criteria.items():
        if value is None:
            clauses.append(f"{name} IS NULL")
        else:
            args.append(value)
            clauses.append(f"{name} = ${len(args)}")
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    return sql + " ORDER BY created_at, id", args


def build_insert(kind: RecordKind, record: Mapping[str, Any]) -> Tuple[str, List[Any]]:
    table, columns = _table(kind)
    _check_columns(kind, record)
    names = [c for c in columns if c in record]
    placeholders = ", ".join(f"${i}" for i in range(1, len(names) + 1))
    sql = (
        f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders}) "
        f"RETURNING {', '.join(columns)}"
    )
    return sql, [record[n] for n in names]


def build_update(kind: RecordKind, record_id, fields: Mapping[str, Any],
                 expected: Optional[Mapping[str, Any]] = None) -> Tuple[str, List[Any]]:
    table, columns = _table(kind)
    fields = {k: v for k, v in fields.items() if k != "id"}
    expected = dict(expected or {})
    if not fields:
        raise ValueError("update needs at least one field")
    _check_columns(kind, fields)
    _check_columns(kind, expected)

    args: List[Any] = [record_id]
    assignments = []
    for name, value in fields.items():
        args.append(value)
        assignments.append(f"{name} = ${len(args)}")
    conditions = ["id = $1"]
    for name, value in expected.items():
        args.append(value)
        conditions.append(f"{name} IS NOT DISTINCT FROM ${len(args)}")
    sql = (
        f"UPDATE {table} SET {', '.join(assignments)} "
        f"WHERE {' AND '.join(conditions)} "
        f"RETURNING {', '.join(columns)}"
    )
    return sql, args


@contextmanager
def _storage_errors(kind: RecordKind, operation: str):
    """asyncpg の例外をレジストリのエラー分類に変換する。"""
    try:
        yield
    except asyncpg.exceptions.UniqueViolationError as e:
        raise Conflict(
            f"{kind.value} {operation} violates {e.constraint_name or 'a unique constraint'}"
        ) from e
    except asyncpg.exceptions.CheckViolationError as e:
        raise Conflict(f"{kind.value} {operation} violates a check constraint") from e
    except (asyncpg.exceptions.PostgresConnectionError,
            asyncpg.exceptions.InterfaceError,
            OSError) as e:
        raise Unavailable(f"database unavailable during {kind.value} {operation}") from e


class PostgresStore(PersistenceService):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get(self, kind, record_id):
        table, columns = _table(kind)
        with _storage_errors(kind, "get"):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {', '.join(columns)} FROM {table} WHERE id = $1",
                    record_id,
                )
        if row is None:
            raise NotFound(kind.value, record_id)
        return dict(row)

    async def list(self, kind, filter=None):
        sql, args = build_select(kind, filter)
        with _storage_errors(kind, "list"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)
        return [dict(r) for r in rows]

    async def insert(self, kind, record):
        sql, args = build_insert(kind, record)
        with _storage_errors(kind, "insert"):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(sql, *args)
        return dict(row)

    async def update(self, kind, record_id, fields, expected=None):
        """
        1レコードを更新する。
        該当行がなければ、存在しない(NotFound)か前提条件の不一致(Conflict)かを判定する。
        """
        table, _ = _table(kind)
        sql, args = build_update(kind, record_id, fields, expected)
        with _storage_errors(kind, "update"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(sql, *args)
                    if row is None:
                        exists = await conn.fetchval(
                            f"SELECT 1 FROM {table} WHERE id = $1", record_id,
                        )
        if row is None:
            if exists:
                raise Conflict(f"{kind.value} {record_id} was modified concurrently")
            raise NotFound(kind.value, record_id)
        return dict(row)

    # ═════════════════════════════════
    # 削除（アーカイブ処理）
    #   対象レコードをアーカイブテーブルへINSERT SELECTし、元テーブルからDELETEする。
    #   全操作をトランザクションで囲み、原子性を保証する。
    # ═════════════════════════════════

    async def delete(self, kind, record_id):
        table, _ = _table(kind)
        with _storage_errors(kind, "delete"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    archive_id = await conn.fetchval(
                        f'''
                        INSERT INTO asset_archive (kind, original_id, record)
                        SELECT $1, t.id, to_jsonb(t)
                        FROM {table} t
                        WHERE t.id = $2
                        RETURNING archive_id
                        ''',
                        kind.value, record_id,
                    )
                    if archive_id is not None:
                        await conn.execute(
                            f"DELETE FROM {table} WHERE id = $1", record_id,
                        )
        if archive_id is None:
            raise NotFound(kind.value, record_id)
