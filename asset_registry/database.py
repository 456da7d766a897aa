"""
Asset Registry - データベース初期化・テーブル定義

責務:
  - PostgreSQLテーブルの生成
  - アーカイブテーブル（削除時の物理移動先。論理削除フラグは使わない）

テーブルとレコード種別の対応は repository.TABLES を参照。
資産間の参照（group_id / vertiport_id 等）には外部キーを張らない。
整合はレジストリ層の書き込み順序で保つ（1レコード単位の原子性のみを前提にする）。
"""
import asyncpg


async def init_db(pool: asyncpg.Pool):
    """データベースのテーブルを初期化する。"""
    async with pool.acquire() as conn:
        async with conn.transaction():
            # ══════════════════════════════════════
            # 1. オペレーター
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS operators (
                    id          UUID PRIMARY KEY,
                    name        TEXT NOT NULL,
                    country     TEXT,
                    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            ''')

            # ══════════════════════════════════════
            # 2. 機体
            #    登録記号・製造番号はフリート全体で一意
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS aircraft (
                    id                  UUID PRIMARY KEY,
                    name                TEXT,
                    group_id            UUID,
                    owner               UUID NOT NULL,
                    whitelist           UUID[] NOT NULL DEFAULT '{}',
                    status              TEXT NOT NULL,
                    schedule            TEXT,
                    vehicle_model_id    UUID NOT NULL,
                    manufacturer        TEXT NOT NULL,
                    serial_number       TEXT NOT NULL UNIQUE,
                    registration_number TEXT NOT NULL UNIQUE,
                    description         TEXT,
                    max_payload_kg      DOUBLE PRECISION NOT NULL,
                    max_range_km        DOUBLE PRECISION NOT NULL,
                    last_vertiport_id   UUID,
                    last_maintenance    TIMESTAMPTZ,
                    next_maintenance    TIMESTAMPTZ,
                    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at          TIMESTAMPTZ
                )
            ''')

            # ══════════════════════════════════════
            # 3. バーティポート
            #    vertipads は配下バーティパッドの順序付きリスト
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS vertiports (
                    id          UUID PRIMARY KEY,
                    name        TEXT,
                    group_id    UUID,
                    owner       UUID NOT NULL,
                    whitelist   UUID[] NOT NULL DEFAULT '{}',
                    status      TEXT NOT NULL,
                    schedule    TEXT,
                    description TEXT,
                    location    JSONB NOT NULL,
                    vertipads   UUID[] NOT NULL DEFAULT '{}',
                    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at  TIMESTAMPTZ
                )
            ''')

            # ══════════════════════════════════════
            # 4. バーティパッド
            #    vertiport_id は切り離し後のみNULL
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS vertipads (
                    id           UUID PRIMARY KEY,
                    name         TEXT,
                    vertiport_id UUID,
                    location     JSONB NOT NULL,
                    enabled      BOOLEAN NOT NULL DEFAULT TRUE,
                    occupied     BOOLEAN NOT NULL DEFAULT FALSE,
                    schedule     TEXT,
                    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at   TIMESTAMPTZ
                )
            ''')

            # ══════════════════════════════════════
            # 5. 資産グループ
            #    assets は [{"kind": ..., "id": ...}] の順序付き集合
            #    委任先は所有者と一致してはならない
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS asset_groups (
                    id          UUID PRIMARY KEY,
                    name        TEXT,
                    owner       UUID NOT NULL,
                    delegatee   UUID,
                    assets      JSONB NOT NULL DEFAULT '[]',
                    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at  TIMESTAMPTZ,
                    CHECK (delegatee IS NULL OR delegatee <> owner)
                )
            ''')

            # ══════════════════════════════════════
            # 6. インデックス（オペレーター別の資産解決で使う）
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_aircraft_owner
                    ON aircraft(owner)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_aircraft_last_vertiport
                    ON aircraft(last_vertiport_id)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_vertiports_owner
                    ON vertiports(owner)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_vertipads_vertiport
                    ON vertipads(vertiport_id)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_groups_owner
                    ON asset_groups(owner)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_groups_delegatee
                    ON asset_groups(delegatee)
            ''')

            # ══════════════════════════════════════
            # 7. アーカイブテーブル
            #    削除されたレコードを種別ごとにJSONBで保持する
            #    archive_id をサロゲートPKにすることで同一IDの複数回アーカイブにも対応
            # ══════════════════════════════════════
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS asset_archive (
                    archive_id  SERIAL PRIMARY KEY,
                    kind        TEXT NOT NULL,
                    original_id UUID NOT NULL,
                    record      JSONB NOT NULL,
                    archived_at TIMESTAMPTZ DEFAULT NOW()
                )
            ''')
