"""
Asset Registry - コマンドライン

責務:
  - 運用向けの最小限のCLI（テーブル初期化・登録・資産解決・委任・削除）
  - PostgreSQLコネクションプールの生成と後始末
  - ロガー設定とuvloopの有効化（CLI実行時のみ）

使用例:
  asset-registry init-db
  asset-registry register-operator "Sky Ops" --country JP
  asset-registry operator-assets <operator_id> --mode delegated_to
  asset-registry delegate <group_id> <operator_id> --as <owner_id>
  asset-registry remove-vertiport <vertiport_id> --policy detach
"""
import argparse
import asyncio
import json
import logging
import sys
import time

from asset_registry import db_config
from asset_registry.database import init_db
from asset_registry.delegation import ResolveMode
from asset_registry.errors import RegistryError
from asset_registry.payloads import (
    RegisterAircraftPayload,
    RegisterAssetGroupPayload,
    RegisterOperatorPayload,
    RegisterVertipadPayload,
    RegisterVertiportPayload,
)
from asset_registry.registry import AssetRegistry, RemovalPolicy
from asset_registry.repository import PostgresStore

logger = logging.getLogger("asset_registry")


# ─────────────────────────────────
# サブコマンド
# ─────────────────────────────────

async def _init_db(registry: AssetRegistry, pool, args):
    await init_db(pool)
    logger.info("テーブル初期化完了")


async def _register_operator(registry: AssetRegistry, pool, args):
    operator_id = await registry.register_operator(
        RegisterOperatorPayload(name=args.name, country=args.country))
    print(operator_id)


async def _register_aircraft(registry: AssetRegistry, pool, args):
    aircraft_id = await registry.register_aircraft(RegisterAircraftPayload(
        owner=args.owner,
        status=args.status,
        manufacturer=args.manufacturer,
        vehicle_model_id=args.model,
        serial_number=args.serial,
        registration_number=args.registration,
        max_payload_kg=args.max_payload,
        max_range_km=args.max_range,
        name=args.name,
        group_id=args.group,
    ))
    print(aircraft_id)


async def _register_vertiport(registry: AssetRegistry, pool, args):
    vertiport_id = await registry.register_vertiport(RegisterVertiportPayload(
        owner=args.owner,
        status=args.status,
        location=json.loads(args.location),
        name=args.name,
        group_id=args.group,
    ))
    print(vertiport_id)


async def _register_vertipad(registry: AssetRegistry, pool, args):
    vertipad_id = await registry.register_vertipad(RegisterVertipadPayload(
        vertiport_id=args.vertiport,
        location={"latitude": args.latitude, "longitude": args.longitude},
        name=args.name,
    ))
    print(vertipad_id)


async def _create_group(registry: AssetRegistry, pool, args):
    group_id = await registry.register_asset_group(RegisterAssetGroupPayload(
        owner=args.owner, name=args.name, assets=args.assets,
    ))
    print(group_id)


async def _operator_assets(registry: AssetRegistry, pool, args):
    assets = await registry.resolve_operator_assets(args.operator, args.mode)
    for ref, relation in assets.items():
        print(f"{ref.kind.value}\t{ref.id}\t{relation.value}")
    logger.info(f"資産解決: {len(assets)}件 (mode={args.mode})")


async def _delegate(registry: AssetRegistry, pool, args):
    group = await registry.set_delegatee(
        args.group, None if args.clear else args.operator, args.requester)
    print(group.delegatee or "-")


async def _remove_vertiport(registry: AssetRegistry, pool, args):
    await registry.remove_vertiport(args.vertiport, args.policy)


# ─────────────────────────────────
# 引数定義
# ─────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="asset-registry", description="航空資産レジストリ 運用CLI",
    )
    parser.add_argument(
        "--database-url",
        default=db_config.DATABASE_URL,
        help="接続先 (デフォルト: 環境変数 DATABASE_URL)",
    )
    parser.add_argument(
        "--pool-min",
        type=int,
        default=db_config.POOL_MIN_SIZE,
        help=f"プール最小接続数 (デフォルト: {db_config.POOL_MIN_SIZE})",
    )
    parser.add_argument(
        "--pool-max",
        type=int,
        default=db_config.POOL_MAX_SIZE,
        help=f"プール最大接続数 (デフォルト: {db_config.POOL_MAX_SIZE})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=db_config.STORAGE_TIMEOUT,
        help=f"DB呼び出し1回あたりのタイムアウト秒 (デフォルト: {db_config.STORAGE_TIMEOUT})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="テーブルを作成する")
    p.set_defaults(handler=_init_db)

    p = sub.add_parser("register-operator", help="オペレーターを登録する")
    p.add_argument("name")
    p.add_argument("--country", default=None)
    p.set_defaults(handler=_register_operator)

    p = sub.add_parser("register-aircraft", help="機体を登録する")
    p.add_argument("--owner", required=True)
    p.add_argument("--status", default="Available")
    p.add_argument("--manufacturer", required=True)
    p.add_argument("--model", required=True, help="vehicle model id")
    p.add_argument("--serial", required=True)
    p.add_argument("--registration", required=True)
    p.add_argument("--max-payload", type=float, required=True, help="kg")
    p.add_argument("--max-range", type=float, required=True, help="km")
    p.add_argument("--name", default=None)
    p.add_argument("--group", default=None)
    p.set_defaults(handler=_register_aircraft)

    p = sub.add_parser("register-vertiport", help="バーティポートを登録する")
    p.add_argument("--owner", required=True)
    p.add_argument("--status", default="Available")
    p.add_argument(
        "--location",
        required=True,
        help='エリア多角形のJSON (例: {"exterior": [[35.0, 139.0], ...]})',
    )
    p.add_argument("--name", default=None)
    p.add_argument("--group", default=None)
    p.set_defaults(handler=_register_vertiport)

    p = sub.add_parser("register-vertipad", help="バーティパッドを登録する")
    p.add_argument("vertiport")
    p.add_argument("latitude", type=float)
    p.add_argument("longitude", type=float)
    p.add_argument("--name", default=None)
    p.set_defaults(handler=_register_vertipad)

    p = sub.add_parser("create-group", help="資産グループを作成する")
    p.add_argument("--owner", required=True)
    p.add_argument("--name", default=None)
    p.add_argument("assets", nargs="*", help="メンバーにする機体・バーティポートのID")
    p.set_defaults(handler=_create_group)

    p = sub.add_parser("operator-assets", help="オペレーターの資産を解決する")
    p.add_argument("operator")
    p.add_argument(
        "--mode",
        choices=[m.value for m in ResolveMode],
        default=ResolveMode.ALL.value,
    )
    p.set_defaults(handler=_operator_assets)

    p = sub.add_parser("delegate", help="グループの委任先を設定・解除する")
    p.add_argument("group")
    p.add_argument("operator", nargs="?", default=None)
    p.add_argument("--as", dest="requester", required=True, help="要求元オペレーター")
    p.add_argument("--clear", action="store_true", help="委任を解除する")
    p.set_defaults(handler=_delegate)

    p = sub.add_parser("remove-vertiport", help="バーティポートを削除する")
    p.add_argument("vertiport")
    p.add_argument(
        "--policy",
        choices=[r.value for r in RemovalPolicy],
        default=db_config.VERTIPORT_REMOVAL_POLICY,
        help="配下のバーティパッドが残っている場合の扱い",
    )
    p.set_defaults(handler=_remove_vertiport)
    return parser


async def run(args) -> int:
    pool = await db_config.create_pool(args.database_url, args.pool_min, args.pool_max)
    registry = AssetRegistry(PostgresStore(pool), timeout=args.timeout)
    start = time.monotonic()
    try:
        await args.handler(registry, pool, args)
    except RegistryError as e:
        logger.error(f"{args.command} 失敗: {e.__class__.__name__}: {e}", exc_info=True)
        return 1
    finally:
        await pool.close()
    logger.info(f"{args.command} 完了 ({time.monotonic() - start:.2f}秒)")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "delegate" and not args.clear and args.operator is None:
        build_parser().error("delegate: operator か --clear のどちらかを指定してください")

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        import uvloop
        uvloop.install()
        logger.info("uvloop 有効化")
    except ImportError:
        pass

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
