"""
レジストリ操作の統合テスト（インメモリ永続化サービス）

検証項目:
  1. 登録時の検証（未登録オーナー・一意制約・他者のグループ・衝突時の取り消し）
  2. マスク付き更新（変更なしなら書き込まない）
  3. バーティパッドとバーティポートのリンク整合（作成・移動・削除・補償）
  4. バーティポート削除の方針（reject / detach）
  5. グループのメンバー操作（集合としての追加・削除・逆参照の整合）
  6. タイムアウト → Unavailable
"""
import asyncio
import sys
import uuid

import pytest

from asset_registry.errors import (
    Conflict,
    Forbidden,
    InvalidMask,
    InvalidPayload,
    NotFound,
    Unavailable,
)
from asset_registry.models import AssetKind, AssetRef
from asset_registry.payloads import (
    AircraftUpdate,
    AssetGroupUpdate,
    RegisterAssetGroupPayload,
    VertipadUpdate,
)
from asset_registry.registry import AssetRegistry, RemovalPolicy
from asset_registry.sample_data import (
    aircraft_payload,
    new_operator,
    new_registry,
    run,
    vertipad_payload,
    vertiport_payload,
)
from asset_registry.storage import InMemoryStore, RecordKind

passed = 0
failed = 0


def run_test(name, func):
    global passed, failed
    try:
        func()
        passed += 1
        print(f"  ✅ {name}")
    except AssertionError as e:
        failed += 1
        print(f"  ❌ {name}: {e}")
    except Exception as e:
        failed += 1
        print(f"  ❌ {name}: 例外発生 {e.__class__.__name__}: {e}")


# ─────────────────────────────────
# テスト用の永続化サービス
# ─────────────────────────────────

class CountingStore(InMemoryStore):
    """update の呼び出し回数を数える"""

    def __init__(self):
        super().__init__()
        self.updates = 0

    async def update(self, kind, record_id, fields, expected=None):
        self.updates += 1
        return await super().update(kind, record_id, fields, expected)


class RacingStore(InMemoryStore):
    """バーティパッド一覧の更新直前に、別ワーカーが一覧を書き換える"""

    async def update(self, kind, record_id, fields, expected=None):
        if kind is RecordKind.VERTIPORT and "vertipads" in fields:
            current = await self.get(kind, record_id)
            await super().update(
                kind, record_id, {"vertipads": current["vertipads"] + [uuid.uuid4()]},
            )
        return await super().update(kind, record_id, fields, expected)


class GroupRacingStore(InMemoryStore):
    """armed の間、グループのメンバー一覧の更新直前に別ワーカーが一覧を書き換える"""

    def __init__(self):
        super().__init__()
        self.armed = False

    async def update(self, kind, record_id, fields, expected=None):
        if self.armed and kind is RecordKind.ASSET_GROUP and "assets" in fields:
            current = await self.get(kind, record_id)
            rival = AssetRef(AssetKind.AIRCRAFT, uuid.uuid4()).to_record()
            await super().update(kind, record_id, {"assets": current["assets"] + [rival]})
        return await super().update(kind, record_id, fields, expected)


class VanishingParentStore(InMemoryStore):
    """バーティパッドの作成直後に、別ワーカーが親バーティポートを削除する"""

    async def insert(self, kind, record):
        inserted = await super().insert(kind, record)
        if kind is RecordKind.VERTIPAD:
            await super().delete(RecordKind.VERTIPORT, record["vertiport_id"])
        return inserted


class SlowStore(InMemoryStore):
    async def get(self, kind, record_id):
        await asyncio.sleep(1.0)
        return await super().get(kind, record_id)


def _group(registry, owner, *assets):
    return run(registry.register_asset_group(
        RegisterAssetGroupPayload(owner=str(owner), assets=[str(a) for a in assets])
    ))


# ═══════════════════════════════════════
# 1. 登録時の検証
# ═══════════════════════════════════════
def test_register_and_get():
    """登録した機体を取得でき、登録記号は大文字に正規化される"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(
        aircraft_payload(o1, registration_number=" ja501v ")))
    aircraft = run(registry.get_aircraft(a1))
    assert aircraft.registration_number == "JA501V"
    assert aircraft.owner == o1
    assert aircraft.basics.updated_at is None
    assert [a.id for a in run(registry.list_aircraft())] == [a1]

def test_register_unknown_owner():
    """未登録オーナーでの登録は NotFound"""
    registry, _ = new_registry()
    with pytest.raises(NotFound):
        run(registry.register_aircraft(aircraft_payload(uuid.uuid4())))
    assert run(registry.list_aircraft()) == []

def test_register_bad_owner_format():
    """ボディ内の識別子の書式不正は InvalidPayload"""
    registry, _ = new_registry()
    with pytest.raises(InvalidPayload):
        run(registry.register_aircraft(aircraft_payload("owner-1")))

def test_register_duplicate_registration():
    """登録記号の重複は Conflict"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    run(registry.register_aircraft(aircraft_payload(o1, registration_number="JA01EV")))
    with pytest.raises(Conflict):
        run(registry.register_aircraft(aircraft_payload(o1, registration_number="ja01ev")))

def test_register_into_group():
    """グループ指定で登録すると、グループのメンバー一覧に追加される"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    g1 = _group(registry, o1)
    a1 = run(registry.register_aircraft(aircraft_payload(o1, group_id=str(g1))))
    assert run(registry.expand_group(g1)) == [AssetRef(AssetKind.AIRCRAFT, a1)]
    assert run(registry.get_aircraft(a1)).group_id == g1

def test_register_into_group_conflict_rolls_back():
    """メンバー一覧の同時更新で衝突したら機体を取り消して Conflict、再試行は成功する"""
    store = GroupRacingStore()
    registry = AssetRegistry(store)
    o1 = new_operator(registry)
    g1 = _group(registry, o1)
    payload = aircraft_payload(o1, group_id=str(g1), registration_number="JA99ZZ")

    store.armed = True
    with pytest.raises(Conflict):
        run(registry.register_aircraft(payload))
    assert run(registry.list_aircraft()) == [], "衝突した登録の機体が残っている"

    store.armed = False
    a1 = run(registry.register_aircraft(payload))
    assert run(registry.get_aircraft(a1)).registration_number == "JA99ZZ"
    assert AssetRef(AssetKind.AIRCRAFT, a1) in run(registry.expand_group(g1))

def test_register_into_foreign_group():
    """他オペレーターのグループを指定した登録は Forbidden で、何も作られない"""
    registry, _ = new_registry()
    o1 = new_operator(registry, "O1")
    o2 = new_operator(registry, "O2")
    g2 = _group(registry, o2)
    with pytest.raises(Forbidden):
        run(registry.register_aircraft(aircraft_payload(o1, group_id=str(g2))))
    assert run(registry.list_aircraft()) == []
    assert run(registry.expand_group(g2)) == []

def test_register_unknown_last_vertiport():
    """存在しない最終バーティポートは NotFound"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    with pytest.raises(NotFound):
        run(registry.register_aircraft(
            aircraft_payload(o1, last_vertiport_id=str(uuid.uuid4()))))


# ═══════════════════════════════════════
# 2. マスク付き更新
# ═══════════════════════════════════════
def test_update_only_masked():
    """マスク外の serial_number は変更されない"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    before = run(registry.get_aircraft(a1))
    update = AircraftUpdate(description="night ops", serial_number="SN-OTHER")
    run(registry.update_aircraft(a1, update, ['description']))
    after = run(registry.get_aircraft(a1))
    assert after.description == "night ops"
    assert after.serial_number == before.serial_number
    assert after.basics.updated_at is not None

def test_noop_update_writes_nothing():
    """値が変わらない更新は書き込みを行わない"""
    store = CountingStore()
    registry = AssetRegistry(store)
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1, description="x")))
    writes = store.updates
    result = run(registry.update_aircraft(a1, AircraftUpdate(description="x"), ['description']))
    assert store.updates == writes, "変更なしで書き込みが発生した"
    assert result.basics.updated_at is None

def test_update_mask_checked_first():
    """不正なマスクは存在確認より先に InvalidMask"""
    registry, _ = new_registry()
    with pytest.raises(InvalidMask):
        run(registry.update_aircraft(uuid.uuid4(), AircraftUpdate(), []))
    with pytest.raises(NotFound):
        run(registry.update_aircraft(uuid.uuid4(), AircraftUpdate(), ['name']))

def test_update_unknown_last_vertiport():
    """存在しないバーティポートを最終バーティポートにする更新は NotFound"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    with pytest.raises(NotFound):
        run(registry.update_aircraft(
            a1, AircraftUpdate(last_vertiport_id=str(uuid.uuid4())),
            ['last_vertiport_id'],
        ))
    assert run(registry.get_aircraft(a1)).last_vertiport_id is None


# ═══════════════════════════════════════
# 3. バーティパッドのリンク整合
# ═══════════════════════════════════════
def test_vertipad_linked():
    """登録したバーティパッドは親バーティポートの一覧に載る"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    pad = run(registry.register_vertipad(vertipad_payload(vp, name="Pad A")))
    assert run(registry.get_vertiport(vp)).vertipads == [pad]
    assert run(registry.get_vertipad(pad)).vertiport_id == vp
    assert [p.id for p in run(registry.list_vertipads(vp))] == [pad]

def test_vertipad_unknown_vertiport():
    """存在しないバーティポートへのバーティパッド登録は NotFound"""
    registry, _ = new_registry()
    with pytest.raises(NotFound):
        run(registry.register_vertipad(vertipad_payload(uuid.uuid4())))
    assert run(registry.list_vertipads()) == []

def test_vertipad_compensation():
    """一覧の同時更新で衝突したら、作成したバーティパッドを取り消して Conflict"""
    store = RacingStore()
    registry = AssetRegistry(store)
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    with pytest.raises(Conflict):
        run(registry.register_vertipad(vertipad_payload(vp)))
    assert run(registry.list_vertipads(vp)) == [], "補償削除されていない"

def test_vertipad_parent_vanished():
    """作成直後に親バーティポートが消えたら、バーティパッドを取り消して NotFound"""
    store = VanishingParentStore()
    registry = AssetRegistry(store)
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    with pytest.raises(NotFound):
        run(registry.register_vertipad(vertipad_payload(vp)))
    assert run(registry.list_vertipads()) == [], "親のないバーティパッドが残っている"

def test_vertipad_move():
    """vertiport_id の変更で、移動元の一覧から外れ移動先の一覧に載る"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp1 = run(registry.register_vertiport(vertiport_payload(o1)))
    vp2 = run(registry.register_vertiport(vertiport_payload(o1)))
    pad = run(registry.register_vertipad(vertipad_payload(vp1)))
    run(registry.update_vertipad(
        pad, VertipadUpdate(vertiport_id=str(vp2)), ['vertiport_id']))
    assert run(registry.get_vertiport(vp1)).vertipads == []
    assert run(registry.get_vertiport(vp2)).vertipads == [pad]
    assert run(registry.get_vertipad(pad)).vertiport_id == vp2

def test_vertipad_parent_not_nullable():
    """バーティパッドの vertiport_id を更新で null にはできない"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    pad = run(registry.register_vertipad(vertipad_payload(vp)))
    with pytest.raises(InvalidPayload):
        run(registry.update_vertipad(pad, VertipadUpdate(vertiport_id=None), ['vertiport_id']))

def test_vertipad_remove_unlinks():
    """バーティパッド削除で親の一覧からも外れる"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    pad = run(registry.register_vertipad(vertipad_payload(vp)))
    run(registry.remove_vertipad(pad))
    assert run(registry.get_vertiport(vp)).vertipads == []
    with pytest.raises(NotFound):
        run(registry.get_vertipad(pad))


# ═══════════════════════════════════════
# 4. バーティポート削除の方針
# ═══════════════════════════════════════
def test_remove_vertiport_reject():
    """reject: バーティパッドが残っていれば Conflict で、何も変わらない"""
    registry, _ = new_registry(vertiport_removal_policy="reject")
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    pad = run(registry.register_vertipad(vertipad_payload(vp)))
    with pytest.raises(Conflict):
        run(registry.remove_vertiport(vp))
    assert run(registry.get_vertiport(vp)).vertipads == [pad]
    assert run(registry.get_vertipad(pad)).vertiport_id == vp

def test_remove_vertiport_ignores_stale_ids():
    """一覧に残った削除済み・移動済みのIDは reject の対象にならない"""
    registry, store = new_registry()
    o1 = new_operator(registry)
    vp1 = run(registry.register_vertiport(vertiport_payload(o1)))
    vp2 = run(registry.register_vertiport(vertiport_payload(o1)))
    moved = run(registry.register_vertipad(vertipad_payload(vp1)))
    deleted = run(registry.register_vertipad(vertipad_payload(vp1)))
    # 移動元の一覧からの除外に失敗した移動と、一覧を更新せずに消えたバーティパッド
    run(store.update(RecordKind.VERTIPAD, moved, {"vertiport_id": vp2}))
    run(store.update(RecordKind.VERTIPORT, vp2, {"vertipads": [moved]}))
    run(store.delete(RecordKind.VERTIPAD, deleted))
    assert run(registry.get_vertiport(vp1)).vertipads == [moved, deleted]

    run(registry.remove_vertiport(vp1, RemovalPolicy.REJECT))
    with pytest.raises(NotFound):
        run(registry.get_vertiport(vp1))
    assert run(registry.get_vertipad(moved)).vertiport_id == vp2

def test_remove_vertiport_detach():
    """detach: バーティパッドは vertiport_id が外れ、バーティポートは消える"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    pad = run(registry.register_vertipad(vertipad_payload(vp)))
    run(registry.remove_vertiport(vp, RemovalPolicy.DETACH))
    assert run(registry.get_vertipad(pad)).vertiport_id is None
    with pytest.raises(NotFound):
        run(registry.get_vertiport(vp))

def test_remove_vertiport_without_pads():
    """バーティパッドがなければ reject でも削除できる"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    run(registry.remove_vertiport(vp, "reject"))
    assert run(registry.list_vertiports()) == []

def test_remove_vertiport_clears_aircraft():
    """削除したバーティポートを最終バーティポートに持つ機体は参照が外れる"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    a1 = run(registry.register_aircraft(aircraft_payload(o1, last_vertiport_id=str(vp))))
    run(registry.remove_vertiport(vp))
    assert run(registry.get_aircraft(a1)).last_vertiport_id is None

def test_remove_vertiport_leaves_group():
    """グループに所属するバーティポートを削除するとメンバー一覧から外れる"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    g1 = _group(registry, o1, vp)
    run(registry.remove_vertiport(vp))
    assert run(registry.expand_group(g1)) == []


# ═══════════════════════════════════════
# 5. グループのメンバー操作
# ═══════════════════════════════════════
def test_add_member_twice_is_noop():
    """既存メンバーの追加は何もしない（集合）"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    g1 = _group(registry, o1, a1)
    before = run(registry.get_asset_group(g1))
    after = run(registry.add_group_assets(g1, [str(a1), str(a1)]))
    assert after.assets == before.assets
    assert after.updated_at == before.updated_at

def test_add_member_mixed_kinds():
    """機体とバーティポートを同じグループに追加できる"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    g1 = _group(registry, o1)
    group = run(registry.add_group_assets(g1, [str(a1), str(vp)]))
    assert group.assets == [
        AssetRef(AssetKind.AIRCRAFT, a1), AssetRef(AssetKind.VERTIPORT, vp),
    ]
    assert run(registry.get_vertiport(vp)).group_id == g1

def test_add_foreign_asset_forbidden():
    """グループ所有者以外が所有する資産は追加できない"""
    registry, _ = new_registry()
    o1 = new_operator(registry, "O1")
    o2 = new_operator(registry, "O2")
    a2 = run(registry.register_aircraft(aircraft_payload(o2)))
    g1 = _group(registry, o1)
    with pytest.raises(Forbidden):
        run(registry.add_group_assets(g1, [str(a2)]))

def test_asset_in_one_group_only():
    """別のグループに所属している資産の追加は Conflict"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    _group(registry, o1, a1)
    g2 = _group(registry, o1)
    with pytest.raises(Conflict):
        run(registry.add_group_assets(g2, [str(a1)]))

def test_vertipad_not_groupable():
    """バーティパッド単体はグループに追加できない"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    pad = run(registry.register_vertipad(vertipad_payload(vp)))
    g1 = _group(registry, o1)
    with pytest.raises(InvalidPayload):
        run(registry.add_group_assets(g1, [str(pad)]))

def test_remove_member_clears_back_reference():
    """メンバー削除で資産側の group_id も外れる"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    g1 = _group(registry, o1, a1)
    group = run(registry.remove_group_assets(g1, [str(a1)]))
    assert group.assets == []
    assert run(registry.get_aircraft(a1)).group_id is None

def test_replace_members():
    """assets マスクでメンバー一覧を差し替える"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    a2 = run(registry.register_aircraft(aircraft_payload(o1)))
    g1 = _group(registry, o1, a1)
    group = run(registry.update_asset_group(
        g1, AssetGroupUpdate(assets=[str(a2)]), ['assets']))
    assert group.member_ids == [a2]
    assert run(registry.get_aircraft(a1)).group_id is None
    assert run(registry.get_aircraft(a2)).group_id == g1

def test_remove_group_clears_back_references():
    """グループ削除で全メンバーの group_id が外れる"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    vp = run(registry.register_vertiport(vertiport_payload(o1)))
    g1 = _group(registry, o1, a1, vp)
    run(registry.remove_asset_group(g1))
    assert run(registry.get_aircraft(a1)).group_id is None
    assert run(registry.get_vertiport(vp)).group_id is None
    with pytest.raises(NotFound):
        run(registry.expand_group(g1))
    assert run(registry.list_asset_groups(o1)) == []

def test_remove_aircraft_leaves_group():
    """機体の削除でグループのメンバー一覧からも外れる"""
    registry, _ = new_registry()
    o1 = new_operator(registry)
    a1 = run(registry.register_aircraft(aircraft_payload(o1)))
    g1 = _group(registry, o1, a1)
    run(registry.remove_aircraft(a1))
    assert run(registry.expand_group(g1)) == []
    with pytest.raises(NotFound):
        run(registry.remove_aircraft(a1))


# ═══════════════════════════════════════
# 6. タイムアウト
# ═══════════════════════════════════════
def test_timeout_unavailable():
    """永続化サービスの応答が遅ければ Unavailable"""
    registry = AssetRegistry(SlowStore(), timeout=0.05)
    with pytest.raises(Unavailable):
        run(registry.get_aircraft(uuid.uuid4()))

def test_timeout_per_call():
    """呼び出しごとのタイムアウト指定が既定値より優先される"""
    registry = AssetRegistry(SlowStore(), timeout=30.0)
    with pytest.raises(Unavailable):
        run(registry.get_operator(uuid.uuid4(), timeout=0.05))


# ═══════════════════════════════════════
# 実行
# ═══════════════════════════════════════
if __name__ == '__main__':
    sections = [
        ("登録", [
            ("登録と取得", test_register_and_get),
            ("未登録オーナー", test_register_unknown_owner),
            ("オーナーの書式不正", test_register_bad_owner_format),
            ("登録記号の重複", test_register_duplicate_registration),
            ("グループ指定", test_register_into_group),
            ("グループ登録の衝突は取り消し", test_register_into_group_conflict_rolls_back),
            ("他者のグループ", test_register_into_foreign_group),
            ("未登録の最終バーティポート", test_register_unknown_last_vertiport),
        ]),
        ("マスク付き更新", [
            ("マスク外は不変", test_update_only_masked),
            ("変更なしは書き込みなし", test_noop_update_writes_nothing),
            ("マスクの検証が先", test_update_mask_checked_first),
            ("未登録の最終バーティポート", test_update_unknown_last_vertiport),
        ]),
        ("バーティパッド", [
            ("一覧へのリンク", test_vertipad_linked),
            ("未登録のバーティポート", test_vertipad_unknown_vertiport),
            ("衝突時の補償", test_vertipad_compensation),
            ("親の同時削除", test_vertipad_parent_vanished),
            ("移動", test_vertipad_move),
            ("親はnull不可", test_vertipad_parent_not_nullable),
            ("削除で一覧から外れる", test_vertipad_remove_unlinks),
        ]),
        ("バーティポート削除", [
            ("reject", test_remove_vertiport_reject),
            ("古いIDは無視", test_remove_vertiport_ignores_stale_ids),
            ("detach", test_remove_vertiport_detach),
            ("バーティパッドなし", test_remove_vertiport_without_pads),
            ("機体の最終バーティポート", test_remove_vertiport_clears_aircraft),
            ("グループから外れる", test_remove_vertiport_leaves_group),
        ]),
        ("グループ", [
            ("重複追加は no-op", test_add_member_twice_is_noop),
            ("種別混在", test_add_member_mixed_kinds),
            ("他者の資産", test_add_foreign_asset_forbidden),
            ("所属は1グループ", test_asset_in_one_group_only),
            ("バーティパッドは不可", test_vertipad_not_groupable),
            ("メンバー削除", test_remove_member_clears_back_reference),
            ("メンバー差し替え", test_replace_members),
            ("グループ削除", test_remove_group_clears_back_references),
            ("機体削除", test_remove_aircraft_leaves_group),
        ]),
        ("タイムアウト", [
            ("Unavailable", test_timeout_unavailable),
            ("呼び出しごとの指定", test_timeout_per_call),
        ]),
    ]

    for section_name, tests in sections:
        print(f"\n[{section_name}]")
        for test_name, test_func in tests:
            run_test(test_name, test_func)

    print(f"\n{'='*50}")
    print(f"結果: {passed} 件通過, {failed} 件失敗 / 全 {passed+failed} 件")
    if failed > 0:
        print("❌ テスト失敗あり")
        sys.exit(1)
    else:
        print("✅ 全テスト通過")
