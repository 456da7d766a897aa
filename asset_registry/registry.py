"""
Asset Registry - レジストリ操作

責務:
  - API/CLI層から呼ばれる操作の一元窓口
    （登録・マスク付き更新・削除・取得・オペレーター別の資産解決）
  - 入力検証 → Entity組み立て/マージ → 永続化サービスへの読み書き

設計方針:
  - 永続化サービスはコンストラクタで受け取る（グローバル状態を持たない）
  - 各操作は1つの論理的な作業単位。呼び出しごとにタイムアウトを指定できる
  - 複数レコードにまたがる書き込みは「子を作ってから親に繋ぐ」順序で行う
  - 書き込みの内部再試行はしない（Unavailable はそのまま呼び出し側へ）
"""
import logging
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional

from asset_registry import db_config
from asset_registry.delegation import (
    AccessDecision,
    AssetRelation,
    DelegationEngine,
    ResolveMode,
    check_access,
    require_operator,
)
from asset_registry.errors import (
    Conflict,
    Forbidden,
    InvalidFormat,
    NotFound,
    RegistryError,
)
from asset_registry.groups import GroupResolver
from asset_registry.identifiers import parse_identifier
from asset_registry.models import (
    Aircraft,
    AssetGroup,
    AssetRef,
    Operator,
    Vertipad,
    Vertiport,
)
from asset_registry.payloads import (
    AircraftField,
    AircraftUpdate,
    AssetGroupUpdate,
    RegisterAircraftPayload,
    RegisterAssetGroupPayload,
    RegisterOperatorPayload,
    RegisterVertipadPayload,
    RegisterVertiportPayload,
    VertipadField,
    VertipadUpdate,
    VertiportField,
    VertiportUpdate,
    merge_update,
    parse_mask,
    utcnow,
)
from asset_registry.storage import PersistenceService, RecordKind, TimedStore

logger = logging.getLogger("asset_registry")


class RemovalPolicy(Enum):
    """バーティパッドが残っているバーティポートの削除方針"""
    REJECT = "reject"    # Conflict で拒否
    DETACH = "detach"    # バーティパッドの vertiport_id を外してから削除


def parse_policy(value) -> RemovalPolicy:
    if isinstance(value, RemovalPolicy):
        return value
    try:
        return RemovalPolicy(value)
    except ValueError as e:
        raise InvalidFormat(f"invalid removal policy: {value!r}") from e


def changed_fields(before: Dict, after: Dict) -> Dict:
    return {k: v for k, v in after.items() if before.get(k) != v}


class AssetRegistry:
    def __init__(
        self,
        store: PersistenceService,
        *,
        timeout: float = db_config.STORAGE_TIMEOUT,
        vertiport_removal_policy=db_config.VERTIPORT_REMOVAL_POLICY,
        clock: Callable = utcnow,
    ):
        self._store = store
        self._timeout = timeout
        self._removal_policy = parse_policy(vertiport_removal_policy)
        self._clock = clock

    def _session(self, timeout: Optional[float]) -> TimedStore:
        return TimedStore(self._store, self._timeout if timeout is None else timeout)

    async def _load(self, store, kind: RecordKind, entity_type, entity_id):
        return entity_type.from_record(await store.get(kind, parse_identifier(entity_id)))

    async def _compensate(self, store, kind: RecordKind, record_id: uuid.UUID) -> None:
        """親へのリンクに失敗した新規レコードを取り消す（失敗は記録のみ）。"""
        try:
            await store.delete(kind, record_id)
        except RegistryError as e:
            logger.error(
                f"補償削除に失敗: {kind.value} {record_id} ({e.__class__.__name__}: {e})"
            )

    # ═══════════════════════════════════════
    # オペレーター
    # ═══════════════════════════════════════

    async def register_operator(self, payload: RegisterOperatorPayload, *,
                                timeout: Optional[float] = None) -> uuid.UUID:
        store = self._session(timeout)
        operator = payload.build(self._clock())
        await store.insert(RecordKind.OPERATOR, operator.to_record())
        logger.info(f"オペレーター登録: {operator.id} | {operator.name}")
        return operator.id

    async def get_operator(self, operator_id, *,
                           timeout: Optional[float] = None) -> Operator:
        return await self._load(
            self._session(timeout), RecordKind.OPERATOR, Operator, operator_id)

    # ═══════════════════════════════════════
    # 機体・バーティポート共通
    # ═══════════════════════════════════════

    async def _register_physical(self, store, kind: RecordKind, asset) -> uuid.UUID:
        """
        資産を登録する。グループ指定があれば、資産を作成してからメンバー一覧に繋ぐ。
        メンバー一覧の更新が同時更新で衝突した場合は、作成した資産を削除して
        Conflict を返す（再試行できる状態に戻す）。
        """
        now = asset.basics.created_at
        resolver = GroupResolver(store)
        await require_operator(store, asset.owner)
        group = None
        if asset.group_id is not None:
            group = await resolver.get_group(asset.group_id)
            if group.owner != asset.owner:
                raise Forbidden(
                    f"group {group.id} belongs to another operator ({group.owner})"
                )

        await store.insert(kind, asset.to_record())
        if group is not None:
            try:
                await resolver.link_member(group, asset.ref, now)
            except (Conflict, NotFound):
                logger.warning(
                    f"グループのメンバー一覧更新に失敗。作成を取り消す: "
                    f"{kind.value} {asset.id} | group={group.id}"
                )
                await self._compensate(store, kind, asset.id)
                raise
        logger.info(
            f"{kind.value} 登録: {asset.id} | owner={asset.owner} | group={asset.group_id}"
        )
        return asset.id

    async def _update_physical(self, store, kind: RecordKind, entity_type,
                               entity_id, update, mask, tags):
        parse_mask(mask, tags)
        current = await self._load(store, kind, entity_type, entity_id)
        merged = merge_update(current, update, mask, self._clock())
        if merged is current:
            logger.debug(f"{kind.value} 更新なし: {current.id}")
            return current
        if (isinstance(merged, Aircraft) and merged.last_vertiport_id is not None
                and merged.last_vertiport_id != current.last_vertiport_id):
            await store.get(RecordKind.VERTIPORT, merged.last_vertiport_id)
        await store.update(
            kind, current.id, changed_fields(current.to_record(), merged.to_record()),
        )
        logger.info(f"{kind.value} 更新: {current.id} | mask={list(mask)}")
        return merged

    # ═══════════════════════════════════════
    # 機体
    # ═══════════════════════════════════════

    async def register_aircraft(self, payload: RegisterAircraftPayload, *,
                                timeout: Optional[float] = None) -> uuid.UUID:
        store = self._session(timeout)
        aircraft = payload.build(self._clock())
        if aircraft.last_vertiport_id is not None:
            await store.get(RecordKind.VERTIPORT, aircraft.last_vertiport_id)
        return await self._register_physical(store, RecordKind.AIRCRAFT, aircraft)

    async def get_aircraft(self, aircraft_id, *,
                           timeout: Optional[float] = None) -> Aircraft:
        return await self._load(
            self._session(timeout), RecordKind.AIRCRAFT, Aircraft, aircraft_id)

    async def list_aircraft(self, *, timeout: Optional[float] = None) -> List[Aircraft]:
        records = await self._session(timeout).list(RecordKind.AIRCRAFT)
        return [Aircraft.from_record(r) for r in records]

    async def update_aircraft(self, aircraft_id, update: AircraftUpdate, mask, *,
                              timeout: Optional[float] = None) -> Aircraft:
        return await self._update_physical(
            self._session(timeout), RecordKind.AIRCRAFT, Aircraft, aircraft_id,
            update, mask, AircraftField,
        )

    async def remove_aircraft(self, aircraft_id, *,
                              timeout: Optional[float] = None) -> None:
        store = self._session(timeout)
        aircraft = await self._load(store, RecordKind.AIRCRAFT, Aircraft, aircraft_id)
        await GroupResolver(store).leave_groups(aircraft, self._clock())
        await store.delete(RecordKind.AIRCRAFT, aircraft.id)
        logger.info(f"aircraft 削除: {aircraft.id} | {aircraft.registration_number}")

    # ═══════════════════════════════════════
    # バーティポート
    # ═══════════════════════════════════════

    async def register_vertiport(self, payload: RegisterVertiportPayload, *,
                                 timeout: Optional[float] = None) -> uuid.UUID:
        store = self._session(timeout)
        vertiport = payload.build(self._clock())
        return await self._register_physical(store, RecordKind.VERTIPORT, vertiport)

    async def get_vertiport(self, vertiport_id, *,
                            timeout: Optional[float] = None) -> Vertiport:
        return await self._load(
            self._session(timeout), RecordKind.VERTIPORT, Vertiport, vertiport_id)

    async def list_vertiports(self, *,
                              timeout: Optional[float] = None) -> List[Vertiport]:
        records = await self._session(timeout).list(RecordKind.VERTIPORT)
        return [Vertiport.from_record(r) for r in records]

    async def update_vertiport(self, vertiport_id, update: VertiportUpdate, mask, *,
                               timeout: Optional[float] = None) -> Vertiport:
        return await self._update_physical(
            self._session(timeout), RecordKind.VERTIPORT, Vertiport, vertiport_id,
            update, mask, VertiportField,
        )

    async def _attached_vertipads(self, store, vertiport: Vertiport) -> List[uuid.UUID]:
        """
        現存し、vertiport_id がこのバーティポートを指すバーティパッドだけを返す。
        リストへの追加前に失敗した子も子側の参照から拾う。
        リストに残った古いID（削除済み・移動済み）は数えない。
        """
        records = await store.list(RecordKind.VERTIPAD, {"vertiport_id": vertiport.id})
        pads = [Vertipad.from_record(r).id for r in records]
        stale = [p for p in vertiport.vertipads if p not in pads]
        if stale:
            logger.debug(f"一覧に残った古いバーティパッドID: {vertiport.id} | {stale}")
        return pads

    async def remove_vertiport(self, vertiport_id, policy=None, *,
                               timeout: Optional[float] = None) -> None:
        """
        バーティポートを削除する。
        配下のバーティパッドが残っている場合、REJECT なら Conflict、
        DETACH なら各バーティパッドの vertiport_id を外してから削除する。
        """
        store = self._session(timeout)
        policy = self._removal_policy if policy is None else parse_policy(policy)
        vertiport = await self._load(
            store, RecordKind.VERTIPORT, Vertiport, vertiport_id)
        now = self._clock()

        attached = await self._attached_vertipads(store, vertiport)
        if attached and policy is RemovalPolicy.REJECT:
            raise Conflict(
                f"vertiport {vertiport.id} still hosts {len(attached)} vertipad(s)"
            )
        for pad_id in attached:
            try:
                await store.update(
                    RecordKind.VERTIPAD, pad_id,
                    {"vertiport_id": None, "updated_at": now},
                    expected={"vertiport_id": vertiport.id},
                )
            except NotFound:
                logger.warning(f"リスト上のバーティパッドが存在しない: {pad_id}")
            except Conflict:
                # 既に別のバーティポートへ移動済み
                logger.debug(f"バーティパッドは移動済み: {pad_id}")

        for record in await store.list(
                RecordKind.AIRCRAFT, {"last_vertiport_id": vertiport.id}):
            await store.update(
                RecordKind.AIRCRAFT, record["id"],
                {"last_vertiport_id": None, "updated_at": now},
            )

        await GroupResolver(store).leave_groups(vertiport, now)
        await store.delete(RecordKind.VERTIPORT, vertiport.id)
        logger.info(
            f"vertiport 削除: {vertiport.id} | 方針={policy.value} | "
            f"切り離し{len(attached)}件"
        )

    # ═══════════════════════════════════════
    # バーティパッド
    #   作成: バーティパッドを作成 → バーティポートのリストに追加
    #   削除: バーティポートのリストから除外 → バーティパッドを削除
    # ═══════════════════════════════════════

    async def _link_vertipad(self, store, vertiport_id: uuid.UUID,
                             pad_id: uuid.UUID, now) -> None:
        vertiport = await self._load(store, RecordKind.VERTIPORT, Vertiport, vertiport_id)
        if pad_id in vertiport.vertipads:
            return
        await store.update(
            RecordKind.VERTIPORT, vertiport.id,
            {"vertipads": vertiport.vertipads + [pad_id], "updated_at": now},
            expected={"vertipads": vertiport.vertipads},
        )

    async def _unlink_vertipad(self, store, vertiport_id: uuid.UUID,
                               pad_id: uuid.UUID, now) -> None:
        try:
            vertiport = await self._load(
                store, RecordKind.VERTIPORT, Vertiport, vertiport_id)
        except NotFound:
            logger.warning(f"親バーティポートが存在しない: {vertiport_id} (pad={pad_id})")
            return
        if pad_id not in vertiport.vertipads:
            return
        await store.update(
            RecordKind.VERTIPORT, vertiport.id,
            {
                "vertipads": [p for p in vertiport.vertipads if p != pad_id],
                "updated_at": now,
            },
            expected={"vertipads": vertiport.vertipads},
        )

    async def register_vertipad(self, payload: RegisterVertipadPayload, *,
                                timeout: Optional[float] = None) -> uuid.UUID:
        """
        バーティパッドを登録し、親バーティポートのリストに追加する。
        リスト更新が同時更新で衝突した場合や、親が同時に削除されていた場合は、
        作成したバーティパッドを削除して Conflict / NotFound を返す（補償処理）。
        通信障害の場合は未リンクのまま残る。
        """
        store = self._session(timeout)
        now = self._clock()
        pad = payload.build(now)
        await store.get(RecordKind.VERTIPORT, pad.vertiport_id)

        await store.insert(RecordKind.VERTIPAD, pad.to_record())
        try:
            await self._link_vertipad(store, pad.vertiport_id, pad.id, now)
        except (Conflict, NotFound) as e:
            logger.warning(
                f"バーティポートのリスト更新に失敗 ({e.__class__.__name__})。"
                f"作成を取り消す: {pad.id}"
            )
            await self._compensate(store, RecordKind.VERTIPAD, pad.id)
            raise
        logger.info(f"vertipad 登録: {pad.id} | vertiport={pad.vertiport_id}")
        return pad.id

    async def get_vertipad(self, vertipad_id, *,
                           timeout: Optional[float] = None) -> Vertipad:
        return await self._load(
            self._session(timeout), RecordKind.VERTIPAD, Vertipad, vertipad_id)

    async def list_vertipads(self, vertiport_id=None, *,
                             timeout: Optional[float] = None) -> List[Vertipad]:
        criteria = None
        if vertiport_id is not None:
            criteria = {"vertiport_id": parse_identifier(vertiport_id)}
        records = await self._session(timeout).list(RecordKind.VERTIPAD, criteria)
        return [Vertipad.from_record(r) for r in records]

    async def update_vertipad(self, vertipad_id, update: VertipadUpdate, mask, *,
                              timeout: Optional[float] = None) -> Vertipad:
        """
        バーティパッドを更新する。vertiport_id の変更は移動として扱い、
        バーティパッド更新 → 移動先リストに追加 → 移動元リストから除外 の順で書き込む。
        """
        store = self._session(timeout)
        parse_mask(mask, VertipadField)
        current = await self._load(store, RecordKind.VERTIPAD, Vertipad, vertipad_id)
        now = self._clock()
        merged = merge_update(current, update, mask, now)
        if merged is current:
            return current

        moved = merged.vertiport_id != current.vertiport_id
        if moved:
            await store.get(RecordKind.VERTIPORT, merged.vertiport_id)
        await store.update(
            RecordKind.VERTIPAD, current.id,
            changed_fields(current.to_record(), merged.to_record()),
        )
        if moved:
            await self._link_vertipad(store, merged.vertiport_id, current.id, now)
            if current.vertiport_id is not None:
                await self._unlink_vertipad(store, current.vertiport_id, current.id, now)
        logger.info(f"vertipad 更新: {current.id} | mask={list(mask)}")
        return merged

    async def remove_vertipad(self, vertipad_id, *,
                              timeout: Optional[float] = None) -> None:
        store = self._session(timeout)
        pad = await self._load(store, RecordKind.VERTIPAD, Vertipad, vertipad_id)
        if pad.vertiport_id is not None:
            await self._unlink_vertipad(store, pad.vertiport_id, pad.id, self._clock())
        await store.delete(RecordKind.VERTIPAD, pad.id)
        logger.info(f"vertipad 削除: {pad.id}")

    # ═══════════════════════════════════════
    # 資産グループ
    # ═══════════════════════════════════════

    async def register_asset_group(self, payload: RegisterAssetGroupPayload, *,
                                   timeout: Optional[float] = None) -> uuid.UUID:
        group = await GroupResolver(self._session(timeout)).create_group(
            payload, self._clock())
        return group.id

    async def get_asset_group(self, group_id, *,
                              timeout: Optional[float] = None) -> AssetGroup:
        return await self._load(
            self._session(timeout), RecordKind.ASSET_GROUP, AssetGroup, group_id)

    async def list_asset_groups(self, owner=None, *,
                                timeout: Optional[float] = None) -> List[AssetGroup]:
        criteria = None if owner is None else {"owner": parse_identifier(owner)}
        records = await self._session(timeout).list(RecordKind.ASSET_GROUP, criteria)
        return [AssetGroup.from_record(r) for r in records]

    async def update_asset_group(self, group_id, update: AssetGroupUpdate, mask, *,
                                 timeout: Optional[float] = None) -> AssetGroup:
        return await GroupResolver(self._session(timeout)).update_group(
            group_id, update, mask, self._clock())

    async def remove_asset_group(self, group_id, *,
                                 timeout: Optional[float] = None) -> None:
        await GroupResolver(self._session(timeout)).delete_group(
            group_id, self._clock())

    async def expand_group(self, group_id, *,
                           timeout: Optional[float] = None) -> List[AssetRef]:
        return await GroupResolver(self._session(timeout)).expand_group(group_id)

    async def add_group_assets(self, group_id, asset_ids, *,
                               timeout: Optional[float] = None) -> AssetGroup:
        return await GroupResolver(self._session(timeout)).add_members(
            group_id, asset_ids, self._clock())

    async def remove_group_assets(self, group_id, asset_ids, *,
                                  timeout: Optional[float] = None) -> AssetGroup:
        return await GroupResolver(self._session(timeout)).remove_members(
            group_id, asset_ids, self._clock())

    async def set_delegatee(self, group_id, delegatee_id, requesting_operator, *,
                            timeout: Optional[float] = None) -> AssetGroup:
        return await GroupResolver(self._session(timeout)).set_delegatee(
            group_id, delegatee_id, requesting_operator, self._clock())

    # ═══════════════════════════════════════
    # オペレーター別の資産解決
    # ═══════════════════════════════════════

    async def resolve_operator_assets(
        self, operator_id, mode=ResolveMode.ALL, *,
        timeout: Optional[float] = None,
    ) -> Dict[AssetRef, AssetRelation]:
        return await DelegationEngine(self._session(timeout)).resolve_operator_assets(
            operator_id, mode)

    async def grouped_assets(self, operator_id, *,
                             timeout: Optional[float] = None) -> List[AssetRef]:
        return await DelegationEngine(self._session(timeout)).grouped_assets(operator_id)

    async def check_access(self, asset_id, operator_id, *,
                           timeout: Optional[float] = None) -> AccessDecision:
        """資産の実効支配者と、operator の支配・利用・通常運航の可否を返す。"""
        store = self._session(timeout)
        asset_id = parse_identifier(asset_id)
        operator_id = parse_identifier(operator_id)
        await require_operator(store, operator_id)
        resolver = GroupResolver(store)
        asset = await resolver.load_asset(
            asset_id,
            vertipad_reason="access to a vertipad is decided by its parent vertiport",
        )
        group = await resolver.containing_group(asset)
        return check_access(asset, group, operator_id)
