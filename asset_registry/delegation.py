"""
Asset Registry - 委任エンジン

責務:
  - オペレーターが実効的に支配する資産の算出
    （所有 / 委任を受けている / 委任している の3分類）
  - 資産単位の実効支配者・利用可否の判定

支配の解決ルール:
  - 実効支配者は所有者。ただし委任先が設定されたグループに所属する資産は委任先
  - ホワイトリストは利用許可のみで、支配は移らない
  - Emergency状態の資産は委任・ホワイトリストに関係なく通常運航の対象外

読み取り専用。オペレーターの存在確認は毎回永続化サービスに問い合わせる（キャッシュしない）。
"""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from asset_registry.errors import InvalidFormat, NotFound
from asset_registry.identifiers import parse_identifier
from asset_registry.models import (
    Aircraft,
    AssetGroup,
    AssetRef,
    AssetStatus,
    Operator,
    Vertiport,
)
from asset_registry.storage import PersistenceService, RecordKind

logger = logging.getLogger("asset_registry")

PhysicalAsset = Union[Aircraft, Vertiport]


class AssetRelation(Enum):
    OWNED = "owned"
    DELEGATED_TO = "delegated_to"       # 他オペレーターから借りている
    DELEGATED_FROM = "delegated_from"   # 他オペレーターへ貸している


class ResolveMode(Enum):
    OWNED = "owned"
    DELEGATED_TO = "delegated_to"
    DELEGATED_FROM = "delegated_from"
    ALL = "all"


_MODE_RELATIONS = {
    ResolveMode.OWNED: {AssetRelation.OWNED},
    ResolveMode.DELEGATED_TO: {AssetRelation.DELEGATED_TO},
    ResolveMode.DELEGATED_FROM: {AssetRelation.DELEGATED_FROM},
    ResolveMode.ALL: set(AssetRelation),
}


def parse_mode(value) -> ResolveMode:
    if isinstance(value, ResolveMode):
        return value
    try:
        return ResolveMode(value)
    except ValueError as e:
        raise InvalidFormat(f"invalid resolve mode: {value!r}") from e


async def require_operator(store: PersistenceService,
                           operator_id: uuid.UUID) -> Operator:
    record = await store.get(RecordKind.OPERATOR, operator_id)
    return Operator.from_record(record)


# ═══════════════════════════════════════
# 単一資産の判定（純粋関数）
# ═══════════════════════════════════════

def effective_controller(asset_owner: uuid.UUID,
                         group: Optional[AssetGroup]) -> uuid.UUID:
    if group is not None and group.delegatee is not None:
        return group.delegatee
    return asset_owner


def classify(asset_owner: uuid.UUID, group: Optional[AssetGroup],
             operator_id: uuid.UUID) -> Optional[AssetRelation]:
    """
    operator から見た資産の関係を1つだけ返す（該当なしはNone）。
    group は資産を実際にメンバーとして持つグループ（なければNone）。
    """
    delegatee = group.delegatee if group is not None else None
    if delegatee is None:
        return AssetRelation.OWNED if asset_owner == operator_id else None
    # 委任先は所有者と一致しない（AssetGroupの不変条件）
    if delegatee == operator_id:
        return AssetRelation.DELEGATED_TO
    if asset_owner == operator_id:
        return AssetRelation.DELEGATED_FROM
    return None


@dataclass(frozen=True)
class AccessDecision:
    controller: uuid.UUID
    may_control: bool
    may_use: bool
    emergency: bool
    dispatchable: bool


def check_access(asset: PhysicalAsset, group: Optional[AssetGroup],
                 operator_id: uuid.UUID) -> AccessDecision:
    """
    operator が資産を支配・利用・通常運航できるかを判定する。
    Emergencyは利用可否の判定結果として返すだけで、資産自体は変更しない。
    """
    controller = effective_controller(asset.owner, group)
    may_control = controller == operator_id
    may_use = may_control or operator_id in asset.basics.whitelist
    emergency = asset.status is AssetStatus.EMERGENCY
    return AccessDecision(
        controller=controller,
        may_control=may_control,
        may_use=may_use,
        emergency=emergency,
        dispatchable=may_use and asset.status is AssetStatus.AVAILABLE,
    )


# ═══════════════════════════════════════
# グループのスナップショット
# ═══════════════════════════════════════

class _GroupSnapshot:
    """
    1回の問い合わせの間、各グループを最初に読んだレコードで固定する。
    委任先とメンバー一覧は必ず同じレコードから取るため、
    同時に set_delegatee が走っても新旧が混ざった状態は観測されない。
    """

    def __init__(self, store: PersistenceService):
        self._store = store
        self._groups: Dict[uuid.UUID, Optional[AssetGroup]] = {}

    def _remember(self, record) -> AssetGroup:
        group = AssetGroup.from_record(record)
        return self._groups.setdefault(group.id, group)

    async def get(self, group_id: uuid.UUID) -> Optional[AssetGroup]:
        if group_id not in self._groups:
            try:
                record = await self._store.get(RecordKind.ASSET_GROUP, group_id)
            except NotFound:
                # 逆参照だけが残っているグループは未所属として扱う
                self._groups[group_id] = None
                return None
            return self._remember(record)
        return self._groups[group_id]

    async def where(self, **criteria) -> List[AssetGroup]:
        records = await self._store.list(RecordKind.ASSET_GROUP, criteria)
        return [self._remember(r) for r in records]


# ═══════════════════════════════════════
# エンジン本体
# ═══════════════════════════════════════

class DelegationEngine:
    def __init__(self, store: PersistenceService):
        self._store = store

    async def _owned_assets(self, operator_id: uuid.UUID) -> List[PhysicalAsset]:
        aircraft = await self._store.list(RecordKind.AIRCRAFT, {"owner": operator_id})
        vertiports = await self._store.list(RecordKind.VERTIPORT, {"owner": operator_id})
        return (
            [Aircraft.from_record(r) for r in aircraft]
            + [Vertiport.from_record(r) for r in vertiports]
        )

    async def _owned_with_groups(
        self, operator_id: uuid.UUID, snapshot: _GroupSnapshot,
    ) -> List[Tuple[PhysicalAsset, Optional[AssetGroup]]]:
        """
        所有資産と、それを実際にメンバーとして持つグループの組を返す。
        所属の正はグループ側のメンバー一覧。資産側の group_id は探索の手がかりにのみ使う。
        """
        owned = await self._owned_assets(operator_id)
        membership: Dict[uuid.UUID, AssetGroup] = {}
        for group in await snapshot.where(owner=operator_id):
            for ref in group.assets:
                membership.setdefault(ref.id, group)

        pairs = []
        for asset in owned:
            group = membership.get(asset.id)
            if group is None and asset.group_id is not None:
                candidate = await snapshot.get(asset.group_id)
                if candidate is not None and candidate.has_member(asset.id):
                    group = candidate
            pairs.append((asset, group))
        return pairs

    async def resolve_operator_assets(
        self, operator_id, mode=ResolveMode.ALL,
    ) -> Dict[AssetRef, AssetRelation]:
        """
        operator が関係する資産を、関係の種別付きで返す。
        各資産はちょうど1つの関係を持つ（所有と委任中は同時に成立しない）。
        """
        operator_id = parse_identifier(operator_id)
        mode = parse_mode(mode)
        await require_operator(self._store, operator_id)

        wanted = _MODE_RELATIONS[mode]
        snapshot = _GroupSnapshot(self._store)
        result: Dict[AssetRef, AssetRelation] = {}

        if wanted & {AssetRelation.OWNED, AssetRelation.DELEGATED_FROM}:
            for asset, group in await self._owned_with_groups(operator_id, snapshot):
                relation = classify(asset.owner, group, operator_id)
                if relation in wanted:
                    result[asset.ref] = relation

        if AssetRelation.DELEGATED_TO in wanted:
            for group in await snapshot.where(delegatee=operator_id):
                # スナップショット上の委任先で再判定する
                if group.delegatee != operator_id or group.owner == operator_id:
                    continue
                for ref in group.assets:
                    result.setdefault(ref, AssetRelation.DELEGATED_TO)

        logger.debug(
            f"資産解決: operator={operator_id} mode={mode.value} 件数={len(result)}"
        )
        return result

    async def grouped_assets(self, operator_id) -> List[AssetRef]:
        """所有資産のうち、委任されていないグループに所属しているもの"""
        operator_id = parse_identifier(operator_id)
        await require_operator(self._store, operator_id)
        snapshot = _GroupSnapshot(self._store)
        return [
            asset.ref
            for asset, group in await self._owned_with_groups(operator_id, snapshot)
            if group is not None and group.delegatee is None
        ]
