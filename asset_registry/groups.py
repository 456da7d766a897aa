"""
Asset Registry - グループリゾルバ

責務:
  - 資産グループのメンバー展開（グループ側のメンバー一覧が正）
  - 委任先の設定・解除（所有者のみ、委任先は常に1つ）
  - メンバーの追加・削除と、資産側の逆参照(group_id)の整合

書き込み順序（1レコード単位の原子性しか前提にしない）:
  - メンバー追加: 資産の逆参照を設定 → グループのメンバー一覧を更新
  - メンバー削除: グループのメンバー一覧を更新 → 資産の逆参照を解除
  - グループ削除: 全メンバーの逆参照を解除 → グループを削除
  途中失敗で残るのは「グループに載っていない逆参照」だけで、読み取り側はこれを無視する。

グループレコードの更新は読んだ時点の値を前提条件(expected)にした比較更新。
同時更新は Conflict として呼び出し側へ返し、内部では再試行しない。
"""
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional, Union

from asset_registry.delegation import require_operator
from asset_registry.errors import Conflict, Forbidden, InvalidPayload, NotFound
from asset_registry.identifiers import parse_identifier, payload_identifiers
from asset_registry.models import (
    Aircraft,
    AssetGroup,
    AssetKind,
    AssetRef,
    Vertiport,
)
from asset_registry.payloads import (
    OMITTED,
    AssetGroupField,
    AssetGroupUpdate,
    RegisterAssetGroupPayload,
    merge_update,
    parse_mask,
)
from asset_registry.storage import PersistenceService, RecordKind

logger = logging.getLogger("asset_registry")

PhysicalAsset = Union[Aircraft, Vertiport]

RECORD_KIND = {
    AssetKind.AIRCRAFT: RecordKind.AIRCRAFT,
    AssetKind.VERTIPORT: RecordKind.VERTIPORT,
}


def _assets_record(refs: Iterable[AssetRef]):
    return [ref.to_record() for ref in refs]


class GroupResolver:
    def __init__(self, store: PersistenceService):
        self._store = store

    # ─────────────────────────────────
    # 読み取り
    # ─────────────────────────────────

    async def get_group(self, group_id: uuid.UUID) -> AssetGroup:
        record = await self._store.get(RecordKind.ASSET_GROUP, group_id)
        return AssetGroup.from_record(record)

    async def expand_group(self, group_id) -> List[AssetRef]:
        """グループのメンバー一覧をそのまま返す（資産側の走査はしない）。"""
        group = await self.get_group(parse_identifier(group_id))
        return list(group.assets)

    async def load_asset(self, asset_id: uuid.UUID,
                         vertipad_reason: str = "vertipads cannot be grouped on their own",
                         ) -> PhysicalAsset:
        """
        識別子を機体 → バーティポートの順で引く。
        バーティパッドは単体では扱えないため InvalidPayload（理由は呼び出し側が渡す）。
        """
        try:
            return Aircraft.from_record(
                await self._store.get(RecordKind.AIRCRAFT, asset_id))
        except NotFound:
            pass
        try:
            return Vertiport.from_record(
                await self._store.get(RecordKind.VERTIPORT, asset_id))
        except NotFound:
            pass
        try:
            await self._store.get(RecordKind.VERTIPAD, asset_id)
        except NotFound:
            raise NotFound("asset", asset_id) from None
        raise InvalidPayload(f"{vertipad_reason}: {asset_id}")

    async def containing_group(self, asset: PhysicalAsset) -> Optional[AssetGroup]:
        """資産を実際にメンバーとして持つグループ（なければNone）"""
        for group in await self._candidate_groups(asset):
            if group.has_member(asset.id):
                return group
        return None

    async def _candidate_groups(self, asset: PhysicalAsset) -> List[AssetGroup]:
        groups = {}
        if asset.group_id is not None:
            try:
                group = await self.get_group(asset.group_id)
                groups[group.id] = group
            except NotFound:
                pass
        # 逆参照の書き込みが失敗していた場合に備え、所有者のグループも見る
        for record in await self._store.list(
                RecordKind.ASSET_GROUP, {"owner": asset.owner}):
            group = AssetGroup.from_record(record)
            groups.setdefault(group.id, group)
        return list(groups.values())

    # ─────────────────────────────────
    # メンバー受け入れ判定
    # ─────────────────────────────────

    async def _admit(self, group_owner: uuid.UUID,
                     group_id: Optional[uuid.UUID],
                     asset_ids: List[uuid.UUID]) -> List[PhysicalAsset]:
        """
        グループに加える資産を検証する。
          - 機体かバーティポートであること（なければ NotFound）
          - グループ所有者が所有していること（違えば Forbidden）
          - 他のグループに所属していないこと（所属済みなら Conflict）
        """
        admitted = []
        for asset_id in asset_ids:
            asset = await self.load_asset(asset_id)
            if asset.owner != group_owner:
                raise Forbidden(
                    f"asset {asset_id} is not owned by group owner {group_owner}"
                )
            other = await self.containing_group(asset)
            if other is not None and other.id != group_id:
                raise Conflict(f"asset {asset_id} already belongs to group {other.id}")
            admitted.append(asset)
        return admitted

    async def _set_back_reference(self, ref: AssetRef,
                                  group_id: Optional[uuid.UUID], now: datetime,
                                  only_if: Optional[uuid.UUID] = None):
        """
        資産側の group_id を書き換える。
        only_if 指定時は、現在の値がそのグループを指している場合だけ解除する。
        """
        kind = RECORD_KIND[ref.kind]
        expected = {"group_id": only_if} if only_if is not None else None
        try:
            await self._store.update(
                kind, ref.id, {"group_id": group_id, "updated_at": now}, expected,
            )
        except NotFound:
            logger.warning(f"逆参照の更新対象が存在しない: {ref.kind.value} {ref.id}")
        except Conflict:
            # 既に別のグループを指している逆参照は触らない
            logger.debug(f"逆参照は別グループを指しているため維持: {ref.id}")

    async def _write_members(self, before: AssetGroup, after: AssetGroup) -> AssetGroup:
        record = await self._store.update(
            RecordKind.ASSET_GROUP,
            before.id,
            {
                "name": after.name,
                "assets": _assets_record(after.assets),
                "updated_at": after.updated_at,
            },
            expected={"assets": _assets_record(before.assets)},
        )
        return AssetGroup.from_record(record)

    # ─────────────────────────────────
    # 登録・更新・削除
    # ─────────────────────────────────

    async def create_group(self, payload: RegisterAssetGroupPayload,
                           now: datetime) -> AssetGroup:
        """
        グループを登録する。
        グループを先に作成し、その後メンバーの逆参照を設定する。
        """
        member_ids = payload.member_ids()
        group = payload.build(now, [])
        await require_operator(self._store, group.owner)
        admitted = await self._admit(group.owner, None, member_ids)
        group = replace(group, assets=[asset.ref for asset in admitted])

        await self._store.insert(RecordKind.ASSET_GROUP, group.to_record())
        for asset in admitted:
            await self._set_back_reference(asset.ref, group.id, now)
        logger.info(
            f"グループ登録: {group.id} | owner={group.owner} | メンバー{len(group.assets)}件"
        )
        return group

    async def link_member(self, group: AssetGroup, ref: AssetRef,
                          now: datetime) -> AssetGroup:
        """登録直後の資産（逆参照は設定済み）をメンバー一覧に加える。"""
        if group.has_member(ref.id):
            return group
        updated = replace(group, assets=group.assets + [ref]).touch(now)
        return await self._write_members(group, updated)

    async def add_members(self, group_id, asset_ids, now: datetime) -> AssetGroup:
        """メンバーを追加する。既に所属している資産は何もしない（集合として扱う）。"""
        group = await self.get_group(parse_identifier(group_id))
        ids = [i for i in payload_identifiers(asset_ids, "assets")
               if not group.has_member(i)]
        if not ids:
            return group

        admitted = await self._admit(group.owner, group.id, ids)
        for asset in admitted:
            await self._set_back_reference(asset.ref, group.id, now)
        updated = replace(
            group, assets=group.assets + [asset.ref for asset in admitted]
        ).touch(now)
        group = await self._write_members(group, updated)
        logger.info(f"グループメンバー追加: {group.id} | +{len(admitted)}件")
        return group

    async def remove_members(self, group_id, asset_ids, now: datetime) -> AssetGroup:
        group = await self.get_group(parse_identifier(group_id))
        targets = set(payload_identifiers(asset_ids, "assets"))
        removed = [ref for ref in group.assets if ref.id in targets]
        if not removed:
            return group

        updated = replace(
            group, assets=[ref for ref in group.assets if ref.id not in targets]
        ).touch(now)
        group = await self._write_members(group, updated)
        for ref in removed:
            await self._set_back_reference(ref, None, now, only_if=group.id)
        logger.info(f"グループメンバー削除: {group.id} | -{len(removed)}件")
        return group

    async def update_group(self, group_id, update: AssetGroupUpdate, mask,
                           now: datetime) -> AssetGroup:
        tags = parse_mask(mask, AssetGroupField)
        if not isinstance(update, AssetGroupUpdate):
            raise InvalidPayload(f"expected AssetGroupUpdate, got {type(update).__name__}")
        group = await self.get_group(parse_identifier(group_id))

        admitted = []
        if AssetGroupField.ASSETS in tags and update.assets is not OMITTED:
            # メンバー一覧の差し替え: 既存メンバーはそのまま、新規のみ受け入れ判定
            ids = payload_identifiers(update.assets, "assets")
            current = {ref.id: ref for ref in group.assets}
            admitted = await self._admit(
                group.owner, group.id, [i for i in ids if i not in current],
            )
            new_refs = {asset.id: asset.ref for asset in admitted}
            update = replace(
                update, assets=[current.get(i) or new_refs[i] for i in ids],
            )

        merged = merge_update(group, update, mask, now)
        if merged is group:
            return group

        for asset in admitted:
            await self._set_back_reference(asset.ref, group.id, now)
        saved = await self._write_members(group, merged)
        kept = set(saved.member_ids)
        for ref in group.assets:
            if ref.id not in kept:
                await self._set_back_reference(ref, None, now, only_if=group.id)
        logger.info(f"グループ更新: {group.id} | mask={list(mask)}")
        return saved

    async def delete_group(self, group_id, now: datetime) -> None:
        """全メンバーの逆参照を解除してからグループを削除する。"""
        group = await self.get_group(parse_identifier(group_id))
        for ref in group.assets:
            await self._set_back_reference(ref, None, now, only_if=group.id)
        await self._store.delete(RecordKind.ASSET_GROUP, group.id)
        logger.info(f"グループ削除: {group.id} | 逆参照解除{len(group.assets)}件")

    async def leave_groups(self, asset: PhysicalAsset, now: datetime) -> None:
        """資産の削除前に、所属グループのメンバー一覧から外す。"""
        for group in await self._candidate_groups(asset):
            if not group.has_member(asset.id):
                continue
            updated = replace(
                group, assets=[ref for ref in group.assets if ref.id != asset.id]
            ).touch(now)
            await self._write_members(group, updated)
            logger.info(f"グループから除外: {asset.id} ← {group.id}")

    # ─────────────────────────────────
    # 委任
    # ─────────────────────────────────

    async def set_delegatee(self, group_id, delegatee_id, requesting_operator,
                            now: datetime) -> AssetGroup:
        """
        グループの委任先を設定・解除する（delegatee_id=None で解除）。

        - グループ所有者以外からの要求は Forbidden
        - 所有者自身を委任先に指定した場合は何もせず成功
        - 委任先は既知のオペレーターであること（なければ NotFound）
        - 読んだ時点の委任先を前提条件にした比較更新。他の変更と衝突したら Conflict
        """
        group_id = parse_identifier(group_id)
        requester = parse_identifier(requesting_operator)
        delegatee = parse_identifier(delegatee_id) if delegatee_id is not None else None

        group = await self.get_group(group_id)
        if requester != group.owner:
            raise Forbidden(
                f"operator {requester} is not the owner of group {group_id}"
            )
        if delegatee == group.owner or delegatee == group.delegatee:
            return group
        if delegatee is not None:
            await require_operator(self._store, delegatee)

        record = await self._store.update(
            RecordKind.ASSET_GROUP,
            group_id,
            {"delegatee": delegatee, "updated_at": now},
            expected={"delegatee": group.delegatee},
        )
        logger.info(
            f"委任先変更: group={group_id} | {group.delegatee} → {delegatee}"
        )
        return AssetGroup.from_record(record)
