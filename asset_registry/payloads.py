"""
Asset Registry - 登録・部分更新ペイロード

責務:
  - 登録ペイロード（必須項目が揃った入力）から完全なEntityを組み立てる
  - 更新マスク（フィールド名の順序付き集合）の検証
  - マスクに含まれるフィールドのみを差し替えるマージ処理

更新フィールドの3状態:
  - OMITTED : ペイロードに含まれない（現在値のまま）
  - None    : nullに設定する（null許容フィールドのみ）
  - その他  : 値を設定する

マスク外のフィールドはペイロードに値があっても無視する。
変更が1つもなければ updated_at も更新しない（同じ更新の再適用は結果が変わらない）。
"""
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Type

from asset_registry.errors import InvalidFormat, InvalidMask, InvalidPayload
from asset_registry.identifiers import (
    new_identifier,
    payload_identifier,
    payload_identifiers,
)
from asset_registry.models import (
    Aircraft,
    AssetGroup,
    AssetRef,
    AssetStatus,
    Basics,
    GeoPoint,
    GeoPolygon,
    Operator,
    Vertipad,
    Vertiport,
    parse_status,
)


class _Omitted:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "OMITTED"

    def __bool__(self):
        return False


OMITTED = _Omitted()


# ─────────────────────────────────
# 値の変換（ボディ由来の入力は InvalidPayload で報告）
# ─────────────────────────────────

def _text(name: str, nullable: bool) -> Callable:
    def coerce(value):
        if value is None:
            if nullable:
                return None
            raise InvalidPayload(f"{name} cannot be null")
        if not isinstance(value, str):
            raise InvalidPayload(f"{name} must be a string")
        if not value.strip() and not nullable:
            raise InvalidPayload(f"{name} must not be empty")
        return value.strip() or None
    return coerce


def _identifier(name: str, nullable: bool) -> Callable:
    def coerce(value):
        if value is None:
            if nullable:
                return None
            raise InvalidPayload(f"{name} cannot be null")
        return payload_identifier(value, name)
    return coerce


def _identifier_list(name: str) -> Callable:
    def coerce(value):
        return payload_identifiers(value, name)
    return coerce


def _number(name: str) -> Callable:
    def coerce(value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidPayload(f"{name} must be a number")
        return float(value)
    return coerce


def _flag(name: str) -> Callable:
    def coerce(value):
        if not isinstance(value, bool):
            raise InvalidPayload(f"{name} must be a boolean")
        return value
    return coerce


def _status(value) -> AssetStatus:
    try:
        return parse_status(value)
    except InvalidFormat as e:
        raise InvalidPayload(f"status: {e}") from e


def _timestamp(name: str) -> Callable:
    """datetime または ISO 8601 文字列。タイムゾーンなしはUTCとみなす。"""
    def coerce(value):
        if value is None:
            return None
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError as e:
                raise InvalidPayload(f"{name}: invalid timestamp {value!r}") from e
        if not isinstance(value, datetime):
            raise InvalidPayload(f"{name} must be a timestamp")
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value
    return coerce


def _polygon(value) -> GeoPolygon:
    if value is None:
        raise InvalidPayload("location cannot be null")
    return GeoPolygon.from_value(value)


def _point(value) -> GeoPoint:
    if value is None:
        raise InvalidPayload("location cannot be null")
    return GeoPoint.from_value(value)


def _member_refs(value) -> List[AssetRef]:
    # 識別子からの解決（存在・種別・所有者の確認）はグループリゾルバの責務
    if value is None or isinstance(value, (str, bytes)):
        raise InvalidPayload("assets must be a list")
    refs = list(value)
    for ref in refs:
        if not isinstance(ref, AssetRef):
            raise InvalidPayload(f"unresolved group member: {ref!r}")
    return refs


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════
# 登録ペイロード
# ═══════════════════════════════════════

@dataclass
class RegisterOperatorPayload:
    name: str
    country: Optional[str] = None

    def build(self, now: datetime) -> Operator:
        return Operator(
            id=new_identifier(),
            name=_text("name", nullable=False)(self.name),
            country=_text("country", nullable=True)(self.country),
            created_at=now,
        )


def _build_basics(payload, now: datetime) -> Basics:
    return Basics(
        id=new_identifier(),
        name=_text("name", nullable=True)(payload.name),
        group_id=_identifier("group_id", nullable=True)(payload.group_id),
        owner=_identifier("owner", nullable=False)(payload.owner),
        whitelist=_identifier_list("whitelist")(payload.whitelist),
        status=_status(payload.status),
        schedule=_text("schedule", nullable=True)(payload.schedule),
        created_at=now,
    )


@dataclass
class RegisterAircraftPayload:
    owner: str
    status: str
    manufacturer: str
    vehicle_model_id: str
    serial_number: str
    registration_number: str
    max_payload_kg: float
    max_range_km: float
    name: Optional[str] = None
    group_id: Optional[str] = None
    whitelist: Sequence[str] = ()
    schedule: Optional[str] = None
    description: Optional[str] = None
    last_vertiport_id: Optional[str] = None
    last_maintenance: Optional[str] = None
    next_maintenance: Optional[str] = None

    def build(self, now: datetime) -> Aircraft:
        return Aircraft(
            basics=_build_basics(self, now),
            vehicle_model_id=_identifier("vehicle_model_id", nullable=False)(
                self.vehicle_model_id),
            manufacturer=_text("manufacturer", nullable=False)(self.manufacturer),
            serial_number=_text("serial_number", nullable=False)(self.serial_number),
            registration_number=_text("registration_number", nullable=False)(
                self.registration_number),
            description=_text("description", nullable=True)(self.description),
            max_payload_kg=_number("max_payload_kg")(self.max_payload_kg),
            max_range_km=_number("max_range_km")(self.max_range_km),
            last_vertiport_id=_identifier("last_vertiport_id", nullable=True)(
                self.last_vertiport_id),
            last_maintenance=_timestamp("last_maintenance")(self.last_maintenance),
            next_maintenance=_timestamp("next_maintenance")(self.next_maintenance),
        )


@dataclass
class RegisterVertiportPayload:
    owner: str
    status: str
    location: object
    name: Optional[str] = None
    group_id: Optional[str] = None
    whitelist: Sequence[str] = ()
    schedule: Optional[str] = None
    description: Optional[str] = None

    def build(self, now: datetime) -> Vertiport:
        # 配下のバーティパッドは register_vertipad で1件ずつ追加する
        return Vertiport(
            basics=_build_basics(self, now),
            location=_polygon(self.location),
            description=_text("description", nullable=True)(self.description),
            vertipads=[],
        )


@dataclass
class RegisterVertipadPayload:
    vertiport_id: str
    location: object
    name: Optional[str] = None
    enabled: bool = True
    occupied: bool = False
    schedule: Optional[str] = None

    def build(self, now: datetime) -> Vertipad:
        return Vertipad(
            id=new_identifier(),
            name=_text("name", nullable=True)(self.name),
            vertiport_id=_identifier("vertiport_id", nullable=False)(self.vertiport_id),
            location=_point(self.location),
            enabled=_flag("enabled")(self.enabled),
            occupied=_flag("occupied")(self.occupied),
            schedule=_text("schedule", nullable=True)(self.schedule),
            created_at=now,
        )


@dataclass
class RegisterAssetGroupPayload:
    owner: str
    name: Optional[str] = None
    assets: Sequence[str] = ()

    def member_ids(self):
        return _identifier_list("assets")(self.assets)

    def build(self, now: datetime, members: List[AssetRef]) -> AssetGroup:
        """members は resolve 済みの参照（グループリゾルバが組み立てる）"""
        return AssetGroup(
            id=new_identifier(),
            name=_text("name", nullable=True)(self.name),
            owner=_identifier("owner", nullable=False)(self.owner),
            assets=_member_refs(members),
            created_at=now,
        )


# ═══════════════════════════════════════
# 更新ペイロードとフィールドタグ
#   タグ列挙は変更可能なフィールドのみを持ち、
#   タグ → セッターの対応は全タグを網羅する
# ═══════════════════════════════════════

class AircraftField(Enum):
    NAME = "name"
    STATUS = "status"
    WHITELIST = "whitelist"
    SCHEDULE = "schedule"
    VEHICLE_MODEL_ID = "vehicle_model_id"
    MANUFACTURER = "manufacturer"
    SERIAL_NUMBER = "serial_number"
    REGISTRATION_NUMBER = "registration_number"
    DESCRIPTION = "description"
    MAX_PAYLOAD_KG = "max_payload_kg"
    MAX_RANGE_KM = "max_range_km"
    LAST_VERTIPORT_ID = "last_vertiport_id"
    LAST_MAINTENANCE = "last_maintenance"
    NEXT_MAINTENANCE = "next_maintenance"


class VertiportField(Enum):
    NAME = "name"
    STATUS = "status"
    WHITELIST = "whitelist"
    SCHEDULE = "schedule"
    DESCRIPTION = "description"
    LOCATION = "location"


class VertipadField(Enum):
    NAME = "name"
    VERTIPORT_ID = "vertiport_id"
    LOCATION = "location"
    ENABLED = "enabled"
    OCCUPIED = "occupied"
    SCHEDULE = "schedule"


class AssetGroupField(Enum):
    NAME = "name"
    ASSETS = "assets"


@dataclass
class AircraftUpdate:
    name: object = OMITTED
    status: object = OMITTED
    whitelist: object = OMITTED
    schedule: object = OMITTED
    vehicle_model_id: object = OMITTED
    manufacturer: object = OMITTED
    serial_number: object = OMITTED
    registration_number: object = OMITTED
    description: object = OMITTED
    max_payload_kg: object = OMITTED
    max_range_km: object = OMITTED
    last_vertiport_id: object = OMITTED
    last_maintenance: object = OMITTED
    next_maintenance: object = OMITTED


@dataclass
class VertiportUpdate:
    name: object = OMITTED
    status: object = OMITTED
    whitelist: object = OMITTED
    schedule: object = OMITTED
    description: object = OMITTED
    location: object = OMITTED


@dataclass
class VertipadUpdate:
    name: object = OMITTED
    vertiport_id: object = OMITTED
    location: object = OMITTED
    enabled: object = OMITTED
    occupied: object = OMITTED
    schedule: object = OMITTED


@dataclass
class AssetGroupUpdate:
    name: object = OMITTED
    assets: object = OMITTED


def _set(attr: str, coerce: Callable) -> Callable:
    def setter(entity, value):
        return replace(entity, **{attr: coerce(value)})
    return setter


def _set_basics(attr: str, coerce: Callable) -> Callable:
    def setter(entity, value):
        return replace(entity, basics=replace(entity.basics, **{attr: coerce(value)}))
    return setter


AIRCRAFT_SETTERS: Dict[AircraftField, Callable] = {
    AircraftField.NAME: _set_basics("name", _text("name", nullable=True)),
    AircraftField.STATUS: _set_basics("status", _status),
    AircraftField.WHITELIST: _set_basics("whitelist", _identifier_list("whitelist")),
    AircraftField.SCHEDULE: _set_basics("schedule", _text("schedule", nullable=True)),
    AircraftField.VEHICLE_MODEL_ID: _set(
        "vehicle_model_id", _identifier("vehicle_model_id", nullable=False)),
    AircraftField.MANUFACTURER: _set(
        "manufacturer", _text("manufacturer", nullable=False)),
    AircraftField.SERIAL_NUMBER: _set(
        "serial_number", _text("serial_number", nullable=False)),
    AircraftField.REGISTRATION_NUMBER: _set(
        "registration_number", _text("registration_number", nullable=False)),
    AircraftField.DESCRIPTION: _set(
        "description", _text("description", nullable=True)),
    AircraftField.MAX_PAYLOAD_KG: _set("max_payload_kg", _number("max_payload_kg")),
    AircraftField.MAX_RANGE_KM: _set("max_range_km", _number("max_range_km")),
    AircraftField.LAST_VERTIPORT_ID: _set(
        "last_vertiport_id", _identifier("last_vertiport_id", nullable=True)),
    AircraftField.LAST_MAINTENANCE: _set(
        "last_maintenance", _timestamp("last_maintenance")),
    AircraftField.NEXT_MAINTENANCE: _set(
        "next_maintenance", _timestamp("next_maintenance")),
}

VERTIPORT_SETTERS: Dict[VertiportField, Callable] = {
    VertiportField.NAME: _set_basics("name", _text("name", nullable=True)),
    VertiportField.STATUS: _set_basics("status", _status),
    VertiportField.WHITELIST: _set_basics("whitelist", _identifier_list("whitelist")),
    VertiportField.SCHEDULE: _set_basics("schedule", _text("schedule", nullable=True)),
    VertiportField.DESCRIPTION: _set(
        "description", _text("description", nullable=True)),
    VertiportField.LOCATION: _set("location", _polygon),
}

VERTIPAD_SETTERS: Dict[VertipadField, Callable] = {
    VertipadField.NAME: _set("name", _text("name", nullable=True)),
    VertipadField.VERTIPORT_ID: _set(
        "vertiport_id", _identifier("vertiport_id", nullable=False)),
    VertipadField.LOCATION: _set("location", _point),
    VertipadField.ENABLED: _set("enabled", _flag("enabled")),
    VertipadField.OCCUPIED: _set("occupied", _flag("occupied")),
    VertipadField.SCHEDULE: _set("schedule", _text("schedule", nullable=True)),
}

ASSET_GROUP_SETTERS: Dict[AssetGroupField, Callable] = {
    AssetGroupField.NAME: _set("name", _text("name", nullable=True)),
    AssetGroupField.ASSETS: _set("assets", _member_refs),
}


@dataclass(frozen=True)
class _MergeRule:
    tags: Type[Enum]
    setters: Dict
    update_type: type


_MERGE_RULES = {
    Aircraft: _MergeRule(AircraftField, AIRCRAFT_SETTERS, AircraftUpdate),
    Vertiport: _MergeRule(VertiportField, VERTIPORT_SETTERS, VertiportUpdate),
    Vertipad: _MergeRule(VertipadField, VERTIPAD_SETTERS, VertipadUpdate),
    AssetGroup: _MergeRule(AssetGroupField, ASSET_GROUP_SETTERS, AssetGroupUpdate),
}


def parse_mask(mask: Sequence[str], tags: Type[Enum]) -> List[Enum]:
    """
    更新マスクを検証してタグのリストにする。

    空のマスク、未知または変更不可のフィールド名は InvalidMask。
    同じ名前の重複は1つにまとめる（順序は最初の出現順）。
    """
    if mask is None or isinstance(mask, (str, bytes)):
        raise InvalidMask("mask must be a list of field names")
    names = list(dict.fromkeys(mask))
    if not names:
        raise InvalidMask("mask must not be empty")
    by_name = {tag.value: tag for tag in tags}
    unknown = [n for n in names if n not in by_name]
    if unknown:
        raise InvalidMask(
            f"unknown or immutable fields in mask: {', '.join(map(str, unknown))}"
        )
    return [by_name[n] for n in names]


def masked_value(update, tag: Enum):
    return getattr(update, tag.value)


def merge_update(entity, update, mask: Sequence[str], now: datetime):
    """
    既存Entityにマスク付き部分更新を適用した新しいEntityを返す（元は変更しない）。
    値が変わらなければ元のEntityをそのまま返す。
    """
    rule = _MERGE_RULES.get(type(entity))
    if rule is None:
        raise TypeError(f"no update rule for {type(entity).__name__}")
    if not isinstance(update, rule.update_type):
        raise InvalidPayload(
            f"expected {rule.update_type.__name__}, got {type(update).__name__}"
        )
    tags = parse_mask(mask, rule.tags)

    merged = entity
    for tag in tags:
        value = masked_value(update, tag)
        if value is OMITTED:
            continue
        merged = rule.setters[tag](merged, value)

    if merged == entity:
        return entity
    return merged.touch(now)


def update_field_names(update_type: type) -> List[str]:
    return [f.name for f in fields(update_type)]
