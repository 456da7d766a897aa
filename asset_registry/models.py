"""
Asset Registry - データモデル定義

各Entityの責務:
  - Operator: 資産を所有・委任される組織
  - Basics: 物理資産（機体・バーティポート）共通の所有・状態情報
  - Aircraft: 機体（型式・製造番号・登録記号・性能上限）
  - Vertiport: バーティポート（エリア多角形と配下のバーティパッド一覧）
  - Vertipad: バーティパッド（ライフサイクルは親バーティポートが管理）
  - AssetGroup: 資産グループ（所有者と、任意の委任先オペレーター）

各Entityは to_record() / from_record() で永続化サービス向けの
フラットなdictと相互変換する。
"""
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from asset_registry.errors import InvalidFormat, InvalidPayload


class AssetStatus(Enum):
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"
    EMERGENCY = "Emergency"    # 委任・ホワイトリストに関係なく通常運航から除外


def parse_status(value) -> AssetStatus:
    if isinstance(value, AssetStatus):
        return value
    for status in AssetStatus:
        if status.value == value:
            return status
    raise InvalidFormat(f"invalid asset status: {value!r}")


class AssetKind(Enum):
    """グループに所属できる資産の種別（バーティパッド単体は不可）"""
    AIRCRAFT = "aircraft"
    VERTIPORT = "vertiport"


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None:
        return None
    if type(value) is uuid.UUID:
        return value
    return uuid.UUID(str(value))


def _as_uuid_list(values) -> List[uuid.UUID]:
    return [_as_uuid(v) for v in (values or [])]


def _clean_optional(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return text.strip() or None


@dataclass(frozen=True)
class AssetRef:
    """グループメンバーの参照（種別 + 識別子）"""
    kind: AssetKind
    id: uuid.UUID

    def to_record(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "id": str(self.id)}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "AssetRef":
        return cls(kind=AssetKind(record["kind"]), id=_as_uuid(record["id"]))


# ═══════════════════════════════════════
# 地理情報
# ═══════════════════════════════════════

@dataclass
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self):
        for name in ("latitude", "longitude"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidPayload(f"{name} must be a number: {value!r}")
            setattr(self, name, float(value))
        if not -90.0 <= self.latitude <= 90.0:
            raise InvalidPayload(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise InvalidPayload(f"longitude out of range: {self.longitude}")

    @classmethod
    def from_value(cls, value) -> "GeoPoint":
        """GeoPoint / {"latitude", "longitude"} / (lat, lon) のいずれかを受け付ける。"""
        if isinstance(value, GeoPoint):
            return value
        if isinstance(value, dict):
            try:
                return cls(latitude=value["latitude"], longitude=value["longitude"])
            except KeyError as e:
                raise InvalidPayload(f"geo point missing {e.args[0]}") from e
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(latitude=value[0], longitude=value[1])
        raise InvalidPayload(f"invalid geo point: {value!r}")

    def to_record(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


def _normalize_ring(points) -> List[GeoPoint]:
    """
    多角形の輪を検証する。
    異なる頂点が3点未満なら不正。始点と終点が異なる場合は閉じる。
    """
    ring = [GeoPoint.from_value(p) for p in (points or [])]
    distinct = {(p.latitude, p.longitude) for p in ring}
    if len(distinct) < 3:
        raise InvalidPayload("polygon ring needs at least 3 distinct points")
    if ring[0] != ring[-1]:
        ring.append(GeoPoint(ring[0].latitude, ring[0].longitude))
    return ring


@dataclass
class GeoPolygon:
    exterior: List[GeoPoint]
    interiors: List[List[GeoPoint]] = field(default_factory=list)

    def __post_init__(self):
        self.exterior = _normalize_ring(self.exterior)
        self.interiors = [_normalize_ring(ring) for ring in self.interiors]

    @classmethod
    def from_value(cls, value) -> "GeoPolygon":
        if isinstance(value, GeoPolygon):
            return value
        if isinstance(value, dict):
            return cls(
                exterior=value.get("exterior"),
                interiors=value.get("interiors") or [],
            )
        if isinstance(value, (list, tuple)):
            return cls(exterior=list(value))
        raise InvalidPayload(f"invalid geo polygon: {value!r}")

    def to_record(self) -> Dict[str, Any]:
        return {
            "exterior": [p.to_record() for p in self.exterior],
            "interiors": [[p.to_record() for p in ring] for ring in self.interiors],
        }


# ═══════════════════════════════════════
# オペレーター
# ═══════════════════════════════════════

@dataclass
class Operator:
    id: uuid.UUID
    name: str
    created_at: datetime
    country: Optional[str] = None

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise InvalidPayload("operator name must not be empty")
        self.name = self.name.strip()
        self.country = _clean_optional(self.country)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "country": self.country,
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Operator":
        return cls(
            id=_as_uuid(record["id"]),
            name=record["name"],
            country=record.get("country"),
            created_at=record["created_at"],
        )


# ═══════════════════════════════════════
# 物理資産の共通部分
# ═══════════════════════════════════════

@dataclass
class Basics:
    """所有者・状態・ホワイトリスト（機体とバーティポートに埋め込まれる）"""
    id: uuid.UUID
    owner: uuid.UUID
    status: AssetStatus
    created_at: datetime
    name: Optional[str] = None
    group_id: Optional[uuid.UUID] = None   # 逆参照のみ。所属の正はグループ側
    whitelist: List[uuid.UUID] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    schedule: Optional[str] = None         # RRULE文字列（中身は解釈しない）

    def __post_init__(self):
        if not isinstance(self.status, AssetStatus):
            raise InvalidPayload(f"invalid asset status: {self.status!r}")
        self.name = _clean_optional(self.name)
        self.schedule = _clean_optional(self.schedule)
        # 所有者はホワイトリストに含めない（所有者以外の利用許可の集合）
        self.whitelist = [
            op for op in dict.fromkeys(self.whitelist) if op != self.owner
        ]

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "group_id": self.group_id,
            "owner": self.owner,
            "whitelist": list(self.whitelist),
            "status": self.status.value,
            "schedule": self.schedule,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Basics":
        return cls(
            id=_as_uuid(record["id"]),
            name=record.get("name"),
            group_id=_as_uuid(record.get("group_id")),
            owner=_as_uuid(record["owner"]),
            whitelist=_as_uuid_list(record.get("whitelist")),
            status=parse_status(record["status"]),
            schedule=record.get("schedule"),
            created_at=record["created_at"],
            updated_at=record.get("updated_at"),
        )


class _PhysicalAsset:
    """Basicsを持つ資産の共通アクセサ"""
    basics: Basics

    @property
    def id(self) -> uuid.UUID:
        return self.basics.id

    @property
    def owner(self) -> uuid.UUID:
        return self.basics.owner

    @property
    def group_id(self) -> Optional[uuid.UUID]:
        return self.basics.group_id

    @property
    def status(self) -> AssetStatus:
        return self.basics.status

    def touch(self, now: datetime):
        return replace(self, basics=replace(self.basics, updated_at=now))


@dataclass
class Aircraft(_PhysicalAsset):
    """機体マスタ情報"""
    basics: Basics
    vehicle_model_id: uuid.UUID
    manufacturer: str
    serial_number: str
    registration_number: str   # フリート全体で一意（永続化サービス側で保証）
    max_payload_kg: float
    max_range_km: float
    description: Optional[str] = None
    last_vertiport_id: Optional[uuid.UUID] = None
    last_maintenance: Optional[datetime] = None
    next_maintenance: Optional[datetime] = None

    kind = AssetKind.AIRCRAFT

    def __post_init__(self):
        if not self.registration_number or not self.registration_number.strip():
            raise InvalidPayload("registration_number must not be empty")
        self.registration_number = self.registration_number.strip().upper()
        if not self.serial_number or not self.serial_number.strip():
            raise InvalidPayload("serial_number must not be empty")
        self.serial_number = self.serial_number.strip()
        if not self.manufacturer or not self.manufacturer.strip():
            raise InvalidPayload("manufacturer must not be empty")
        self.manufacturer = self.manufacturer.strip()
        self.description = _clean_optional(self.description)
        for name in ("max_payload_kg", "max_range_km"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidPayload(f"{name} must be a number: {value!r}")
            if value < 0:
                raise InvalidPayload(f"{name} must not be negative: {value}")
            setattr(self, name, float(value))

    @property
    def ref(self) -> AssetRef:
        return AssetRef(AssetKind.AIRCRAFT, self.id)

    def to_record(self) -> Dict[str, Any]:
        record = self.basics.to_record()
        record.update({
            "vehicle_model_id": self.vehicle_model_id,
            "manufacturer": self.manufacturer,
            "serial_number": self.serial_number,
            "registration_number": self.registration_number,
            "description": self.description,
            "max_payload_kg": self.max_payload_kg,
            "max_range_km": self.max_range_km,
            "last_vertiport_id": self.last_vertiport_id,
            "last_maintenance": self.last_maintenance,
            "next_maintenance": self.next_maintenance,
        })
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Aircraft":
        return cls(
            basics=Basics.from_record(record),
            vehicle_model_id=_as_uuid(record["vehicle_model_id"]),
            manufacturer=record["manufacturer"],
            serial_number=record["serial_number"],
            registration_number=record["registration_number"],
            description=record.get("description"),
            max_payload_kg=record["max_payload_kg"],
            max_range_km=record["max_range_km"],
            last_vertiport_id=_as_uuid(record.get("last_vertiport_id")),
            last_maintenance=record.get("last_maintenance"),
            next_maintenance=record.get("next_maintenance"),
        )


@dataclass
class Vertiport(_PhysicalAsset):
    basics: Basics
    location: GeoPolygon
    description: Optional[str] = None
    vertipads: List[uuid.UUID] = field(default_factory=list)   # 順序付き・重複なし

    kind = AssetKind.VERTIPORT

    def __post_init__(self):
        if not isinstance(self.location, GeoPolygon):
            raise InvalidPayload(f"invalid vertiport location: {self.location!r}")
        self.description = _clean_optional(self.description)
        self.vertipads = list(dict.fromkeys(self.vertipads))

    @property
    def ref(self) -> AssetRef:
        return AssetRef(AssetKind.VERTIPORT, self.id)

    def to_record(self) -> Dict[str, Any]:
        record = self.basics.to_record()
        record.update({
            "description": self.description,
            "location": self.location.to_record(),
            "vertipads": list(self.vertipads),
        })
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Vertiport":
        return cls(
            basics=Basics.from_record(record),
            description=record.get("description"),
            location=GeoPolygon.from_value(record["location"]),
            vertipads=_as_uuid_list(record.get("vertipads")),
        )


@dataclass
class Vertipad:
    """バーティパッド（作成・削除は親バーティポートのリストと対で行う）"""
    id: uuid.UUID
    location: GeoPoint
    vertiport_id: Optional[uuid.UUID]   # 切り離し後のみNone
    created_at: datetime
    name: Optional[str] = None
    enabled: bool = True
    occupied: bool = False
    schedule: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.location, GeoPoint):
            raise InvalidPayload(f"invalid vertipad location: {self.location!r}")
        for name in ("enabled", "occupied"):
            if not isinstance(getattr(self, name), bool):
                raise InvalidPayload(f"{name} must be a boolean")
        self.name = _clean_optional(self.name)
        self.schedule = _clean_optional(self.schedule)

    def touch(self, now: datetime) -> "Vertipad":
        return replace(self, updated_at=now)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "vertiport_id": self.vertiport_id,
            "location": self.location.to_record(),
            "enabled": self.enabled,
            "occupied": self.occupied,
            "schedule": self.schedule,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Vertipad":
        return cls(
            id=_as_uuid(record["id"]),
            name=record.get("name"),
            vertiport_id=_as_uuid(record.get("vertiport_id")),
            location=GeoPoint.from_value(record["location"]),
            enabled=record["enabled"],
            occupied=record["occupied"],
            schedule=record.get("schedule"),
            created_at=record["created_at"],
            updated_at=record.get("updated_at"),
        )


@dataclass
class AssetGroup:
    """資産グループ（委任先は同時に1オペレーターのみ）"""
    id: uuid.UUID
    owner: uuid.UUID
    created_at: datetime
    name: Optional[str] = None
    delegatee: Optional[uuid.UUID] = None
    assets: List[AssetRef] = field(default_factory=list)   # 順序付き集合
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.delegatee is not None and self.delegatee == self.owner:
            raise InvalidPayload("group owner cannot be its own delegatee")
        for ref in self.assets:
            if not isinstance(ref, AssetRef):
                raise InvalidPayload(f"invalid group member: {ref!r}")
        self.name = _clean_optional(self.name)
        self.assets = list(dict.fromkeys(self.assets))

    @property
    def member_ids(self) -> List[uuid.UUID]:
        return [ref.id for ref in self.assets]

    def has_member(self, asset_id: uuid.UUID) -> bool:
        return any(ref.id == asset_id for ref in self.assets)

    def touch(self, now: datetime) -> "AssetGroup":
        return replace(self, updated_at=now)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner": self.owner,
            "delegatee": self.delegatee,
            "assets": [ref.to_record() for ref in self.assets],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "AssetGroup":
        return cls(
            id=_as_uuid(record["id"]),
            name=record.get("name"),
            owner=_as_uuid(record["owner"]),
            delegatee=_as_uuid(record.get("delegatee")),
            assets=[AssetRef.from_record(r) for r in (record.get("assets") or [])],
            created_at=record["created_at"],
            updated_at=record.get("updated_at"),
        )
