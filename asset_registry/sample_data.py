"""
テスト用のサンプルデータ

インメモリ実装に対してレジストリを組み立て、登録ペイロードの雛形を返す。
非同期操作は run() で1つずつ実行する（インメモリ実装はイベントループに依存しない）。
"""
import asyncio
import itertools
import uuid

from asset_registry.payloads import (
    RegisterAircraftPayload,
    RegisterOperatorPayload,
    RegisterVertipadPayload,
    RegisterVertiportPayload,
)
from asset_registry.registry import AssetRegistry
from asset_registry.storage import InMemoryStore

_serials = itertools.count(1)

# 東京ヘリポート周辺の四角形
SQUARE = [
    (35.6300, 139.8300),
    (35.6300, 139.8400),
    (35.6400, 139.8400),
    (35.6400, 139.8300),
]


def run(coro):
    return asyncio.run(coro)


def new_registry(**kwargs):
    store = InMemoryStore()
    return AssetRegistry(store, **kwargs), store


def new_operator(registry: AssetRegistry, name: str = "Sky Ops") -> uuid.UUID:
    return run(registry.register_operator(RegisterOperatorPayload(name=name)))


def aircraft_payload(owner, **overrides) -> RegisterAircraftPayload:
    n = next(_serials)
    values = dict(
        owner=str(owner),
        status="Available",
        manufacturer="Joby Aviation",
        vehicle_model_id=str(uuid.uuid4()),
        serial_number=f"SN-{n:05d}",
        registration_number=f"ja{n:04d}x",
        max_payload_kg=450.0,
        max_range_km=240.0,
    )
    values.update(overrides)
    return RegisterAircraftPayload(**values)


def vertiport_payload(owner, **overrides) -> RegisterVertiportPayload:
    values = dict(owner=str(owner), status="Available", location=SQUARE)
    values.update(overrides)
    return RegisterVertiportPayload(**values)


def vertipad_payload(vertiport_id, **overrides) -> RegisterVertipadPayload:
    values = dict(
        vertiport_id=str(vertiport_id),
        location={"latitude": 35.6350, "longitude": 139.8350},
    )
    values.update(overrides)
    return RegisterVertipadPayload(**values)
