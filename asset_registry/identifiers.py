"""
Asset Registry - 識別子の検証

責務:
  - 正規形UUID(v4)文字列の構文チェックのみ
  - ストレージ上の存在確認は一切行わない（存在確認はレジストリ層の責務）

全てのパス/ボディ識別子は、ストレージ参照の前に必ずここを通すこと。
"""
import re
import uuid
from typing import Iterable, List

from asset_registry.errors import InvalidFormat, InvalidPayload


# 8-4-4-4-12 のハイフン区切り、バージョン4、RFC 4122 バリアント
_UUID_V4_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$',
    re.IGNORECASE,
)


def new_identifier() -> uuid.UUID:
    """サーバー側で新しい識別子を採番する。"""
    return uuid.uuid4()


def parse_identifier(value) -> uuid.UUID:
    """
    正規形のUUID v4文字列を uuid.UUID に変換する。

    大文字の16進は受け付けて小文字に正規化する。
    波括弧・URN形式・ハイフンなし・他バージョンは全て InvalidFormat。
    既に uuid.UUID の場合もバージョンとバリアントは検査する。
    """
    if isinstance(value, uuid.UUID):
        value = str(value)
    if not isinstance(value, str) or not value:
        raise InvalidFormat(f"invalid identifier: {value!r}")
    if not _UUID_V4_PATTERN.match(value):
        raise InvalidFormat(f"invalid identifier: {value!r}")
    return uuid.UUID(value.lower())


def parse_identifiers(values: Iterable) -> List[uuid.UUID]:
    """識別子のリストを検証する。重複は順序を保って取り除く。"""
    return list(dict.fromkeys(parse_identifier(v) for v in values))


def payload_identifier(value, field_name: str) -> uuid.UUID:
    """
    リクエストボディ内の識別子を検証する。
    書式不正はフィールド名付きの InvalidPayload として報告する。
    """
    try:
        return parse_identifier(value)
    except InvalidFormat as e:
        raise InvalidPayload(f"{field_name}: {e}") from e


def payload_identifiers(values, field_name: str) -> List[uuid.UUID]:
    if values is None or isinstance(values, (str, bytes)):
        raise InvalidPayload(f"{field_name}: expected a list of identifiers")
    try:
        return parse_identifiers(values)
    except InvalidFormat as e:
        raise InvalidPayload(f"{field_name}: {e}") from e
