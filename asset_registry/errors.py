"""
Asset Registry - エラー分類

責務:
  - レジストリ全体で共通の例外型を定義する
  - 呼び出し側（REST/RPC層・CLI）がエラー種別だけで応答を決められるようにする

分類:
  - InvalidFormat  : 識別子・列挙値の書式不正（呼び出し側の誤り、再試行不可）
  - InvalidPayload : リクエスト内容が意味的に不正
  - InvalidMask    : 更新マスクが空、または未知・変更不可のフィールドを含む
  - NotFound       : 対象エンティティ・オペレーターが存在しない
  - Forbidden      : 権限ルール違反（所有者以外による委任操作など）
  - Conflict       : 一意性違反・同時更新の衝突（永続化サービスが報告）
  - Unavailable    : 永続化サービスに到達できない・タイムアウト（一時的）
"""


class RegistryError(Exception):
    """レジストリが送出する全例外の基底クラス"""


# 呼び出し側の誤り。models.py の __post_init__ と同じく ValueError として扱える
class InvalidFormat(RegistryError, ValueError):
    pass


class InvalidPayload(RegistryError, ValueError):
    pass


class InvalidMask(RegistryError, ValueError):
    pass


class NotFound(RegistryError, LookupError):
    def __init__(self, kind: str, identifier):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class Forbidden(RegistryError, PermissionError):
    pass


class Conflict(RegistryError):
    pass


class Unavailable(RegistryError):
    """一時的な障害。呼び出し側がバックオフ付きで再試行してよい。"""
